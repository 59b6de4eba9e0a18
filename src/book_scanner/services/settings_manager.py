"""Settings Manager - Handles API key and storage configuration."""

import os
from pathlib import Path
from typing import Optional

from dotenv import dotenv_values, load_dotenv


class SettingsManager:
    """
    Manages settings and API key configuration.

    Reads values from the .env file in the project root, with real
    environment variables taking precedence.
    """

    DEFAULT_HOME = Path.home() / ".book_scanner"

    def __init__(self, project_root: Optional[Path] = None):
        """
        Initialize settings manager.

        Args:
            project_root: Path to project root where .env is located.
                         If None, searches upward from current file.
        """
        if project_root is None:
            current = Path(__file__).resolve()
            project_root = current.parent.parent.parent.parent

        env_path = project_root / ".env"
        # Keys set in the real environment win over later .env edits.
        self._api_key_from_environment = "GEMINI_API_KEY" in os.environ
        load_dotenv(dotenv_path=env_path)

        self._project_root = project_root

    def get_gemini_api_key(self) -> Optional[str]:
        """Get the Gemini API key from environment."""
        key = os.getenv("GEMINI_API_KEY")
        return key.strip() if key and key.strip() else None

    def read_gemini_api_key(self) -> Optional[str]:
        """
        Get the Gemini API key, re-reading .env on every call.

        A key added to .env while the queue is running is used on the next
        attempt. A key set in the real environment always takes precedence.
        """
        if not self._api_key_from_environment:
            key = dotenv_values(self._project_root / ".env").get("GEMINI_API_KEY")
            if key is not None:
                return key.strip() or None
        return self.get_gemini_api_key()

    def get_database_path(self) -> Path:
        """Location of the SQLite library database."""
        return self._path_setting("BOOK_SCANNER_DB_PATH", self.DEFAULT_HOME / "library.db")

    def get_image_dir(self) -> Path:
        """Directory where captured page images are stored."""
        return self._path_setting("BOOK_SCANNER_IMAGE_DIR", self.DEFAULT_HOME / "images")

    def get_model_name(self) -> Optional[str]:
        """Gemini model override, or None to use the service default."""
        model = os.getenv("BOOK_SCANNER_MODEL")
        return model.strip() if model and model.strip() else None

    def reload_env(self) -> None:
        """Reload environment variables from .env file."""
        env_path = self._project_root / ".env"
        load_dotenv(dotenv_path=env_path, override=True)

    @staticmethod
    def _path_setting(name: str, default: Path) -> Path:
        value = os.getenv(name)
        if value and value.strip():
            return Path(value.strip()).expanduser()
        return default
