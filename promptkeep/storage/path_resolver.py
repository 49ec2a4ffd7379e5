"""Storage path resolver for promptkeep.

Implements environment-aware path resolution with XDG Base Directory compliance.
Supports local use, containerized deployments, and testing environments.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Final

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS: Final = sys.platform == "win32"
IS_MACOS: Final = sys.platform == "darwin"

APP_NAME: Final = "promptkeep"


class StoragePathResolver:
    """Resolves storage paths based on deployment environment."""

    def __init__(self, env: str | None = None, project_dir: Path | None = None) -> None:
        """Initialize path resolver.

        Args:
            env: Force specific environment ('local', 'container', 'development', 'test')
            project_dir: Current project directory (defaults to cwd)
        """
        self.env = env or self._detect_environment()
        self.project_dir = project_dir or Path.cwd()
        self.base_path = self._resolve_base_path()

    def _detect_environment(self) -> str:
        """Auto-detect deployment environment.

        Returns:
            Environment type: 'container', 'local', 'development', or 'test'
        """
        if env_var := os.getenv("PROMPTKEEP_ENV"):
            return env_var

        if Path("/.dockerenv").exists():
            return "container"

        if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
            return "test"

        return "local"

    def _resolve_base_path(self) -> Path:
        """Resolve base storage path by environment.

        Returns:
            Base path for promptkeep data
        """
        if override := os.getenv("PROMPTKEEP_DATA_PATH"):
            return Path(override)

        if self.env == "container":
            return Path("/data") / APP_NAME

        elif self.env == "local":
            return self._get_xdg_data_path()

        elif self.env == "development":
            return self.project_dir / f".{APP_NAME}" / "data"

        elif self.env == "test":
            return Path("/tmp") / APP_NAME / "test"

        else:
            logger.warning(f"Unknown environment '{self.env}', using local paths")
            return self._get_xdg_data_path()

    def _get_xdg_data_path(self) -> Path:
        """Get XDG data directory path.

        Returns:
            Path to XDG data directory for promptkeep
        """
        if IS_WINDOWS:
            local_app_data = os.getenv("LOCALAPPDATA")
            if local_app_data:
                return Path(local_app_data) / APP_NAME
            return Path.home() / f".{APP_NAME}" / "data"

        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / APP_NAME

        if IS_MACOS:
            return Path.home() / "Library" / "Application Support" / APP_NAME
        return Path.home() / ".local" / "share" / APP_NAME

    def get_archive_path(self) -> Path:
        """Get the default archive root (partition files and images/).

        Returns:
            Path to archive directory
        """
        if override := os.getenv("PROMPTKEEP_ARCHIVE_PATH"):
            return Path(override)

        return self.base_path / "archive"

    def get_content_cache_root(self) -> Path:
        """Get the source tool's home directory (history log, paste and image caches).

        Returns:
            Path to the source tool directory, ``~/.claude`` unless overridden
        """
        if override := os.getenv("CLAUDE_CONFIG_DIR"):
            return Path(override)

        return Path.home() / ".claude"

    def get_config_dir(self) -> Path:
        """Get configuration directory.

        Returns:
            Path to config directory
        """
        if IS_WINDOWS:
            app_data = os.getenv("APPDATA")
            if app_data:
                return Path(app_data) / APP_NAME
            return Path.home() / f".{APP_NAME}" / "config"

        xdg_config = os.getenv("XDG_CONFIG_HOME")
        if xdg_config:
            return Path(xdg_config) / APP_NAME

        if IS_MACOS:
            return Path.home() / "Library" / "Preferences" / APP_NAME
        return Path.home() / ".config" / APP_NAME

    def get_settings_path(self) -> Path:
        """Get the persisted key-value settings file.

        Returns:
            Path to settings.yaml
        """
        return self.get_config_dir() / "settings.yaml"


def get_default_resolver() -> StoragePathResolver:
    """Get default path resolver instance.

    Returns:
        StoragePathResolver for current environment
    """
    return StoragePathResolver()
