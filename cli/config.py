"""Configuration management for the FileFlow CLI."""

import json
import os
import shutil
import uuid
from pathlib import Path
from typing import Optional

from common.constants import (
    CHUNK_MAX_RETRIES,
    CHUNK_REQUEST_TIMEOUT_SECONDS,
    DOWNLOAD_CONCURRENCY,
    HTTP_CHUNK_SIZE_BYTES,
    PEER_BUFFER_LOW_WATER_MARK_BYTES,
    PEER_BUFFER_LOW_WATER_MARK_MAX_BYTES,
    SIGNALING_TIMEOUT_SECONDS,
    UPLOAD_CONCURRENCY,
)
from common.logging_config import get_logger
from transfer.orchestrator import SIGNALING_MODES, TransferSettings

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / '.fileflow' / 'config.json'

_TRUE_VALUES = ('1', 'true', 'yes', 'on')


class Config:
    """Manages CLI configuration stored in JSON file."""

    DEFAULT_CONFIG = {
        "server_url": "http://localhost:8080",
        "chunk_timeout": CHUNK_REQUEST_TIMEOUT_SECONDS,
        "chunk_max_retries": CHUNK_MAX_RETRIES,
        "http_chunk_size": HTTP_CHUNK_SIZE_BYTES,
        "upload_concurrency": UPLOAD_CONCURRENCY,
        "download_concurrency": DOWNLOAD_CONCURRENCY,
        "peer_enabled": True,
        "signaling": "websocket",
        "signaling_timeout": SIGNALING_TIMEOUT_SECONDS,
        "peer_low_water_mark": PEER_BUFFER_LOW_WATER_MARK_BYTES,
        "download_dir": ".",
    }

    # lowest accepted value for numeric settings
    MINIMUMS = {
        "chunk_timeout": 0.1,
        "chunk_max_retries": 0,
        "http_chunk_size": 1,
        "upload_concurrency": 1,
        "download_concurrency": 1,
        "signaling_timeout": 0.1,
        "peer_low_water_mark": 1,
    }

    ENV_OVERRIDES = {
        "FILEFLOW_SERVER_URL": "server_url",
        "FILEFLOW_PEER_ENABLED": "peer_enabled",
        "FILEFLOW_SIGNALING": "signaling",
    }

    def __init__(self, config_path: Path = DEFAULT_CONFIG_PATH):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (typically ~/.fileflow/config.json)
        """
        self.config_path = Path(config_path)
        self.data = self._load()
        self._apply_env()

    def _defaults(self) -> dict:
        config = self.DEFAULT_CONFIG.copy()
        config["rid"] = str(uuid.uuid4())
        return config

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        A corrupted file is copied to ``config.json.bak`` and replaced by
        defaults.

        Returns:
            Configuration dictionary
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            import tempfile
            self.config_path = Path(tempfile.gettempdir()) / '.fileflow' / 'config.json'
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("config root is not an object")
                config = self._defaults()
                config.update(data)
                if data.get('rid') != config['rid']:
                    self.data = config
                    self.save()
                return config
            except (json.JSONDecodeError, ValueError, IOError) as e:
                logger.warning(f"Config file {self.config_path} is unreadable, using defaults: {e}")
                backup_path = self.config_path.with_suffix('.json.bak')
                try:
                    shutil.copy(self.config_path, backup_path)
                except OSError as copy_error:
                    logger.debug(f"Could not back up config: {copy_error}")
                config = self._defaults()
                self._write(config)
                return config
        else:
            config = self._defaults()
            self._write(config)
            return config

    def _write(self, data: dict) -> None:
        try:
            with open(self.config_path, 'w') as f:
                json.dump(data, f, indent=2)
        except IOError as e:
            logger.warning(f"Could not write config {self.config_path}: {e}")

    def _apply_env(self) -> None:
        """Environment variables win over the file for the current process only."""
        self.overrides = {}
        for env_name, key in self.ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None or value == '':
                continue
            if key == 'peer_enabled':
                value = value.strip().lower() in _TRUE_VALUES
            self.overrides[key] = value

    def get(self, key: str, default=None):
        if key in self.overrides:
            return self.overrides[key]
        return self.data.get(key, default)

    def set(self, key: str, value) -> None:
        """
        Set a value and save to file.

        Raises:
            KeyError: If ``key`` is not a known setting
            ValueError: If the value cannot be converted to the setting's type
                or is below the setting's minimum
        """
        if key not in self.DEFAULT_CONFIG:
            raise KeyError(key)
        default = self.DEFAULT_CONFIG[key]
        if isinstance(default, bool) and isinstance(value, str):
            value = value.strip().lower() in _TRUE_VALUES
        elif isinstance(default, (int, float)) and not isinstance(default, bool):
            value = type(default)(value)
            if key in self.MINIMUMS and value < self.MINIMUMS[key]:
                raise ValueError(f"{key} must be at least {self.MINIMUMS[key]}")
        if key == 'signaling' and value not in SIGNALING_MODES:
            raise ValueError(f"signaling must be one of {', '.join(SIGNALING_MODES)}")
        self.data[key] = value
        self.save()

    def save(self) -> None:
        """Save current configuration to file."""
        self._write(self.data)

    def get_base_url(self) -> str:
        """
        Get relay server base URL.

        Returns:
            Base URL string (e.g., "http://localhost:8080")
        """
        return str(self.get('server_url')).rstrip('/')

    def get_receiver_id(self) -> str:
        """
        Get the persisted receiver id sent as ``rid``.

        Returns:
            UUID string, generated once and stored with the config
        """
        return self.data['rid']

    def get_download_dir(self) -> Path:
        return Path(self.get('download_dir', '.')).expanduser()

    def _number(self, key: str, kind=int):
        """Read a numeric setting, falling back to the default if a hand-edited file broke it."""
        try:
            value = kind(self.get(key))
        except (TypeError, ValueError):
            value = None
        if value is None or value < self.MINIMUMS.get(key, value):
            logger.warning(f"Ignoring invalid {key}={self.get(key)!r}, using {self.DEFAULT_CONFIG[key]}")
            value = kind(self.DEFAULT_CONFIG[key])
        return value

    def _signaling_mode(self) -> str:
        mode = str(self.get('signaling'))
        if mode not in SIGNALING_MODES:
            logger.warning(f"Unknown signaling mode {mode!r}, using {self.DEFAULT_CONFIG['signaling']}")
            return self.DEFAULT_CONFIG['signaling']
        return mode

    def to_settings(self) -> TransferSettings:
        """
        Build the immutable settings consumed by the transfer orchestrator.

        Returns:
            TransferSettings with the low-water mark clamped to its maximum
        """
        return TransferSettings(
            http_chunk_size=self._number('http_chunk_size'),
            upload_concurrency=self._number('upload_concurrency'),
            download_concurrency=self._number('download_concurrency'),
            chunk_max_attempts=self._number('chunk_max_retries') + 1,
            chunk_timeout=self._number('chunk_timeout', float),
            peer_enabled=bool(self.get('peer_enabled')),
            signaling_mode=self._signaling_mode(),
            signaling_timeout=self._number('signaling_timeout', float),
            peer_low_water_mark=min(self._number('peer_low_water_mark'), PEER_BUFFER_LOW_WATER_MARK_MAX_BYTES),
        )

    def describe(self) -> dict:
        """Effective settings, environment overrides applied."""
        return {key: self.get(key) for key in list(self.DEFAULT_CONFIG) + ['rid']}


def load_config(config_path: Optional[Path] = None) -> Config:
    return Config(config_path or DEFAULT_CONFIG_PATH)
