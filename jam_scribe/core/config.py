"""Configuration persistence using JSON format.

Stored at ~/.jam_scribe/config.json. ``recording()`` returns a typed,
freshly read snapshot of the settings the recorder consumes, and
``update()`` applies a read-modify-write under a lock.
"""

from __future__ import annotations

import copy
import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .constants import (
    DEFAULT_INACTIVITY_TIMEOUT,
    DEFAULT_RENDER_GAIN,
    DEFAULT_SAMPLE_RATE,
)

log = logging.getLogger(__name__)


# Default configuration schema
DEFAULT_CONFIG = {
    "version": "1.0",
    "recording": {
        "inactivity_timeout_seconds": DEFAULT_INACTIVITY_TIMEOUT,
        "output_dir": "midi_files",  # relative paths resolve against the config dir
    },
    "upload": {
        "endpoint": "",  # empty = uploads disabled
        "queue_file": "retry_queue.json",
    },
    "notifications": {
        "push_url": "",  # empty = no push notifications
        "open_url": "http://jamscribe.local:1337",
    },
    "rendering": {
        "enabled": False,
        "soundfont_path": "",
        "sample_rate": DEFAULT_SAMPLE_RATE,
        "gain": DEFAULT_RENDER_GAIN,
    },
}


@dataclass(frozen=True, slots=True)
class RecordingConfig:
    """Settings read at the moment a timer is scheduled or an upload starts."""

    inactivity_timeout_seconds: int = DEFAULT_INACTIVITY_TIMEOUT
    uploader_endpoint: str = ""

    @property
    def uploads_enabled(self) -> bool:
        return bool(self.uploader_endpoint)


class ConfigManager:
    """Manages user configuration with JSON persistence."""

    def __init__(self, config_dir: Path | None = None) -> None:
        """Initialize config manager.

        Args:
            config_dir: Custom config directory. If None, uses ~/.jam_scribe/
        """
        if config_dir is None:
            config_dir = Path.home() / ".jam_scribe"
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / "config.json"
        self._config: dict[str, Any] = {}
        self._lock = threading.RLock()
        self._load()

    def _load(self) -> None:
        """Load config from disk or create default."""
        self.config_dir.mkdir(parents=True, exist_ok=True)

        if self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    loaded = json.load(f)
                # Merge with defaults (in case new keys were added)
                self._config = self._merge_defaults(loaded)
            except (json.JSONDecodeError, OSError) as e:
                log.warning("Failed to load config: %s. Using defaults.", e)
                self._config = copy.deepcopy(DEFAULT_CONFIG)
        else:
            self._config = copy.deepcopy(DEFAULT_CONFIG)
            self._save()

    def _merge_defaults(self, loaded: dict) -> dict:
        """Recursively merge loaded config with defaults."""
        def deep_merge(base: dict, override: dict) -> dict:
            merged = copy.deepcopy(base)
            for key, value in override.items():
                if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                    merged[key] = deep_merge(merged[key], value)
                else:
                    merged[key] = value
            return merged

        return deep_merge(DEFAULT_CONFIG, loaded)

    def _save(self) -> None:
        """Write config to disk."""
        try:
            with open(self.config_file, "w", encoding="utf-8") as f:
                json.dump(self._config, f, indent=2, ensure_ascii=False)
        except OSError as e:
            log.warning("Failed to save config: %s", e)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Get config value using dot notation.

        Example:
            config.get("upload.endpoint")
            config.get("recording.inactivity_timeout_seconds", 60)
        """
        keys = key_path.split(".")
        with self._lock:
            value = self._config
            for key in keys:
                if isinstance(value, dict):
                    value = value.get(key)
                    if value is None:
                        return default
                else:
                    return default
            return copy.deepcopy(value)

    def set(self, key_path: str, value: Any) -> None:
        """Set config value using dot notation and save.

        Example:
            config.set("upload.endpoint", "https://uploads.example/info")
        """
        def apply(config: dict[str, Any]) -> None:
            keys = key_path.split(".")
            target = config
            for key in keys[:-1]:
                if key not in target or not isinstance(target[key], dict):
                    target[key] = {}
                target = target[key]
            target[keys[-1]] = value

        self.update(apply)

    def update(self, fn: Callable[[dict[str, Any]], None]) -> None:
        """Mutate the whole config dict in place under the lock, then save."""
        with self._lock:
            fn(self._config)
            self._save()

    def get_all(self) -> dict[str, Any]:
        """Get entire config dictionary (for debugging)."""
        with self._lock:
            return copy.deepcopy(self._config)

    def reset(self) -> None:
        """Reset config to defaults."""
        with self._lock:
            self._config = copy.deepcopy(DEFAULT_CONFIG)
            self._save()

    # ── Typed views ─────────────────────────────────────

    def recording(self) -> RecordingConfig:
        """Read the recorder settings fresh from the current config."""
        timeout = self.get("recording.inactivity_timeout_seconds", DEFAULT_INACTIVITY_TIMEOUT)
        if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout <= 0:
            log.warning(
                "Invalid inactivity timeout %r, using %d seconds",
                timeout, DEFAULT_INACTIVITY_TIMEOUT,
            )
            timeout = DEFAULT_INACTIVITY_TIMEOUT
        endpoint = self.get("upload.endpoint", "") or ""
        return RecordingConfig(
            inactivity_timeout_seconds=timeout,
            uploader_endpoint=str(endpoint).strip(),
        )

    def resolve_path(self, key_path: str) -> Path:
        """Resolve a configured path; relative values live under the config dir."""
        path = Path(str(self.get(key_path, "")))
        if not path.is_absolute():
            path = self.config_dir / path
        return path
