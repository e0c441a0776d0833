"""Configuration management."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "retries": 5,
    "backoff_factor": 0.5,
    "backoff_jitter": 0.5,
    "timeout": 30,
    "cache_capacity": 16,
    "failure_ttl": 30,
    "chunk_size": 10 * 1024 * 1024,
    "workers": 4,
    "user_agent": None,
    "language": "en",
}


class Config:
    """Manages resolver settings stored as JSON, merged over the defaults."""

    def __init__(self, config_file: Optional[Path] = None, **overrides):
        if config_file is None:
            config_file = Path.home() / "vidresolve_settings.json"
        self.file = Path(config_file)
        self.data: Dict[str, Any] = dict(DEFAULTS)
        self.load()
        self.data.update(overrides)

    def load(self):
        """Load configuration from file; an unreadable file is ignored."""
        if not self.file.exists():
            return
        try:
            with open(self.file, "r", encoding="utf-8") as f:
                stored = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable settings file {self.file}: {e}")
            return
        if not isinstance(stored, dict):
            logger.warning(f"Ignoring settings file {self.file}: expected a JSON object")
            return
        self.data.update(stored)

    def save(self):
        """Save configuration to file."""
        try:
            self.file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.file, "w", encoding="utf-8") as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.error(f"Could not save settings to {self.file}: {e}")

    def _number(self, name: str, kind=int):
        try:
            value = kind(self.data[name])
        except (KeyError, TypeError, ValueError):
            logger.warning(f"Invalid setting {name}={self.data.get(name)!r}, using {DEFAULTS[name]}")
            return DEFAULTS[name]
        return value if value >= 0 else DEFAULTS[name]

    @property
    def retries(self) -> int:
        return self._number("retries")

    @property
    def backoff_factor(self) -> float:
        return self._number("backoff_factor", float)

    @property
    def backoff_jitter(self) -> float:
        return self._number("backoff_jitter", float)

    @property
    def timeout(self) -> float:
        return self._number("timeout", float)

    @property
    def cache_capacity(self) -> int:
        return max(1, self._number("cache_capacity"))

    @property
    def failure_ttl(self) -> float:
        return self._number("failure_ttl", float)

    @property
    def chunk_size(self) -> int:
        return max(1, self._number("chunk_size"))

    @property
    def workers(self) -> int:
        return max(1, self._number("workers"))

    @property
    def user_agent(self) -> Optional[str]:
        """Custom User-Agent, or None for the transport default."""
        value = self.data.get("user_agent")
        return str(value) if value else None

    @property
    def language(self) -> str:
        return str(self.data.get("language") or "en")

    def set(self, name: str, value: Any):
        """Set a value and persist it."""
        self.data[name] = value
        self.save()
