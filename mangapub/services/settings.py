"""Persistence helpers for the WebP conversion settings."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Mapping

from .storage import ChapterRepository


LOGGER = logging.getLogger(__name__)

WEBP_SETTINGS_KEY = "webp_settings"

# (low, high) inclusive bounds per field.
_LIMITS: Dict[str, tuple] = {
    "upload_quality": (10, 100),
    "publish_quality": (10, 100),
    "max_width": (800, 4000),
    "max_height": (1000, 6000),
    "recompress_threshold": (10, 100),
    "effort": (1, 6),
}

# Keys written by the original admin panel.
_CAMEL_CASE = {
    "uploadQuality": "upload_quality",
    "publishQuality": "publish_quality",
    "maxWidth": "max_width",
    "maxHeight": "max_height",
    "recompressThreshold": "recompress_threshold",
}


@dataclass(frozen=True)
class WebPConfig:
    """Tunables consumed by the image optimizer."""

    upload_quality: int = 90
    publish_quality: int = 80
    max_width: int = 1800
    max_height: int = 2800
    recompress_threshold: int = 85
    effort: int = 5

    def problems(self) -> List[str]:
        issues: List[str] = []
        for name, (low, high) in _LIMITS.items():
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or not low <= value <= high:
                issues.append(f"{name} must be an integer between {low} and {high} (got {value!r})")
        return issues

    def validate(self) -> "WebPConfig":
        issues = self.problems()
        if issues:
            raise ValueError("; ".join(issues))
        return self

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "WebPConfig":
        """Build a config from snake_case or camelCase keys; unknown keys are ignored."""

        known = {item.name for item in fields(cls)}
        values: Dict[str, Any] = {}
        for raw_key, value in mapping.items():
            key = _CAMEL_CASE.get(raw_key, raw_key)
            if key not in known or value is None:
                continue
            if isinstance(value, float) and value.is_integer():
                value = int(value)
            values[key] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class WebPConfigStore:
    """Load and store :class:`WebPConfig` in the ``system_config`` table."""

    def __init__(self, repository: ChapterRepository) -> None:
        self._repository = repository

    def load(self) -> WebPConfig:
        raw = self._repository.get_system_config(WEBP_SETTINGS_KEY)
        if raw is None:
            return WebPConfig()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Stored WebP settings are not valid JSON; using defaults")
            return WebPConfig()
        if not isinstance(payload, dict):
            return WebPConfig()

        try:
            config = WebPConfig.from_mapping(payload).validate()
        except (TypeError, ValueError) as error:
            LOGGER.warning("Stored WebP settings rejected (%s); using defaults", error)
            return WebPConfig()
        return config

    def save(self, config: WebPConfig) -> WebPConfig:
        config.validate()
        self._repository.set_system_config(WEBP_SETTINGS_KEY, json.dumps(config.to_dict()))
        LOGGER.info("WebP settings updated: %s", config.to_dict())
        return config

    def update(self, changes: Mapping[str, Any]) -> WebPConfig:
        """Merge *changes* over the stored record and persist the result."""

        merged = self.load().to_dict()
        merged.update(changes)
        return self.save(WebPConfig.from_mapping(merged))


__all__ = ["WEBP_SETTINGS_KEY", "WebPConfig", "WebPConfigStore"]
