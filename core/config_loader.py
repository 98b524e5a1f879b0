"""
Configuration loader.

This module centralizes ingestion of the tracker's JSON config files and
applies lightweight schema validation. Validation failures are treated as
warnings so the runtime can continue booting with best-effort defaults.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator

from shared.config.tracking import (
    CONFIG_PATH,
    SCHEMA_PATH,
    TALENTS_PATH,
    TrackingConfig,
    normalize_tracking_config,
)
from shared.errors import ConfigError
from shared.logging.logger import get_logger

log = get_logger("core.config_loader")


class ConfigLoader:
    """
    Loads and validates tracker configuration documents.

    Files:
      - shared/config/tracking.json (polling, dispatch, state, guild)
      - shared/config/talents.json (tracked roster, required)

    Validation:
      - tracking.json is validated against tracking.schema.json; violations
        are logged and the normalizer falls back to defaults
    """

    def __init__(
        self,
        tracking_path: Optional[Path] = None,
        talents_path: Optional[Path] = None,
        schema_path: Optional[Path] = None,
    ) -> None:
        self.tracking_path = Path(tracking_path or CONFIG_PATH)
        self.talents_path = Path(talents_path or TALENTS_PATH)
        self.schema_path = Path(schema_path or SCHEMA_PATH)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load_json(self, path: Path, name: str) -> Dict[str, Any]:
        if not path.exists():
            log.warning(f"{name} config not found at {path}; using defaults")
            return {}

        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            log.warning(f"Failed to load {name} config ({e}); using defaults")
            return {}

        if isinstance(data, dict):
            return data
        log.warning(f"{name} config root is not an object; ignoring")
        return {}

    def _validate(self, payload: Dict[str, Any], schema_path: Path, name: str) -> List[str]:
        if not schema_path.exists():
            log.debug(f"Schema for {name} not found at {schema_path}; skipping")
            return []

        try:
            schema = json.loads(schema_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning(f"Failed to load {name} schema ({e}); skipping validation")
            return []

        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))

        warnings: List[str] = []
        for err in errors:
            loc = "/".join(str(p) for p in err.path)
            message = f"{name} config validation warning at '{loc}': {err.message}"
            log.warning(message)
            warnings.append(message)
        return warnings

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load_tracking_config(self) -> TrackingConfig:
        data = self._load_json(self.tracking_path, "tracking")
        if data:
            self._validate(data, self.schema_path, "tracking")
        return normalize_tracking_config(data)

    def validate_tracking_config(self) -> List[str]:
        """Schema violations in tracking.json, one message each."""
        data = self._load_json(self.tracking_path, "tracking")
        if not data:
            return []
        return self._validate(data, self.schema_path, "tracking")

    def load_talents_config(self) -> List[Dict[str, Any]]:
        """
        Load talents.json. Unlike tracking.json this file is required: with
        no roster there is nothing to track.
        """
        if not self.talents_path.exists():
            raise ConfigError(f"Talents file not found: {self.talents_path}")

        try:
            raw = json.loads(self.talents_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Talents file unreadable ({self.talents_path}): {e}") from e

        talents = raw.get("talents") if isinstance(raw, dict) else raw
        if not isinstance(talents, list):
            raise ConfigError("talents.json must be a list or an object with a 'talents' array")

        sanitized: List[Dict[str, Any]] = []
        for entry in talents:
            if isinstance(entry, dict):
                sanitized.append(entry)
            else:
                log.warning("Skipping invalid talent entry (expected object)")
        return sanitized
