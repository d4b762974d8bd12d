"""
Milestone runtime configuration loader.

Sources, lowest to highest precedence:
- built-in defaults
- shared/config/milestones.json (optional)
- environment variables (a .env file is loaded by core.app)

Design rules:
- Import-safe (no side effects)
- Invalid values are logged and replaced by defaults
- Missing credentials are only reported by validate()
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from core.milestones.errors import ConfigError
from core.milestones.models import IDENTITY_FIELDS
from shared.logging.logger import get_logger

log = get_logger("shared.config.milestones")

_CONFIG_PATH = Path(__file__).parent / "milestones.json"
_SCHEMA_PATH = Path(__file__).resolve().parents[2] / "schemas" / "milestones.schema.json"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass
class MilestoneConfig:
    slack_bot_token: Optional[str] = None
    slack_channel: Optional[str] = None
    warehouse_db_url: Optional[str] = None
    milestone_db_path: str = "data/milestones.db"
    interval_seconds: float = 60.0
    cutoff_at: Optional[datetime] = None
    identity_field: str = "name"
    concurrency: int = 1
    dry_run: bool = False

    def validate(self) -> None:
        missing: List[str] = []
        if not self.warehouse_db_url:
            missing.append("WAREHOUSE_DB_URL")
        if not self.dry_run:
            if not self.slack_bot_token:
                missing.append("SLACK_BOT_TOKEN")
            if not self.slack_channel:
                missing.append("SLACK_CHANNEL")

        if missing:
            raise ConfigError(
                f"Missing required configuration: {', '.join(missing)}"
            )


# ------------------------------------------------------------
# Helpers
# ------------------------------------------------------------

def _load_json(path: Path) -> Dict[str, Any]:
    if not path.exists():
        log.debug(f"milestones.json not found at {path}; using defaults")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            log.warning("milestones.json root is not an object; ignoring file")
    except Exception as e:  # pragma: no cover
        log.warning(f"Failed to load milestones.json ({e}); using defaults")

    return {}


def _validate(payload: Dict[str, Any], schema_path: Path) -> List[str]:
    """
    Validate the JSON document against its schema. Problems are logged and
    returned; they never abort loading.
    """
    if not schema_path.exists():
        log.debug(f"Schema not found at {schema_path}; skipping validation")
        return []

    try:
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
    except Exception as e:  # pragma: no cover
        log.warning(f"Failed to load milestones schema ({e}); skipping validation")
        return []

    validator = Draft7Validator(schema)
    problems: List[str] = []
    for err in sorted(validator.iter_errors(payload), key=lambda e: list(e.path)):
        loc = "/".join(str(p) for p in err.path)
        log.warning(f"milestones config validation warning at '{loc}': {err.message}")
        problems.append(f"{loc}: {err.message}")
    return problems


def _parse_bool(name: str, value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    log.warning(f"{name} must be boolean; defaulting to {default}")
    return default


def _parse_positive(name: str, value: Any, default, cast):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        log.warning(f"{name} is not a number ({value!r}); defaulting to {default}")
        return default
    if parsed <= 0:
        log.warning(f"{name} must be positive ({value!r}); defaulting to {default}")
        return default
    return parsed


def _parse_datetime(name: str, value: Any) -> Optional[datetime]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            log.warning(f"{name} is not an ISO-8601 timestamp ({value!r}); ignoring")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ------------------------------------------------------------
# Public API
# ------------------------------------------------------------

_ENV_KEYS = {
    "slack_bot_token": "SLACK_BOT_TOKEN",
    "slack_channel": "SLACK_CHANNEL",
    "warehouse_db_url": "WAREHOUSE_DB_URL",
    "milestone_db_path": "MILESTONE_DB_PATH",
    "interval_seconds": "MILESTONE_CHECK_INTERVAL_SECONDS",
    "cutoff_at": "MILESTONE_CUTOFF_AT",
    "identity_field": "MILESTONE_IDENTITY_FIELD",
    "concurrency": "MILESTONE_CONCURRENCY",
    "dry_run": "MILESTONE_DRY_RUN",
}


def load_milestone_config(
    raw: Optional[Dict[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> MilestoneConfig:
    raw = raw if raw is not None else _load_json(_CONFIG_PATH)
    _validate(raw, _SCHEMA_PATH)
    env = env if env is not None else os.environ

    merged: Dict[str, Any] = {k: v for k, v in raw.items() if k in _ENV_KEYS}
    for field_name, env_key in _ENV_KEYS.items():
        value = env.get(env_key)
        if value is not None:
            merged[field_name] = value

    defaults = MilestoneConfig()

    identity_field = str(merged.get("identity_field", defaults.identity_field)).strip()
    if identity_field not in IDENTITY_FIELDS:
        log.warning(
            f"identity_field must be one of {IDENTITY_FIELDS} "
            f"(got {identity_field!r}); defaulting to {defaults.identity_field}"
        )
        identity_field = defaults.identity_field

    config = MilestoneConfig(
        slack_bot_token=merged.get("slack_bot_token") or None,
        slack_channel=merged.get("slack_channel") or None,
        warehouse_db_url=merged.get("warehouse_db_url") or None,
        milestone_db_path=str(merged.get("milestone_db_path") or defaults.milestone_db_path),
        interval_seconds=_parse_positive(
            "interval_seconds",
            merged.get("interval_seconds", defaults.interval_seconds),
            defaults.interval_seconds,
            float,
        ),
        cutoff_at=_parse_datetime("cutoff_at", merged.get("cutoff_at")),
        identity_field=identity_field,
        concurrency=_parse_positive(
            "concurrency",
            merged.get("concurrency", defaults.concurrency),
            defaults.concurrency,
            int,
        ),
        dry_run=_parse_bool("dry_run", merged.get("dry_run", defaults.dry_run), defaults.dry_run),
    )

    log.debug(
        "Milestone config resolved: "
        f"slack_token={'SET' if config.slack_bot_token else 'MISSING'}, "
        f"channel={config.slack_channel or 'MISSING'}, "
        f"warehouse={'SET' if config.warehouse_db_url else 'MISSING'}, "
        f"store={config.milestone_db_path}, "
        f"interval={config.interval_seconds}s, "
        f"cutoff={config.cutoff_at.isoformat() if config.cutoff_at else 'NONE'}, "
        f"identity={config.identity_field}, "
        f"concurrency={config.concurrency}, "
        f"dry_run={config.dry_run}"
    )

    return config
