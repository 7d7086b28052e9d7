from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from rolescout.models import WorkspaceConfig
from rolescout.taxonomy import RESOLVED_ROLES
from rolescout.utils import json_parse


class ConfigValidationError(ValueError):
    """A configuration value failed validation."""
    def __init__(self, message: str, field: str, value: Any = None):
        super().__init__(message)
        self.field = field
        self.value = value


def _resolve_home() -> Path:
    override = os.getenv("ROLESCOUT_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd().resolve()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


class ThreadingRule(BaseModel):
    """When a deal counts as fully threaded."""
    min_distinct_roles: int = 3
    required_roles: tuple[str, ...] = ("champion",)
    required_any: tuple[str, ...] = ("economic_buyer", "decision_maker")

    def describe(self) -> str:
        parts = list(self.required_roles)
        if self.required_any:
            parts.append("/".join(self.required_any))
        label = f"{self.min_distinct_roles}+ roles"
        return f"{label} including {' + '.join(parts)}" if parts else label


class Settings(BaseModel):
    home: Path = Field(default_factory=_resolve_home)
    database_url: str = Field(default_factory=lambda: os.getenv("ROLESCOUT_DATABASE_URL", "").strip())
    concurrency: int = Field(default_factory=lambda: max(1, _env_int("ROLESCOUT_CONCURRENCY", 4)))
    log_level: str = Field(default_factory=lambda: os.getenv("ROLESCOUT_LOG_LEVEL", "WARNING").upper())
    threading_rule: ThreadingRule = Field(default_factory=ThreadingRule)

    @property
    def data_dir(self) -> Path:
        return self.home / "data"

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_dir / 'rolescout.db'}"

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            return {}
        return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


# ---------------------------------------------------------------------------
# Workspace role-field mappings
# ---------------------------------------------------------------------------


def validate_role_field_mappings(mappings: Any) -> dict[str, str]:
    """Validate a ``{crm_field_name: buying_role}`` mapping and return it.

    Raises ConfigValidationError on a non-dict payload, empty field names, or
    roles outside the canonical set (``unknown`` is not assignable).
    """
    if not isinstance(mappings, dict):
        raise ConfigValidationError("role_field_mappings must be an object", "role_field_mappings", mappings)
    for field_name, role in mappings.items():
        if not isinstance(field_name, str) or not field_name.strip():
            raise ConfigValidationError("Field names must be non-empty strings", "role_field_mappings", field_name)
        if role not in RESOLVED_ROLES:
            raise ConfigValidationError(
                f"Invalid buying role {role!r}. Must be one of: {', '.join(sorted(RESOLVED_ROLES))}",
                "role_field_mappings",
                role,
            )
    return dict(mappings)


def get_role_field_mappings(session: Session, workspace_id: str) -> dict[str, str]:
    cfg = session.get(WorkspaceConfig, workspace_id)
    if cfg is None:
        return {}
    raw = json_parse(cfg.role_field_mappings_json, {})
    return raw if isinstance(raw, dict) else {}


def set_role_field_mappings(
    session: Session, workspace_id: str, mappings: Any, updated_by: str = "",
) -> dict[str, str]:
    """Validate and persist mappings (caller must commit)."""
    valid = validate_role_field_mappings(mappings)
    cfg = session.execute(
        select(WorkspaceConfig).where(WorkspaceConfig.workspace_id == workspace_id)
    ).scalars().first()
    if cfg is None:
        cfg = WorkspaceConfig(workspace_id=workspace_id)
        session.add(cfg)
    cfg.role_field_mappings_json = json.dumps(valid, sort_keys=True)
    cfg.updated_by = updated_by
    return valid


def load_role_field_mappings_file(path: Path) -> dict[str, str]:
    """Read mappings from YAML, either top-level or under ``role_field_mappings``."""
    raw = get_settings().load_yaml(path)
    payload = raw.get("role_field_mappings", raw)
    return validate_role_field_mappings(payload)
