"""FastAPI dependency injection helpers."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status

from backend.config import SETTINGS, Settings
from backend.core.engines import AutomationEngines
from backend.core.mode_engine import ModeEngine
from backend.core.rule_engine import RuleEngine

# ---------------------------------------------------------------------------
# Settings dependency
# ---------------------------------------------------------------------------


def get_settings_dependency() -> Settings:
    return SETTINGS


SettingsDep = Annotated[Settings, Depends(get_settings_dependency)]


# ---------------------------------------------------------------------------
# Engines dependency
# ---------------------------------------------------------------------------


_engines: AutomationEngines | None = None


def set_engines(engines: AutomationEngines | None) -> None:
    """Set the shared engines container (called during app startup)."""
    global _engines
    _engines = engines


def get_engines() -> AutomationEngines:
    if _engines is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Automation engines are not running",
        )
    return _engines


EnginesDep = Annotated[AutomationEngines, Depends(get_engines)]


def get_rule_engine(engines: EnginesDep) -> RuleEngine:
    return engines.rules


def get_mode_engine(engines: EnginesDep) -> ModeEngine:
    return engines.modes


RuleEngineDep = Annotated[RuleEngine, Depends(get_rule_engine)]
ModeEngineDep = Annotated[ModeEngine, Depends(get_mode_engine)]


# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_owner_id(
    x_owner_id: Annotated[str | None, Header(alias="X-Owner-Id")] = None,
) -> uuid.UUID:
    """Resolve the calling user from the ``X-Owner-Id`` header set by the auth proxy."""
    if not x_owner_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Owner-Id header",
        )
    try:
        return uuid.UUID(x_owner_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Owner-Id must be a UUID",
        ) from exc


OwnerDep = Annotated[uuid.UUID, Depends(get_owner_id)]


__all__ = [
    "EnginesDep",
    "ModeEngineDep",
    "OwnerDep",
    "RuleEngineDep",
    "SettingsDep",
    "get_engines",
    "get_mode_engine",
    "get_owner_id",
    "get_rule_engine",
    "get_settings_dependency",
    "set_engines",
]
