"""Mode CRUD and activation API routes for HomeFlow."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, status

from backend.api.dependencies import ModeEngineDep, OwnerDep
from backend.models.automation import Mode
from backend.models.schemas import (
    ActivateModeRequest,
    ModeActivationResult,
    ModeCreate,
    ModeDeactivationResult,
    ModeStatistics,
    ModeUpdate,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.get("", response_model=list[Mode])
async def list_modes(owner_id: OwnerDep, engine: ModeEngineDep) -> list[Mode]:
    return await engine.list_modes(owner_id)


@router.get("/active", response_model=list[Mode])
async def list_active_modes(owner_id: OwnerDep, engine: ModeEngineDep) -> list[Mode]:
    """Active modes, highest priority first."""
    return await engine.get_active_modes(owner_id)


@router.get("/statistics", response_model=ModeStatistics)
async def mode_statistics(owner_id: OwnerDep, engine: ModeEngineDep) -> ModeStatistics:
    return await engine.get_statistics(owner_id)


@router.post("", response_model=Mode, status_code=status.HTTP_201_CREATED)
async def create_mode(payload: ModeCreate, owner_id: OwnerDep, engine: ModeEngineDep) -> Mode:
    return await engine.create_mode(owner_id, payload)


@router.get("/{mode_id}", response_model=Mode)
async def get_mode(mode_id: uuid.UUID, owner_id: OwnerDep, engine: ModeEngineDep) -> Mode:
    return await engine.get_mode(mode_id, owner_id)


@router.patch("/{mode_id}", response_model=Mode)
async def update_mode(
    mode_id: uuid.UUID,
    payload: ModeUpdate,
    owner_id: OwnerDep,
    engine: ModeEngineDep,
) -> Mode:
    return await engine.update_mode(mode_id, owner_id, payload)


@router.delete("/{mode_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_mode(mode_id: uuid.UUID, owner_id: OwnerDep, engine: ModeEngineDep) -> None:
    """Delete a mode, deactivating (and restoring) it first if it is active."""
    await engine.delete_mode(mode_id, owner_id)


# ---------------------------------------------------------------------------
# Activation
# ---------------------------------------------------------------------------
@router.post("/{mode_id}/activate", response_model=ModeActivationResult)
async def activate_mode(
    mode_id: uuid.UUID,
    owner_id: OwnerDep,
    engine: ModeEngineDep,
    payload: ActivateModeRequest | None = None,
) -> ModeActivationResult:
    """Activate a mode.

    ``force`` re-runs an already active mode and deactivates every other active mode
    first; ``duration`` schedules an automatic deactivation.
    """
    payload = payload or ActivateModeRequest()
    return await engine.activate(
        mode_id,
        owner_id,
        force=payload.force,
        duration=payload.duration,
        overrides=payload.overrides,
    )


@router.post("/{mode_id}/deactivate", response_model=ModeDeactivationResult)
async def deactivate_mode(
    mode_id: uuid.UUID, owner_id: OwnerDep, engine: ModeEngineDep
) -> ModeDeactivationResult:
    return await engine.deactivate(mode_id, owner_id)


@router.post(
    "/{mode_id}/toggle", response_model=ModeActivationResult | ModeDeactivationResult
)
async def toggle_mode(
    mode_id: uuid.UUID, owner_id: OwnerDep, engine: ModeEngineDep
) -> ModeActivationResult | ModeDeactivationResult:
    return await engine.toggle(mode_id, owner_id)


__all__ = ["router"]
