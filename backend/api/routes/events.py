"""Inbound device events for HomeFlow.

The device gateway posts every state change here; matching rules and auto-activating
modes run in the background, so the response only says who was dispatched.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, status

from backend.api.dependencies import EnginesDep
from backend.models.schemas import DeviceStateChangeEvent, DispatchResult

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/device-state", response_model=DispatchResult, status_code=status.HTTP_202_ACCEPTED
)
async def device_state_changed(
    event: DeviceStateChangeEvent, engines: EnginesDep
) -> DispatchResult:
    logger.debug("Device state change received for %s", event.device_id)
    return engines.handle_device_state_change(event.device_id, event.old_state, event.new_state)


__all__ = ["router"]
