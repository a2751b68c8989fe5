"""Condition evaluation for rules.

Every condition maps to a boolean and never raises: a misconfigured or unknown
condition evaluates to ``False`` and is logged.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from datetime import UTC, datetime, tzinfo
from typing import Any, TypeAlias

from backend.core.comparison import compare, minutes_since_midnight, resolve_path
from backend.integrations.device_proxy import DeviceProxy, DeviceProxyError
from backend.models.automation import (
    Condition,
    CustomCondition,
    DayOfWeekCondition,
    DeviceStateCondition,
    EnergyPriceCondition,
    SystemStateCondition,
    TimeRangeCondition,
    UserPresenceCondition,
    WeatherCondition,
    utcnow,
)
from backend.models.enums import LogicMode
from backend.models.schemas import ConditionOutcome

logger = logging.getLogger(__name__)

Predicate: TypeAlias = Callable[[Mapping[str, Any], Mapping[str, Any]], bool | Awaitable[bool]]

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class ConditionEvaluator:
    """Evaluate rule conditions against device state, the clock and a runtime context.

    ``user_presence``, ``weather``, ``system_state`` and ``energy_price`` read from the
    execution context (``presence``, ``weather``, ``system`` and ``energy_price`` keys).
    ``custom`` conditions call a predicate registered under their name.
    """

    def __init__(
        self,
        proxy: DeviceProxy,
        *,
        tz: tzinfo = UTC,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._proxy = proxy
        self._tz = tz
        self._clock = clock
        self._predicates: dict[str, Predicate] = {}

    def register_predicate(self, name: str, predicate: Predicate) -> None:
        self._predicates[name] = predicate

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def evaluate(
        self, condition: Condition, context: Mapping[str, Any] | None = None
    ) -> bool:
        context = context or {}
        try:
            return await self._evaluate(condition, context)
        except DeviceProxyError as exc:
            logger.warning(
                "Condition %s could not read device state: %s",
                condition.id,
                exc,
                extra={"condition_type": condition.type},
            )
            return False

    async def evaluate_all(
        self,
        conditions: Sequence[Condition],
        logic: LogicMode,
        context: Mapping[str, Any] | None = None,
        *,
        overrides: Mapping[str, bool] | None = None,
    ) -> tuple[bool, list[ConditionOutcome]]:
        """Evaluate every enabled condition and combine the results.

        All conditions are evaluated (no short-circuit) so the outcome list is complete.
        ``overrides`` maps condition id to a forced result.  No conditions means pass.
        """
        overrides = overrides or {}
        outcomes: list[ConditionOutcome] = []
        for condition in conditions:
            if not condition.is_enabled:
                continue
            if condition.id in overrides:
                result, mocked = overrides[condition.id], True
            else:
                result, mocked = await self.evaluate(condition, context), False
            outcomes.append(
                ConditionOutcome(id=condition.id, type=condition.type, result=result, mocked=mocked)
            )

        if not outcomes:
            return True, outcomes
        results = [outcome.result for outcome in outcomes]
        passed = all(results) if logic == LogicMode.all else any(results)
        return passed, outcomes

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _evaluate(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        if isinstance(condition, DeviceStateCondition):
            state = await self._proxy.get_device_state(condition.device_id)
            actual = resolve_path(state.as_mapping(), condition.property)
            return compare(condition.operator, actual, condition.value, condition.second_value)

        if isinstance(condition, TimeRangeCondition):
            now = self._now()
            minutes = now.hour * 60 + now.minute
            start = minutes_since_midnight(condition.start)
            end = minutes_since_midnight(condition.end)
            if start <= end:
                return start <= minutes <= end
            # crosses midnight
            return minutes >= start or minutes <= end

        if isinstance(condition, DayOfWeekCondition):
            today = _WEEKDAYS[self._now().weekday()]
            return today in condition.days

        if isinstance(condition, UserPresenceCondition):
            presence = context.get("presence")
            if not isinstance(presence, Mapping):
                return False
            if condition.user_id is None:
                present = any(bool(value) for value in presence.values())
            elif condition.user_id in presence:
                present = bool(presence[condition.user_id])
            else:
                return False
            return present == condition.present

        if isinstance(condition, WeatherCondition):
            weather = context.get("weather")
            if not isinstance(weather, Mapping):
                return False
            actual = resolve_path(weather, condition.property)
            return compare(condition.operator, actual, condition.value, condition.second_value)

        if isinstance(condition, SystemStateCondition):
            actual = resolve_path(context.get("system"), condition.key)
            return compare(condition.operator, actual, condition.value, condition.second_value)

        if isinstance(condition, EnergyPriceCondition):
            return compare(
                condition.operator,
                context.get("energy_price"),
                condition.value,
                condition.second_value,
            )

        if isinstance(condition, CustomCondition):
            predicate = self._predicates.get(condition.predicate)
            if predicate is None:
                logger.warning("No predicate registered for condition %r", condition.predicate)
                return False
            try:
                result = predicate(condition.params, context)
                if inspect.isawaitable(result):
                    result = await result
            except Exception:
                logger.exception("Custom predicate %r failed", condition.predicate)
                return False
            return bool(result)

        logger.warning(
            "Unknown condition type %r evaluated as false", condition.type,
            extra={"condition_id": condition.id},
        )
        return False

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)


__all__ = ["ConditionEvaluator", "Predicate"]
