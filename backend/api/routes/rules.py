"""Rule CRUD, execution and dry-run API routes for HomeFlow."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, status

from backend.api.dependencies import OwnerDep, RuleEngineDep
from backend.models.automation import Rule
from backend.models.schemas import (
    ExecuteRuleRequest,
    RuleCreate,
    RuleExecutionResult,
    RuleStatistics,
    RuleTestRequest,
    RuleTestResult,
    RuleUpdate,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.get("", response_model=list[Rule])
async def list_rules(owner_id: OwnerDep, engine: RuleEngineDep) -> list[Rule]:
    return await engine.list_rules(owner_id)


@router.post("", response_model=Rule, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleCreate, owner_id: OwnerDep, engine: RuleEngineDep) -> Rule:
    """Create a rule; every referenced device, group and mode must belong to the caller."""
    return await engine.create_rule(owner_id, payload)


@router.get("/statistics", response_model=RuleStatistics)
async def rule_statistics(owner_id: OwnerDep, engine: RuleEngineDep) -> RuleStatistics:
    """Execution totals across the caller's rules."""
    return await engine.get_statistics(owner_id)


@router.get("/{rule_id}", response_model=Rule)
async def get_rule(rule_id: uuid.UUID, owner_id: OwnerDep, engine: RuleEngineDep) -> Rule:
    return await engine.get_rule(rule_id, owner_id)


@router.patch("/{rule_id}", response_model=Rule)
async def update_rule(
    rule_id: uuid.UUID,
    payload: RuleUpdate,
    owner_id: OwnerDep,
    engine: RuleEngineDep,
) -> Rule:
    """Partially update a rule. Only supplied fields are changed."""
    return await engine.update_rule(rule_id, owner_id, payload)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(rule_id: uuid.UUID, owner_id: OwnerDep, engine: RuleEngineDep) -> None:
    await engine.delete_rule(rule_id, owner_id)


# ---------------------------------------------------------------------------
# POST /rules/{rule_id}/execute: run a rule now
# ---------------------------------------------------------------------------
@router.post("/{rule_id}/execute", response_model=RuleExecutionResult)
async def execute_rule(
    rule_id: uuid.UUID,
    owner_id: OwnerDep,
    engine: RuleEngineDep,
    payload: ExecuteRuleRequest | None = None,
) -> RuleExecutionResult:
    """Execute a rule manually.

    ``force`` bypasses cooldown and the daily limit; ``skip_conditions`` runs the
    actions without evaluating conditions.  Rate-limited calls answer 429.
    """
    payload = payload or ExecuteRuleRequest()
    return await engine.execute_rule(
        rule_id,
        owner_id,
        force=payload.force,
        skip_conditions=payload.skip_conditions,
        context=payload.context,
    )


# ---------------------------------------------------------------------------
# POST /rules/{rule_id}/test: evaluate against mock data
# ---------------------------------------------------------------------------
@router.post("/{rule_id}/test", response_model=RuleTestResult)
async def test_rule(
    rule_id: uuid.UUID,
    owner_id: OwnerDep,
    engine: RuleEngineDep,
    payload: RuleTestRequest | None = None,
) -> RuleTestResult:
    return await engine.test_rule(rule_id, owner_id, payload or RuleTestRequest())


__all__ = ["router"]
