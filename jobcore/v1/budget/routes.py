"""
AI budget endpoints: current status, usage recording and monthly limits.
"""

from typing import Any

from fastapi import APIRouter, Query

from jobcore.config.logging import get_logger
from jobcore.v1.budget.governor import BudgetGovernor, estimate_cost_cents, month_start
from jobcore.v1.budget.schemas import (
    BudgetLimitUpdate,
    BudgetPeriodResponse,
    BudgetStatusResponse,
    CostEstimateResponse,
    UsageRecordRequest,
)
from jobcore.v1.core.exceptions import ValidationError, create_success_response
from jobcore.v1.core.runtime import GovernorDep

logger = get_logger(__name__)
router = APIRouter(prefix="/budget", tags=["budget"])


async def _status(governor: BudgetGovernor, provider: str | None) -> BudgetStatusResponse:
    provider = provider or governor.settings.budget_provider
    action = await governor.current_action(provider)
    period = await governor.get_period(provider)
    limit = period.limit_cents if period else governor.settings.budget_default_limit_cents
    spent = period.spent_cents if period else 0
    return BudgetStatusResponse(
        provider=provider,
        month=month_start(governor.clock()),
        action=action,
        batch_size=governor.batch_size_for(action),
        should_stop_processing=governor.should_stop_processing(action),
        percent_used=round(period.percent_used if period else 0.0, 2),
        spent_cents=spent,
        limit_cents=limit,
        remaining_cents=max(0, limit - spent),
    )


@router.get("", response_model=dict)
async def get_budget_status(
    provider: str | None = Query(default=None, description="AI provider"),
    governor: BudgetGovernor = GovernorDep,
) -> dict[str, Any]:
    """Current month spend and the throttle action it implies."""
    status = await _status(governor, provider)
    return create_success_response(data=status.model_dump(mode="json"))


@router.get("/history", response_model=dict)
async def get_budget_history(
    provider: str | None = Query(default=None),
    months: int = Query(default=12, ge=1, le=120),
    governor: BudgetGovernor = GovernorDep,
) -> dict[str, Any]:
    periods = await governor.history(provider, months)
    return create_success_response(
        data=[
            BudgetPeriodResponse.model_validate(p).model_dump(mode="json")
            for p in periods
        ]
    )


@router.put("/limit", response_model=dict)
async def set_budget_limit(
    update: BudgetLimitUpdate,
    governor: BudgetGovernor = GovernorDep,
) -> dict[str, Any]:
    period = await governor.set_limit(update.limit_cents, update.provider, update.month)
    return create_success_response(
        data=BudgetPeriodResponse.model_validate(period).model_dump(mode="json"),
        message="Budget limit updated",
    )


@router.post("/usage", response_model=dict)
async def record_usage(
    usage: UsageRecordRequest,
    governor: BudgetGovernor = GovernorDep,
) -> dict[str, Any]:
    """Record AI usage against the current month."""
    cost = usage.cost_cents
    if cost is None:
        if not usage.model:
            raise ValidationError("Either cost_cents or model is required")
        cost = estimate_cost_cents(usage.model, usage.tokens_input, usage.tokens_output)

    await governor.record_usage(
        cost,
        tokens_input=usage.tokens_input,
        tokens_output=usage.tokens_output,
        requests=usage.requests,
        provider=usage.provider,
    )
    status = await _status(governor, usage.provider)
    return create_success_response(data=status.model_dump(mode="json"))


@router.get("/estimate", response_model=dict)
async def estimate_cost(
    model: str = Query(..., description="Model name"),
    tokens_input: int = Query(default=0, ge=0),
    tokens_output: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    estimate = CostEstimateResponse(
        model=model,
        tokens_input=tokens_input,
        tokens_output=tokens_output,
        cost_cents=estimate_cost_cents(model, tokens_input, tokens_output),
    )
    return create_success_response(data=estimate.model_dump())
