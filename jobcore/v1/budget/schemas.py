from datetime import date

from pydantic import BaseModel, ConfigDict, Field

from jobcore.v1.budget.models import BudgetAction


class BudgetPeriodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    month: date
    provider: str
    spent_cents: int
    limit_cents: int
    remaining_cents: int
    percent_used: float
    total_requests: int
    tokens_input: int
    tokens_output: int


class BudgetStatusResponse(BaseModel):
    """Current month snapshot with the throttle action it implies."""

    provider: str
    month: date
    action: BudgetAction
    batch_size: int
    should_stop_processing: bool
    percent_used: float
    spent_cents: int
    limit_cents: int
    remaining_cents: int


class BudgetLimitUpdate(BaseModel):
    limit_cents: int = Field(..., ge=0, description="Monthly limit in cents")
    provider: str | None = Field(default=None, description="Defaults to the configured provider")
    month: date | None = Field(default=None, description="Any day in the target month")


class UsageRecordRequest(BaseModel):
    """Usage of one or more AI calls; cost is estimated from the model when omitted."""

    model: str | None = Field(default=None, description="Model name used for cost estimation")
    tokens_input: int = Field(default=0, ge=0)
    tokens_output: int = Field(default=0, ge=0)
    cost_cents: int | None = Field(default=None, ge=0)
    requests: int = Field(default=1, ge=0)
    provider: str | None = None


class CostEstimateResponse(BaseModel):
    model: str
    tokens_input: int
    tokens_output: int
    cost_cents: int
