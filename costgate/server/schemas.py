"""Request and response bodies of the HTTP service."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from costgate.core.estimator import EstimatedUsage
from costgate.core.models import CompletedRequest, RequestStatus
from costgate.core.scopes import ScopeChain, utcnow


class ScopeChainIn(BaseModel):
    owner: Optional[str] = Field(default=None, min_length=1)
    project: Optional[str] = Field(default=None, min_length=1)
    organization: Optional[str] = Field(default=None, min_length=1)

    @model_validator(mode="after")
    def _at_least_one(self) -> "ScopeChainIn":
        if self.owner is None and self.project is None and self.organization is None:
            raise ValueError("At least one of owner, project or organization is required")
        return self

    def to_chain(self) -> ScopeChain:
        return ScopeChain.of(owner=self.owner, project=self.project, organization=self.organization)


class CheckRequest(BaseModel):
    scope: ScopeChainIn
    provider: str
    model: str
    input_units: Optional[int] = Field(default=None, ge=0)
    max_output_units: Optional[int] = Field(default=None, ge=0)
    prompt: Optional[str] = None
    messages: Optional[List[Dict[str, Any]]] = None

    def to_usage(self) -> EstimatedUsage:
        return EstimatedUsage(
            provider=self.provider,
            model=self.model,
            input_units=self.input_units,
            max_output_units=self.max_output_units,
            prompt=self.prompt,
            messages=self.messages,
        )


class CheckResponse(BaseModel):
    allowed: bool
    estimated_cost: float
    degraded: bool = False
    reason: Optional[str] = None
    scope: Optional[str] = None
    window: Optional[str] = None
    current_spend: Optional[float] = None
    limit: Optional[float] = None
    currency: Optional[str] = None
    message: Optional[str] = None


class CompletedRequestIn(BaseModel):
    request_id: str = Field(min_length=1)
    scope: ScopeChainIn
    provider: str
    model: str
    input_units: int = Field(ge=0)
    output_units: int = Field(ge=0)
    timestamp: Optional[datetime] = None
    status: Literal["success", "failed"] = "success"

    def to_completed(self) -> CompletedRequest:
        return CompletedRequest(
            request_id=self.request_id,
            scope_chain=self.scope.to_chain(),
            provider=self.provider,
            model=self.model,
            input_units=self.input_units,
            output_units=self.output_units,
            timestamp=self.timestamp or utcnow(),
            status=RequestStatus(self.status),
        )


class DispatchedIn(BaseModel):
    request_id: str = Field(min_length=1)
    scope: ScopeChainIn
    provider: str
    model: str
    estimated_cost: float = Field(default=0.0, ge=0)


class Accepted(BaseModel):
    status: Literal["accepted"] = "accepted"
    request_id: str
    event_id: str


class WindowStatusOut(BaseModel):
    window: str
    bucket: str
    spend: float
    limit: Optional[float] = None
    remaining: Optional[float] = None
    percentage: Optional[float] = None
    currency: str = "USD"


class BudgetStatusOut(BaseModel):
    scope: str
    registered: bool
    windows: List[WindowStatusOut]


class RollupRowOut(BaseModel):
    bucket: str
    value: str
    request_count: int
    input_units: int
    output_units: int
    cost: float


class AnalyticsOut(BaseModel):
    granularity: str
    dimension: str
    rows: List[RollupRowOut]


class DeadLetterOut(BaseModel):
    id: Optional[int] = None
    event_id: Optional[str] = None
    event_type: str
    key: str
    consumer: str
    error: str
    attempts: int
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AlertOut(BaseModel):
    id: Optional[int] = None
    scope: str
    window: str
    bucket: str
    severity: str
    current_spend: float
    limit: float
    percentage: float
    currency: str = "USD"
    request_id: Optional[str] = None
    renotification: bool = False
    created_at: datetime
