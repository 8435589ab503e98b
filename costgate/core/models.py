"""Records shared by the ledger, the gate and the pipeline consumers."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from costgate.core.pricing import PricingTier
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeChain, as_utc, utcnow
from costgate.core.severity import Severity, Thresholds


class RequestStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class CompletedRequest:
    """Supplied by the provider-dispatch layer once a response is known."""

    request_id: str
    scope_chain: ScopeChain
    provider: str
    model: str
    input_units: int
    output_units: int
    timestamp: datetime
    status: RequestStatus = RequestStatus.SUCCESS

    def __post_init__(self) -> None:
        if not self.request_id:
            raise ValueError("request_id is required")
        if self.input_units < 0 or self.output_units < 0:
            raise ValueError("Unit counts must be non-negative")
        object.__setattr__(self, "timestamp", as_utc(self.timestamp))
        object.__setattr__(self, "status", RequestStatus(self.status))


@dataclass(frozen=True)
class UsageEvent:
    """Priced usage of one completed request; written exactly once per request id."""

    request_id: str
    scope_chain: ScopeChain
    provider: str
    model: str
    input_units: int
    output_units: int
    cost: float
    timestamp: datetime
    currency: str = "USD"
    pricing_tier: PricingTier = PricingTier.STATIC


@dataclass(frozen=True)
class SpendTotal:
    """Running total of one (scope, window, bucket) after a merge."""

    scope: BudgetScope
    window: BudgetWindow
    bucket: str
    running_total: float


@dataclass(frozen=True)
class BudgetLimit:
    scope: BudgetScope
    window: BudgetWindow
    amount: float
    currency: str = "USD"

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(f"Budget limit amount must be > 0, got {self.amount}")


@dataclass(frozen=True)
class AlertConfig:
    """Per-scope alerting thresholds."""

    thresholds: Thresholds = field(default_factory=Thresholds)
    renotify_cooldown_seconds: float = 300.0
    enabled: bool = True


@dataclass(frozen=True)
class AlertState:
    """Last notified severity for one (scope, budget type); versioned for CAS writes."""

    scope: BudgetScope
    budget_type: BudgetWindow
    bucket: str
    last_severity: Severity = Severity.NONE
    last_notified_at: Optional[datetime] = None
    version: int = 0


@dataclass(frozen=True)
class AlertRecord:
    """One sent budget alert, as kept in the alert history."""

    scope: BudgetScope
    budget_type: BudgetWindow
    bucket: str
    severity: Severity
    current_spend: float
    limit: float
    percentage: float
    currency: str = "USD"
    request_id: Optional[str] = None
    renotification: bool = False
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None


@dataclass(frozen=True)
class DeadLetter:
    """An event a consumer could not process after exhausting its retries."""

    event_type: str
    key: str
    consumer: str
    error: str
    attempts: int
    payload: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None
