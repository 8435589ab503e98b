"""Lifecycle events carried by the event bus."""

import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from costgate.core.models import CompletedRequest, SpendTotal, UsageEvent
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeChain, utcnow
from costgate.core.severity import Severity


class EventType(str, Enum):
    MESSAGE_DISPATCHED = "message_dispatched"
    RESPONSE_RECEIVED = "response_received"
    COST_CALCULATED = "cost_calculated"
    BUDGET_THRESHOLD_REACHED = "budget_threshold_reached"
    COST_TRACKING_FAILED = "cost_tracking_failed"


@dataclass(frozen=True)
class MessageDispatched:
    request_id: str
    scope_chain: ScopeChain
    provider: str
    model: str
    estimated_cost: float
    dispatched_at: datetime = field(default_factory=utcnow)


# ResponseReceived carries the CompletedRequest record unchanged.
ResponseReceived = CompletedRequest


@dataclass(frozen=True)
class CostCalculated:
    usage: UsageEvent
    totals: Tuple[SpendTotal, ...]
    duplicate: bool = False

    @property
    def request_id(self) -> str:
        return self.usage.request_id


@dataclass(frozen=True)
class BudgetThresholdReached:
    scope: BudgetScope
    budget_type: BudgetWindow
    severity: Severity
    current_spend: float
    limit: float
    percentage: float
    bucket: str
    currency: str = "USD"
    request_id: Optional[str] = None
    renotification: bool = False


@dataclass(frozen=True)
class CostTrackingFailed:
    request_id: str
    reason: str
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Event:
    """Envelope for anything published on the bus."""

    event_type: EventType
    key: str
    payload: Any
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    published_at: datetime = field(default_factory=utcnow)


def describe_payload(payload: Any) -> Dict[str, Any]:
    """JSON-friendly view of a payload, used for dead letters and the HTTP API."""
    if not is_dataclass(payload):
        return {"value": repr(payload)}
    return _jsonable(payload)


def _jsonable(value: Any) -> Any:
    if isinstance(value, BudgetScope):
        return value.key
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, ScopeChain):
        return value.to_snapshot()
    if isinstance(value, Severity):
        return value.label
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
