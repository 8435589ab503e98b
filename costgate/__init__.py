"""CostGate - budget enforcement and cost accounting for AI requests."""

__version__ = "0.1.0"

from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeChain, ScopeKind
from costgate.core.pricing import (
    PriceEntry,
    PricingConfigurationError,
    PricingResolver,
    PricingTier,
    PricingUnit,
    PricingUnavailableError,
)
from costgate.core.calculator import CostBreakdown, CostCalculator
from costgate.core.estimator import EstimatedUsage, TokenEstimator, UsageEstimator
from costgate.core.severity import Severity, SeverityStateMachine, Thresholds
from costgate.core.models import AlertConfig, BudgetLimit, CompletedRequest, UsageEvent
from costgate.core.events import BudgetThresholdReached, CostCalculated, CostTrackingFailed
from costgate.core.gate import Allow, BudgetExceededError, Deny, EnforcementGate
from costgate.storage.cache import SpendCacheUnavailableError
from costgate.storage.ledger import BudgetLedger, MergeResult
from costgate.pipeline.bus import EventBus, EventDeliveryFailed
from costgate.pipeline.runtime import CostPipeline
from costgate.config.settings import Settings

__all__ = [
    "BudgetScope",
    "BudgetWindow",
    "ScopeChain",
    "ScopeKind",
    "PriceEntry",
    "PricingConfigurationError",
    "PricingResolver",
    "PricingTier",
    "PricingUnit",
    "PricingUnavailableError",
    "CostBreakdown",
    "CostCalculator",
    "EstimatedUsage",
    "TokenEstimator",
    "UsageEstimator",
    "Severity",
    "SeverityStateMachine",
    "Thresholds",
    "AlertConfig",
    "BudgetLimit",
    "CompletedRequest",
    "UsageEvent",
    "BudgetThresholdReached",
    "CostCalculated",
    "CostTrackingFailed",
    "Allow",
    "BudgetExceededError",
    "Deny",
    "EnforcementGate",
    "SpendCacheUnavailableError",
    "BudgetLedger",
    "MergeResult",
    "EventBus",
    "EventDeliveryFailed",
    "CostPipeline",
    "Settings",
]
