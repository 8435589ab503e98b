"""Synchronous pre-flight enforcement of hierarchical budgets.

The gate evaluates an estimated cost against every (scope, window) limit of a
scope chain, narrowest scope first and narrowest window first, and returns the
first violation. It reads only in-memory snapshots of limits, spend and prices,
never the database. Admission is advisory: requests that race each other can all
be admitted against the same pre-update spend until the ledger records them.
"""

import concurrent.futures
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from costgate.core.calculator import CostBreakdown, CostCalculator
from costgate.core.estimator import EstimatedUsage, UsageEstimator
from costgate.core.scopes import WINDOW_ORDER, BudgetScope, BudgetWindow, ScopeChain, utcnow
from costgate.storage.cache import SpendCacheUnavailableError
from costgate.storage.ledger import BudgetLedger

logger = logging.getLogger(__name__)

REASON_LIMIT_EXCEEDED = "limit_exceeded"
REASON_UNAVAILABLE = "enforcement_unavailable"

# Absorbs float error in running totals; reaching a limit exactly is allowed.
LIMIT_TOLERANCE = 1e-9


class FailurePolicy(str, Enum):
    """What the gate answers when it cannot evaluate in time."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


@dataclass(frozen=True)
class Allow:
    estimated_cost: float
    degraded: bool = False
    reason: Optional[str] = None

    allowed = True


@dataclass(frozen=True)
class Deny:
    """Rejection naming the first (scope, window) whose limit would be exceeded."""

    scope: BudgetScope
    window: Optional[BudgetWindow]
    reason: str
    estimated_cost: float = 0.0
    current_spend: Optional[float] = None
    limit: Optional[float] = None
    currency: str = "USD"

    allowed = False

    @property
    def message(self) -> str:
        if self.reason == REASON_UNAVAILABLE:
            return f"Budget enforcement unavailable for {self.scope}; request rejected"
        return (
            f"Estimated cost ${self.estimated_cost:.4f} would exceed the {self.window.value} "
            f"limit ${self.limit:.4f} of {self.scope} (current spend ${self.current_spend:.4f})"
        )


Decision = Union[Allow, Deny]


class BudgetExceededError(Exception):
    """Raised by ``EnforcementGate.enforce`` when a request is denied."""

    def __init__(self, deny: Deny):
        self.deny = deny
        self.scope = deny.scope
        self.window = deny.window
        super().__init__(deny.message)


class EnforcementGate:
    """Pre-flight budget check, bounded by its own timeout."""

    # Admission reads possibly stale cached spend; concurrent requests are not serialized.
    advisory = True

    def __init__(
        self,
        ledger: BudgetLedger,
        calculator: CostCalculator,
        estimator: Optional[UsageEstimator] = None,
        failure_policy: Union[FailurePolicy, str] = FailurePolicy.FAIL_OPEN,
        timeout_ms: float = 50.0,
        max_workers: int = 8,
    ):
        """Initialize the gate.

        Args:
            ledger: Budget ledger providing cached spend and limits
            calculator: Cost calculator backed by the pricing resolver
            estimator: Upper-bound usage estimator (default settings if None)
            failure_policy: Behavior on timeout or unreachable spend data
            timeout_ms: Upper bound on one check, in milliseconds
            max_workers: Threads available for concurrent checks
        """
        self.ledger = ledger
        self.calculator = calculator
        self.estimator = estimator or UsageEstimator()
        self.failure_policy = FailurePolicy(failure_policy)
        self.timeout_ms = timeout_ms
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="costgate-gate"
        )

    def estimate(self, usage: EstimatedUsage) -> CostBreakdown:
        """Conservative cost estimate for a request that has not been sent."""
        input_units, output_units = self.estimator.estimate(usage)
        return self.calculator.calculate(
            usage.provider, usage.model, input_units, output_units, cached_only=True
        )

    def check(
        self,
        scope_chain: ScopeChain,
        usage: EstimatedUsage,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Allow or deny a request before it is dispatched. Never mutates the ledger.

        Args:
            scope_chain: Scopes the request is charged to, narrowest first
            usage: What is known about the request (prompt, max output, ...)
            now: Evaluation time (default: now, UTC)

        Returns:
            Allow, or Deny naming the first violated (scope, window)
        """
        future = self._executor.submit(self._evaluate, scope_chain, usage, now or utcnow())
        try:
            return future.result(timeout=self.timeout_ms / 1000)
        except concurrent.futures.TimeoutError:
            future.cancel()
            return self._unavailable(scope_chain, f"check timed out after {self.timeout_ms:g} ms")
        except SpendCacheUnavailableError as e:
            return self._unavailable(scope_chain, str(e))

    def enforce(
        self,
        scope_chain: ScopeChain,
        usage: EstimatedUsage,
        now: Optional[datetime] = None,
    ) -> Allow:
        """Like ``check`` but raises ``BudgetExceededError`` on Deny."""
        decision = self.check(scope_chain, usage, now=now)
        if isinstance(decision, Deny):
            raise BudgetExceededError(decision)
        return decision

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _evaluate(self, scope_chain: ScopeChain, usage: EstimatedUsage, now: datetime) -> Decision:
        estimate = self.estimate(usage)
        estimated_cost = estimate.total_cost

        for scope in scope_chain:
            for window in WINDOW_ORDER:
                limit = self.ledger.get_cached_limit(scope, window)
                if limit is None:
                    continue
                if limit.currency != estimate.currency:
                    logger.warning(
                        "Limit for %s is in %s but %s/%s is priced in %s; comparing as-is",
                        scope, limit.currency, usage.provider, usage.model, estimate.currency,
                    )
                spend = self.ledger.get_cached_spend(scope, window, now=now)
                if spend + estimated_cost > limit.amount + LIMIT_TOLERANCE:
                    logger.info(
                        "Denied request against %s %s limit: %.4f + %.4f > %.4f",
                        scope, window.value, spend, estimated_cost, limit.amount,
                    )
                    return Deny(
                        scope=scope,
                        window=window,
                        reason=REASON_LIMIT_EXCEEDED,
                        estimated_cost=estimated_cost,
                        current_spend=spend,
                        limit=limit.amount,
                        currency=limit.currency,
                    )

        return Allow(estimated_cost=estimated_cost)

    def _unavailable(self, scope_chain: ScopeChain, detail: str) -> Decision:
        if self.failure_policy is FailurePolicy.FAIL_CLOSED:
            logger.warning("Budget enforcement unavailable (%s); failing closed", detail)
            return Deny(scope=scope_chain.narrowest, window=None, reason=REASON_UNAVAILABLE)

        logger.warning("Budget enforcement unavailable (%s); failing open", detail)
        return Allow(estimated_cost=0.0, degraded=True, reason=REASON_UNAVAILABLE)
