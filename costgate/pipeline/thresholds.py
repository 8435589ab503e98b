"""Turns spend totals into budget alerts without alert storms."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from costgate.core.events import BudgetThresholdReached, CostCalculated, Event, EventType
from costgate.core.models import AlertRecord, AlertState, SpendTotal
from costgate.core.scopes import AGGREGATE_WINDOWS, utcnow
from costgate.core.severity import Severity, SeverityStateMachine
from costgate.storage.ledger import BudgetLedger

logger = logging.getLogger(__name__)


class AlertStateConflict(Exception):
    """Raised when an alert state keeps changing underneath the evaluator."""


class ThresholdEvaluator:
    """Consumer of CostCalculated; publishes BudgetThresholdReached.

    The last notified severity per (scope, budget type) lives in the ledger as a
    versioned AlertState, so any number of evaluator instances agree on which
    tier has already been announced.
    """

    name = "threshold-evaluator"

    def __init__(
        self,
        ledger: BudgetLedger,
        bus=None,
        clock: Callable[[], datetime] = utcnow,
        max_conflicts: int = 5,
    ):
        self.ledger = ledger
        self.bus = bus
        self.clock = clock
        self.max_conflicts = max_conflicts

    async def handle(self, event: Event) -> None:
        """Bus handler for CostCalculated events."""
        alerts = await asyncio.to_thread(self.evaluate, event.payload)
        if self.bus is None:
            return
        for alert in alerts:
            self.bus.publish(EventType.BUDGET_THRESHOLD_REACHED, alert, key=event.key)

    def evaluate(self, calculated: CostCalculated) -> List[BudgetThresholdReached]:
        """Alerts due for the totals of one CostCalculated event."""
        alerts = []
        for total in calculated.totals:
            alert = self.evaluate_total(
                total,
                request_id=calculated.request_id,
                currency=calculated.usage.currency,
            )
            if alert is not None:
                alerts.append(alert)
        return alerts

    def evaluate_total(
        self,
        total: SpendTotal,
        request_id: Optional[str] = None,
        currency: Optional[str] = None,
    ) -> Optional[BudgetThresholdReached]:
        """Advance the severity state of one (scope, window) and return an alert if due.

        Raises:
            AlertStateConflict: If the compare-and-set write keeps losing.
        """
        if total.window not in AGGREGATE_WINDOWS:
            return None
        limit = self.ledger.get_budget_limit(total.scope, total.window)
        if limit is None:
            return None
        config = self.ledger.get_alert_config(total.scope)
        if not config.enabled:
            return None
        if currency and currency != limit.currency:
            logger.warning(
                "Spend for %s is in %s but its %s limit is in %s; comparing as-is",
                total.scope, currency, total.window.value, limit.currency,
            )

        machine = SeverityStateMachine(
            config.thresholds, timedelta(seconds=config.renotify_cooldown_seconds)
        )
        percentage = total.running_total / limit.amount * 100

        for _ in range(self.max_conflicts):
            now = self.clock()
            state = self.ledger.get_alert_state(total.scope, total.window)
            expected_version = state.version if state else 0

            if state is not None and state.bucket > total.bucket:
                logger.debug(
                    "Ignoring %s total for old bucket %s (state is at %s)",
                    total.scope, total.bucket, state.bucket,
                )
                return None
            if state is None or state.bucket < total.bucket:
                previous, last_notified_at = Severity.NONE, None
            else:
                previous, last_notified_at = state.last_severity, state.last_notified_at

            transition = machine.step(previous, percentage, now, last_notified_at)
            if not transition.emit:
                return None

            alert = BudgetThresholdReached(
                scope=total.scope,
                budget_type=total.window,
                severity=transition.state,
                current_spend=total.running_total,
                limit=limit.amount,
                percentage=percentage,
                bucket=total.bucket,
                currency=limit.currency,
                request_id=request_id,
                renotification=transition.renotification,
            )
            saved = self.ledger.save_alert_state(
                AlertState(
                    scope=total.scope,
                    budget_type=total.window,
                    bucket=total.bucket,
                    last_severity=transition.state,
                    last_notified_at=now,
                    version=expected_version + 1,
                ),
                expected_version=expected_version,
                record=_history_record(alert, now),
            )
            if not saved:
                logger.debug("Alert state for %s changed concurrently; re-evaluating", total.scope)
                continue

            logger.info(
                "Budget %s for %s %s: %.4f of %.4f (%.1f%%)",
                transition.state.label, total.scope, total.window.value,
                total.running_total, limit.amount, percentage,
            )
            return alert

        raise AlertStateConflict(
            f"Alert state for {total.scope} {total.window.value} changed {self.max_conflicts} "
            "times during evaluation"
        )


def _history_record(alert: BudgetThresholdReached, sent_at: datetime) -> AlertRecord:
    return AlertRecord(
        scope=alert.scope,
        budget_type=alert.budget_type,
        bucket=alert.bucket,
        severity=alert.severity,
        current_spend=alert.current_spend,
        limit=alert.limit,
        percentage=alert.percentage,
        currency=alert.currency,
        request_id=alert.request_id,
        renotification=alert.renotification,
        created_at=sent_at,
    )
