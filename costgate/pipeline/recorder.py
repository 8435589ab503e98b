"""Prices completed requests and merges their cost into the budget ledger."""

import asyncio
import logging
from typing import Optional, Tuple

from costgate.core.calculator import CostBreakdown, CostCalculator
from costgate.core.estimator import UsageEstimator
from costgate.core.events import CostCalculated, CostTrackingFailed, Event, EventType
from costgate.core.models import CompletedRequest, RequestStatus, UsageEvent
from costgate.core.pricing import PricingTier
from costgate.storage.ledger import BudgetLedger

logger = logging.getLogger(__name__)


class CostRecorder:
    """Consumer of ResponseReceived; publishes CostCalculated.

    Recording is keyed by request id in the ledger, so redelivered events never
    double count. CostCalculated is published on redelivery too, so a crash
    between merging and publishing still reaches downstream consumers.
    """

    name = "cost-recorder"

    def __init__(
        self,
        ledger: BudgetLedger,
        calculator: CostCalculator,
        bus=None,
        estimator: Optional[UsageEstimator] = None,
    ):
        """Initialize the recorder.

        Args:
            ledger: Budget ledger to merge usage into
            calculator: Cost calculator backed by the pricing resolver
            bus: Event bus for follow-up events (None = record only)
            estimator: Usage estimator whose output baseline is fed with real sizes
        """
        self.ledger = ledger
        self.calculator = calculator
        self.bus = bus
        self.estimator = estimator

    async def handle(self, event: Event) -> None:
        """Bus handler for ResponseReceived events."""
        request: CompletedRequest = event.payload
        calculated, failure = await asyncio.to_thread(self.record, request)

        if self.bus is None:
            return
        if failure is not None:
            self.bus.publish(EventType.COST_TRACKING_FAILED, failure, key=request.request_id)
        self.bus.publish(EventType.COST_CALCULATED, calculated, key=request.request_id)

    def record(
        self, request: CompletedRequest
    ) -> Tuple[CostCalculated, Optional[CostTrackingFailed]]:
        """Price one completed request and merge it into the ledger.

        Returns:
            (CostCalculated, CostTrackingFailed or None when pricing went normally)
        """
        breakdown, failure = self._price(request)

        usage = UsageEvent(
            request_id=request.request_id,
            scope_chain=request.scope_chain,
            provider=request.provider,
            model=request.model,
            input_units=request.input_units,
            output_units=request.output_units,
            cost=breakdown.total_cost,
            timestamp=request.timestamp,
            currency=breakdown.currency,
            pricing_tier=breakdown.pricing_tier,
        )
        result = self.ledger.merge_usage(usage)

        if result.applied:
            logger.debug(
                "Recorded %s: %s", request.request_id, breakdown,
            )
            if self.estimator is not None and request.status is RequestStatus.SUCCESS:
                self.estimator.observe(request.provider, request.model, request.output_units)

        return CostCalculated(usage=usage, totals=result.totals, duplicate=not result.applied), failure

    def _price(self, request: CompletedRequest) -> Tuple[CostBreakdown, Optional[CostTrackingFailed]]:
        try:
            breakdown = self.calculator.calculate(
                request.provider,
                request.model,
                request.input_units,
                request.output_units,
                as_of=request.timestamp.date(),
            )
            return breakdown, None
        except Exception as e:
            error = str(e)
            logger.warning(
                "Pricing failed for request %s (%s/%s): %s; recording fallback estimate",
                request.request_id, request.provider, request.model, e,
            )

        universal = self.calculator.resolver.universal
        breakdown = self.calculator.calculate_with_entry(
            universal, request.input_units, request.output_units, tier=PricingTier.FALLBACK
        )
        failure = CostTrackingFailed(
            request_id=request.request_id,
            reason="pricing_failed",
            context={
                "provider": request.provider,
                "model": request.model,
                "input_units": request.input_units,
                "output_units": request.output_units,
                "estimated_cost": breakdown.total_cost,
                "error": error,
            },
        )
        return breakdown, failure
