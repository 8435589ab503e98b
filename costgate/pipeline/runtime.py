"""Wires pricing, ledger, gate, bus and consumers into one pipeline."""

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from costgate.config.budgets import apply_budget_config, load_budget_config
from costgate.config.settings import Settings
from costgate.core.calculator import CostCalculator
from costgate.core.estimator import EstimatedUsage, TokenEstimator, UsageEstimator
from costgate.core.events import Event, EventType, MessageDispatched
from costgate.core.gate import Allow, Decision, EnforcementGate
from costgate.core.models import CompletedRequest
from costgate.core.pricing import PricingResolver, PricingUnavailableError, StaticPricingTable
from costgate.core.scopes import ScopeChain
from costgate.pipeline.analytics import AnalyticsAggregator
from costgate.pipeline.bus import EventBus
from costgate.pipeline.recorder import CostRecorder
from costgate.pipeline.thresholds import ThresholdEvaluator
from costgate.storage.cache import SpendCacheUnavailableError
from costgate.storage.database import DatabaseManager
from costgate.storage.ledger import BudgetLedger
from costgate.storage.pricing_store import PricingStore

logger = logging.getLogger(__name__)


def _payload_handler(handler: Callable[[Any], Any]) -> Callable[[Event], Any]:
    """Adapt a handler that takes a payload into a bus handler that takes an Event."""
    if inspect.iscoroutinefunction(handler):

        async def deliver(event: Event) -> None:
            await handler(event.payload)

    else:

        def deliver(event: Event) -> None:
            handler(event.payload)

    deliver.__qualname__ = getattr(handler, "__qualname__", repr(handler))
    return deliver


class CostPipeline:
    """The enforcement path and the accounting path over one ledger.

    Synchronous callers use ``check``/``enforce`` before dispatching a request and
    ``completed`` once its usage is known; everything after ``completed`` runs on
    the event bus.
    """

    def __init__(
        self,
        db: DatabaseManager,
        ledger: BudgetLedger,
        resolver: PricingResolver,
        gate: EnforcementGate,
        bus: EventBus,
        recorder: CostRecorder,
        evaluator: ThresholdEvaluator,
        analytics: AnalyticsAggregator,
        pricing_store: Optional[PricingStore] = None,
        pricing_refresh_seconds: float = 3600.0,
    ):
        self.db = db
        self.ledger = ledger
        self.resolver = resolver
        self.gate = gate
        self.bus = bus
        self.recorder = recorder
        self.evaluator = evaluator
        self.analytics = analytics
        self.pricing_store = pricing_store
        self.pricing_refresh_seconds = pricing_refresh_seconds
        self._refresher: Optional[asyncio.Task] = None

        bus.subscribe(EventType.RESPONSE_RECEIVED, recorder.handle, recorder.name)
        bus.subscribe(EventType.COST_CALCULATED, evaluator.handle, evaluator.name)
        bus.subscribe(EventType.COST_CALCULATED, analytics.handle, analytics.name)

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, db: Optional[DatabaseManager] = None
    ) -> "CostPipeline":
        """Build every component from settings and create the tables if needed."""
        settings = settings or Settings()
        if db is None:
            db = DatabaseManager(settings.get_database_url())
        db.init_db()

        pricing_store = PricingStore(db)
        resolver = PricingResolver(
            store=pricing_store,
            static_table=StaticPricingTable(settings.pricing_file_path),
            cache_ttl_seconds=settings.pricing_cache_ttl_seconds,
        )
        calculator = CostCalculator(resolver)
        estimator = UsageEstimator(
            TokenEstimator(settings.token_estimation_mode, load_on_demand=False),
            output_ratio=settings.default_output_ratio,
            safety_factor=settings.output_safety_factor,
        )
        ledger = BudgetLedger.from_settings(settings, db)
        gate = EnforcementGate(
            ledger,
            calculator,
            estimator,
            failure_policy=settings.enforcement_failure_policy,
            timeout_ms=settings.enforcement_timeout_ms,
        )
        bus = EventBus(
            shards=settings.bus_shards,
            max_queue_size=settings.bus_max_queue_size,
            max_attempts=settings.bus_max_attempts,
            backoff_min_seconds=settings.bus_backoff_min_seconds,
            backoff_max_seconds=settings.bus_backoff_max_seconds,
            dead_letter_sink=ledger.record_dead_letter,
        )

        if settings.budget_config_path:
            apply_budget_config(load_budget_config(settings.budget_config_path), ledger)

        return cls(
            db=db,
            ledger=ledger,
            resolver=resolver,
            gate=gate,
            bus=bus,
            recorder=CostRecorder(ledger, calculator, bus, estimator),
            evaluator=ThresholdEvaluator(ledger, bus),
            analytics=AnalyticsAggregator(db),
            pricing_store=pricing_store,
            pricing_refresh_seconds=settings.pricing_cache_ttl_seconds,
        )

    def warm(self) -> None:
        """Load limits, current spend, dynamic prices and tokenizers into memory.

        After this the gate answers without I/O. ``start`` calls it; synchronous
        callers that never start the bus (the CLI) call it directly.

        Raises:
            SpendCacheUnavailableError: If the ledger cannot be read.
        """
        self.ledger.warm_cache()
        self._refresh_pricing()
        models = [
            model
            for provider in self.resolver.static_table.list_providers()
            for model in self.resolver.static_table.list_supported_models(provider)
        ]
        self.gate.estimator.token_estimator.preload(models)

    async def start(self) -> None:
        """Retire stale buckets, warm the caches, then start the bus and the refresher."""
        await asyncio.to_thread(self.ledger.retire_stale_buckets)
        await asyncio.to_thread(self.warm)
        await self.bus.start()
        self._refresher = asyncio.create_task(self._refresh_caches(), name="costgate-cache-refresh")

    async def stop(self) -> None:
        """Stop the cache refresher, then drain and stop the bus."""
        if self._refresher is not None:
            self._refresher.cancel()
            try:
                await self._refresher
            except asyncio.CancelledError:
                pass
            self._refresher = None
        await self.bus.stop()

    async def _refresh_caches(self) -> None:
        """Reload the enforcement snapshots off the request path until cancelled."""
        loop = asyncio.get_running_loop()
        last_pricing = loop.time()
        while True:
            await asyncio.sleep(self.ledger.refresh_interval_seconds)
            try:
                await asyncio.to_thread(self.ledger.warm_cache)
            except SpendCacheUnavailableError as e:
                logger.warning("Budget cache refresh failed (%s); serving last known values", e)
            if loop.time() - last_pricing >= self.pricing_refresh_seconds:
                await asyncio.to_thread(self._refresh_pricing)
                last_pricing = loop.time()

    def _refresh_pricing(self) -> None:
        try:
            self.resolver.refresh()
        except PricingUnavailableError as e:
            logger.warning("Pricing refresh failed (%s); serving last known prices", e)

    async def join(self) -> None:
        await self.bus.join()

    def close(self) -> None:
        self.gate.close()
        self.db.dispose()

    def check(
        self, scope_chain: ScopeChain, usage: EstimatedUsage, now: Optional[datetime] = None
    ) -> Decision:
        return self.gate.check(scope_chain, usage, now=now)

    def enforce(
        self, scope_chain: ScopeChain, usage: EstimatedUsage, now: Optional[datetime] = None
    ) -> Allow:
        return self.gate.enforce(scope_chain, usage, now=now)

    def dispatched(
        self,
        request_id: str,
        scope_chain: ScopeChain,
        provider: str,
        model: str,
        estimated_cost: float = 0.0,
    ) -> Event:
        """Publish MessageDispatched for a request that passed the gate."""
        payload = MessageDispatched(
            request_id=request_id,
            scope_chain=scope_chain,
            provider=provider,
            model=model,
            estimated_cost=estimated_cost,
        )
        return self.bus.publish(EventType.MESSAGE_DISPATCHED, payload, key=request_id)

    def completed(self, request: CompletedRequest) -> Event:
        """Hand a completed request to the accounting path. Returns after enqueueing."""
        return self.bus.publish(EventType.RESPONSE_RECEIVED, request, key=request.request_id)

    def on_alert(self, handler: Callable[[Any], Any], name: Optional[str] = None) -> None:
        """Subscribe ``handler(BudgetThresholdReached)``; sync or async."""
        self.bus.subscribe(EventType.BUDGET_THRESHOLD_REACHED, _payload_handler(handler), name)

    def on_tracking_failed(self, handler: Callable[[Any], Any], name: Optional[str] = None) -> None:
        """Subscribe ``handler(CostTrackingFailed)``; sync or async."""
        self.bus.subscribe(EventType.COST_TRACKING_FAILED, _payload_handler(handler), name)

    def on_dispatched(self, handler: Callable[[Any], Any], name: Optional[str] = None) -> None:
        self.bus.subscribe(EventType.MESSAGE_DISPATCHED, _payload_handler(handler), name)
