"""Budget ledger: durable spend totals, limits, alert configuration and alert state."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from costgate.core.models import (
    AlertConfig,
    AlertRecord,
    AlertState,
    BudgetLimit,
    DeadLetter,
    SpendTotal,
    UsageEvent,
)
from costgate.core.pricing import PricingTier
from costgate.core.scopes import (
    AGGREGATE_WINDOWS,
    WINDOW_ORDER,
    BudgetScope,
    BudgetWindow,
    ScopeChain,
    ScopeKind,
    bucket_for,
    utcnow,
)
from costgate.core.severity import Severity, Thresholds
from costgate.storage.cache import SpendCache, SpendCacheUnavailableError, TTLCache
from costgate.storage.database import (
    AlertConfigRow,
    AlertHistoryRow,
    AlertStateRow,
    BudgetLimitRow,
    BudgetScopeRow,
    DatabaseManager,
    DeadLetterRow,
    SpendRecord,
    UsageEventRow,
    from_db_time,
    to_db_time,
    upsert_increment,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging one usage event into the ledger."""

    request_id: str
    applied: bool
    totals: Tuple[SpendTotal, ...]

    def total_for(self, scope: BudgetScope, window: BudgetWindow) -> Optional[float]:
        for total in self.totals:
            if total.scope == scope and total.window is window:
                return total.running_total
        return None


@dataclass(frozen=True)
class WindowStatus:
    """Spend against the limit of one window in its current bucket."""

    scope: BudgetScope
    window: BudgetWindow
    bucket: str
    spend: float
    limit: Optional[float]
    currency: str = "USD"

    @property
    def percentage(self) -> Optional[float]:
        if not self.limit:
            return None
        return self.spend / self.limit * 100

    @property
    def remaining(self) -> Optional[float]:
        if self.limit is None:
            return None
        return self.limit - self.spend


class BudgetLedger:
    """Durable, atomically incremented spend store plus per-scope budget settings.

    The enforcement path reads ``get_cached_limit`` and ``get_cached_spend``,
    which never touch the database: they serve a snapshot loaded by
    ``warm_cache`` and kept current by merges in this process and by periodic
    refreshes (see ``CostPipeline``). Everything else reads the database,
    through TTL caches where noted.
    """

    def __init__(
        self,
        db: DatabaseManager,
        spend_cache_ttl_seconds: float = 5.0,
        limit_cache_ttl_seconds: float = 60.0,
        default_alert_config: Optional[AlertConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the ledger.

        Args:
            db: Database manager (tables must exist, see ``DatabaseManager.init_db``)
            spend_cache_ttl_seconds: Interval between snapshot refreshes, i.e. the
                maximum staleness of spend written by other processes
            limit_cache_ttl_seconds: How long limits and alert configs are cached
                for reads outside the enforcement path
            default_alert_config: Used for scopes without their own alert config
            clock: Monotonic clock for the TTL caches, injectable for tests
        """
        self.db = db
        self.default_alert_config = default_alert_config or AlertConfig()
        self.refresh_interval_seconds = spend_cache_ttl_seconds
        self._spend_cache = SpendCache()
        self._limit_cache = TTLCache(limit_cache_ttl_seconds, clock=clock)
        self._config_cache = TTLCache(limit_cache_ttl_seconds, clock=clock)
        # Enforcement snapshot; None until the first warm_cache.
        self._limits: Optional[Dict[Tuple[str, str], BudgetLimit]] = None
        self._warm_buckets: Dict[BudgetWindow, str] = {}
        self._snapshot_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings, db: DatabaseManager) -> "BudgetLedger":
        default_config = AlertConfig(
            thresholds=Thresholds(
                warning=settings.default_warning_threshold,
                critical=settings.default_critical_threshold,
            ),
            renotify_cooldown_seconds=settings.renotify_cooldown_seconds,
        )
        return cls(
            db,
            spend_cache_ttl_seconds=settings.spend_cache_ttl_seconds,
            limit_cache_ttl_seconds=settings.limit_cache_ttl_seconds,
            default_alert_config=default_config,
        )

    # Scopes

    def register_scope(self, scope: BudgetScope) -> None:
        """Create or update a scope row, registering its parents first."""
        if scope.parent is not None:
            self.register_scope(scope.parent)
        with self.db.get_session() as session:
            session.merge(
                BudgetScopeRow(
                    kind=scope.kind.value,
                    identifier=scope.identifier,
                    parent_kind=scope.parent.kind.value if scope.parent else None,
                    parent_identifier=scope.parent.identifier if scope.parent else None,
                )
            )

    def get_scope(self, kind: ScopeKind, identifier: str) -> Optional[BudgetScope]:
        """Registered scope with its parent chain, or None."""
        with self.db.get_session() as session:
            row = session.get(BudgetScopeRow, (ScopeKind(kind).value, identifier))
            if row is None:
                return None
            parent_kind, parent_identifier = row.parent_kind, row.parent_identifier

        parent = None
        if parent_kind is not None:
            parent = self.get_scope(ScopeKind(parent_kind), parent_identifier)
        return BudgetScope(ScopeKind(kind), identifier, parent=parent)

    def list_scopes(self) -> List[BudgetScope]:
        with self.db.get_session() as session:
            keys = [(row.kind, row.identifier) for row in session.query(BudgetScopeRow).all()]
        scopes = [self.get_scope(ScopeKind(kind), identifier) for kind, identifier in keys]
        return sorted(scopes, key=lambda s: (s.kind.rank, s.identifier))

    # Limits

    def set_limit(
        self, scope: BudgetScope, window: BudgetWindow, amount: float, currency: str = "USD"
    ) -> BudgetLimit:
        """Create or replace the limit for (scope, window).

        Raises:
            ValueError: If ``amount`` is not positive.
        """
        limit = BudgetLimit(scope, BudgetWindow(window), float(amount), currency)
        self.register_scope(scope)
        with self.db.get_session() as session:
            session.merge(
                BudgetLimitRow(
                    scope_key=scope.key,
                    budget_window=limit.window.value,
                    amount=limit.amount,
                    currency=currency,
                    updated_at=to_db_time(utcnow()),
                )
            )
        self._limit_cache.invalidate((scope.key, limit.window.value))
        with self._snapshot_lock:
            if self._limits is not None:
                self._limits[(scope.key, limit.window.value)] = limit
        logger.info("Set %s limit for %s to %.4f %s", limit.window.value, scope, amount, currency)
        return limit

    def remove_limit(self, scope: BudgetScope, window: BudgetWindow) -> bool:
        window = BudgetWindow(window)
        with self.db.get_session() as session:
            deleted = (
                session.query(BudgetLimitRow)
                .filter(
                    BudgetLimitRow.scope_key == scope.key,
                    BudgetLimitRow.budget_window == window.value,
                )
                .delete(synchronize_session=False)
            )
        self._limit_cache.invalidate((scope.key, window.value))
        with self._snapshot_lock:
            if self._limits is not None:
                self._limits.pop((scope.key, window.value), None)
        return deleted > 0

    def get_budget_limit(self, scope: BudgetScope, window: BudgetWindow) -> Optional[BudgetLimit]:
        """Full limit record for (scope, window), served from the limit cache."""
        window = BudgetWindow(window)
        key = (scope.key, window.value)

        def load() -> Optional[BudgetLimit]:
            try:
                with self.db.get_session() as session:
                    row = session.get(BudgetLimitRow, key)
                    if row is None:
                        return None
                    return BudgetLimit(scope, window, row.amount, row.currency)
            except SQLAlchemyError as e:
                raise SpendCacheUnavailableError(f"Could not load limit for {scope}: {e}") from e

        return self._limit_cache.get_or_load(key, load)

    def get_cached_limit(self, scope: BudgetScope, window: BudgetWindow) -> Optional[BudgetLimit]:
        """Limit for (scope, window) from the enforcement snapshot. No I/O.

        Raises:
            SpendCacheUnavailableError: If the snapshot has never been loaded.
        """
        with self._snapshot_lock:
            if self._limits is None:
                raise SpendCacheUnavailableError("Budget limits have not been loaded yet")
            return self._limits.get((scope.key, BudgetWindow(window).value))

    def get_limit(self, scope: BudgetScope, window: BudgetWindow) -> Optional[float]:
        limit = self.get_budget_limit(scope, window)
        return limit.amount if limit else None

    def limits_for(self, scope: BudgetScope) -> List[BudgetLimit]:
        limits = (self.get_budget_limit(scope, window) for window in WINDOW_ORDER)
        return [limit for limit in limits if limit is not None]

    # Alert configuration

    def set_alert_config(self, scope: BudgetScope, config: AlertConfig) -> None:
        self.register_scope(scope)
        with self.db.get_session() as session:
            session.merge(
                AlertConfigRow(
                    scope_key=scope.key,
                    warning=config.thresholds.warning,
                    critical=config.thresholds.critical,
                    renotify_cooldown_seconds=config.renotify_cooldown_seconds,
                    enabled=config.enabled,
                )
            )
        self._config_cache.invalidate(scope.key)

    def get_alert_config(self, scope: BudgetScope) -> AlertConfig:
        """Alert config for a scope, falling back to the ledger default."""

        def load() -> AlertConfig:
            with self.db.get_session() as session:
                row = session.get(AlertConfigRow, scope.key)
                if row is None:
                    return self.default_alert_config
                return AlertConfig(
                    thresholds=Thresholds(warning=row.warning, critical=row.critical),
                    renotify_cooldown_seconds=row.renotify_cooldown_seconds,
                    enabled=row.enabled,
                )

        return self._config_cache.get_or_load(scope.key, load)

    # Spend

    def get_cached_spend(
        self, scope: BudgetScope, window: BudgetWindow, now: Optional[datetime] = None
    ) -> float:
        """Last known spend in the current bucket. No I/O.

        Totals merged by this process are current; totals written by other
        processes lag by up to one refresh interval. A bucket the snapshot covered
        (or a newer one) without an entry has no spend.

        Raises:
            SpendCacheUnavailableError: If the bucket was never loaded.
        """
        window = BudgetWindow(window)
        if window is BudgetWindow.PER_REQUEST:
            return 0.0
        bucket = bucket_for(window, now or utcnow())
        total = self._spend_cache.get((scope.key, window.value, bucket))
        if total is not None:
            return total

        with self._snapshot_lock:
            warm_bucket = self._warm_buckets.get(window)
        if warm_bucket is None or bucket < warm_bucket:
            raise SpendCacheUnavailableError(
                f"No cached {window.value} spend for {scope} in bucket {bucket}"
            )
        return 0.0

    def get_spend(self, scope: BudgetScope, window: BudgetWindow, bucket: str) -> float:
        """Durable spend total for one bucket, bypassing the cache."""
        return self._load_spend(scope.key, BudgetWindow(window).value, bucket)

    def _load_spend(self, scope_key: str, window: str, bucket: str) -> float:
        try:
            with self.db.get_session() as session:
                row = session.get(SpendRecord, (scope_key, window, bucket))
                return row.total if row else 0.0
        except SQLAlchemyError as e:
            raise SpendCacheUnavailableError(f"Spend store unavailable: {e}") from e

    def merge_usage(self, event: UsageEvent) -> MergeResult:
        """Apply a usage event to every (scope, aggregate window) of its chain, once.

        The usage event row and all increments share one transaction; the request
        id primary key makes a replay fail the insert, which turns the merge into
        a no-op that reports the current totals.
        """
        buckets = {window: bucket_for(window, event.timestamp) for window in AGGREGATE_WINDOWS}
        now = to_db_time(utcnow())

        try:
            with self.db.get_session() as session:
                session.add(
                    UsageEventRow(
                        request_id=event.request_id,
                        scope_chain=event.scope_chain.to_snapshot(),
                        provider=event.provider,
                        model=event.model,
                        input_units=event.input_units,
                        output_units=event.output_units,
                        cost=event.cost,
                        currency=event.currency,
                        pricing_tier=PricingTier(event.pricing_tier).value,
                        timestamp=to_db_time(event.timestamp),
                    )
                )
                session.flush()

                for scope in event.scope_chain:
                    for window, bucket in buckets.items():
                        upsert_increment(
                            session,
                            SpendRecord,
                            {"scope_key": scope.key, "budget_window": window.value, "bucket": bucket},
                            {"total": event.cost},
                            {"updated_at": now},
                        )
                        self._retire_older(session, scope.key, window, bucket)

                totals = self._read_totals(session, event.scope_chain, buckets)
            applied = True
        except IntegrityError:
            logger.info("Usage for request %s already recorded; skipping", event.request_id)
            stored = self.get_usage_event(event.request_id)
            chain, when = (stored.scope_chain, stored.timestamp) if stored else (
                event.scope_chain, event.timestamp,
            )
            buckets = {window: bucket_for(window, when) for window in AGGREGATE_WINDOWS}
            with self.db.get_session() as session:
                totals = self._read_totals(session, chain, buckets)
            applied = False

        for total in totals:
            self._spend_cache.record(
                (total.scope.key, total.window.value, total.bucket), total.running_total
            )
        return MergeResult(event.request_id, applied, totals)

    def _read_totals(self, session: Session, chain: ScopeChain, buckets) -> Tuple[SpendTotal, ...]:
        totals = []
        for scope in chain:
            for window, bucket in buckets.items():
                row = session.get(SpendRecord, (scope.key, window.value, bucket))
                totals.append(SpendTotal(scope, window, bucket, row.total if row else 0.0))
        return tuple(totals)

    def _retire_older(self, session: Session, scope_key: str, window: BudgetWindow, bucket: str) -> int:
        return (
            session.query(SpendRecord)
            .filter(
                SpendRecord.scope_key == scope_key,
                SpendRecord.budget_window == window.value,
                SpendRecord.bucket < bucket,
                SpendRecord.retired.is_(False),
            )
            .update({SpendRecord.retired: True}, synchronize_session=False)
        )

    def get_usage_event(self, request_id: str) -> Optional[UsageEvent]:
        with self.db.get_session() as session:
            row = session.get(UsageEventRow, request_id)
            if row is None:
                return None
            return UsageEvent(
                request_id=row.request_id,
                scope_chain=ScopeChain.from_snapshot(row.scope_chain),
                provider=row.provider,
                model=row.model,
                input_units=row.input_units,
                output_units=row.output_units,
                cost=row.cost,
                timestamp=from_db_time(row.timestamp),
                currency=row.currency,
                pricing_tier=PricingTier(row.pricing_tier),
            )

    def retire_stale_buckets(self, now: Optional[datetime] = None) -> int:
        """Mark every spend record older than the current bucket as retired."""
        now = now or utcnow()
        retired = 0
        with self.db.get_session() as session:
            for window in AGGREGATE_WINDOWS:
                retired += (
                    session.query(SpendRecord)
                    .filter(
                        SpendRecord.budget_window == window.value,
                        SpendRecord.bucket < bucket_for(window, now),
                        SpendRecord.retired.is_(False),
                    )
                    .update({SpendRecord.retired: True}, synchronize_session=False)
                )
        if retired:
            logger.info("Retired %d stale spend buckets", retired)
        return retired

    @property
    def is_warm(self) -> bool:
        with self._snapshot_lock:
            return self._limits is not None

    def warm_cache(self, now: Optional[datetime] = None) -> int:
        """Load every limit and every current-bucket spend total for the gate.

        Called at startup and then periodically; a failed refresh leaves the
        previous snapshot in place.

        Returns:
            Number of limits and spend totals loaded

        Raises:
            SpendCacheUnavailableError: If the store cannot be read.
        """
        now = now or utcnow()
        buckets = {window: bucket_for(window, now) for window in AGGREGATE_WINDOWS}
        try:
            with self.db.get_session() as session:
                limits = {
                    (row.scope_key, row.budget_window): BudgetLimit(
                        BudgetScope.parse(row.scope_key),
                        BudgetWindow(row.budget_window),
                        row.amount,
                        row.currency,
                    )
                    for row in session.query(BudgetLimitRow).all()
                }
                totals = [
                    ((row.scope_key, row.budget_window, row.bucket), row.total)
                    for window, bucket in buckets.items()
                    for row in session.query(SpendRecord).filter(
                        SpendRecord.budget_window == window.value,
                        SpendRecord.bucket == bucket,
                    )
                ]
        except SQLAlchemyError as e:
            raise SpendCacheUnavailableError(f"Could not refresh enforcement cache: {e}") from e

        for key, total in totals:
            self._spend_cache.record(key, total)
        current = {window.value: bucket for window, bucket in buckets.items()}
        dropped = self._spend_cache.discard_if(lambda key: key[2] < current[key[1]])
        with self._snapshot_lock:
            self._limits = limits
            self._warm_buckets = buckets

        logger.debug(
            "Refreshed %d limits and %d spend totals (dropped %d old)",
            len(limits), len(totals), dropped,
        )
        return len(limits) + len(totals)

    def status(self, scope: BudgetScope, now: Optional[datetime] = None) -> List[WindowStatus]:
        """Durable spend vs. limit for every window of a scope."""
        now = now or utcnow()
        statuses = []
        for window in WINDOW_ORDER:
            limit = self.get_budget_limit(scope, window)
            if window is BudgetWindow.PER_REQUEST:
                bucket, spend = "request", 0.0
            else:
                bucket = bucket_for(window, now)
                spend = self.get_spend(scope, window, bucket)
            statuses.append(
                WindowStatus(
                    scope=scope,
                    window=window,
                    bucket=bucket,
                    spend=spend,
                    limit=limit.amount if limit else None,
                    currency=limit.currency if limit else "USD",
                )
            )
        return statuses

    # Alert state

    def get_alert_state(self, scope: BudgetScope, window: BudgetWindow) -> Optional[AlertState]:
        window = BudgetWindow(window)
        with self.db.get_session() as session:
            row = session.get(AlertStateRow, (scope.key, window.value))
            if row is None:
                return None
            return AlertState(
                scope=scope,
                budget_type=window,
                bucket=row.bucket,
                last_severity=Severity.from_label(row.last_severity),
                last_notified_at=from_db_time(row.last_notified_at),
                version=row.version,
            )

    def save_alert_state(
        self,
        state: AlertState,
        expected_version: int,
        record: Optional[AlertRecord] = None,
    ) -> bool:
        """Compare-and-set write of an alert state.

        ``expected_version`` is the version that was read (0 when no row existed).
        ``record`` is appended to the alert history in the same transaction, so a
        lost race leaves no history behind. Returns False when another writer got
        there first.
        """
        values = {
            "bucket": state.bucket,
            "last_severity": state.last_severity.label,
            "last_notified_at": to_db_time(state.last_notified_at),
        }
        if expected_version == 0:
            try:
                with self.db.get_session() as session:
                    session.add(
                        AlertStateRow(
                            scope_key=state.scope.key,
                            budget_type=state.budget_type.value,
                            version=1,
                            **values,
                        )
                    )
                    session.flush()
                    if record is not None:
                        session.add(_history_row(record))
                return True
            except IntegrityError:
                return False

        with self.db.get_session() as session:
            updated = (
                session.query(AlertStateRow)
                .filter(
                    AlertStateRow.scope_key == state.scope.key,
                    AlertStateRow.budget_type == state.budget_type.value,
                    AlertStateRow.version == expected_version,
                )
                .update(
                    {**values, "version": expected_version + 1},
                    synchronize_session=False,
                )
            )
            if updated == 1 and record is not None:
                session.add(_history_row(record))
        return updated == 1

    # Alert history

    def list_alerts(
        self,
        scope: Optional[BudgetScope] = None,
        window: Optional[BudgetWindow] = None,
        limit: int = 50,
    ) -> List[AlertRecord]:
        """Alerts that were sent, newest first."""
        with self.db.get_session() as session:
            query = session.query(AlertHistoryRow)
            if scope is not None:
                query = query.filter(AlertHistoryRow.scope_key == scope.key)
            if window is not None:
                query = query.filter(AlertHistoryRow.budget_type == BudgetWindow(window).value)
            rows = query.order_by(AlertHistoryRow.id.desc()).limit(limit).all()
            return [
                AlertRecord(
                    scope=BudgetScope.parse(row.scope_key),
                    budget_type=BudgetWindow(row.budget_type),
                    bucket=row.bucket,
                    severity=Severity.from_label(row.severity),
                    current_spend=row.current_spend,
                    limit=row.limit_amount,
                    percentage=row.percentage,
                    currency=row.currency,
                    request_id=row.request_id,
                    renotification=row.renotification,
                    created_at=from_db_time(row.created_at),
                    id=row.id,
                )
                for row in rows
            ]

    def count_alerts(
        self, scope: Optional[BudgetScope] = None, since: Optional[datetime] = None
    ) -> Dict[Severity, int]:
        """Number of alerts sent per severity."""
        with self.db.get_session() as session:
            query = session.query(AlertHistoryRow.severity, func.count(AlertHistoryRow.id))
            if scope is not None:
                query = query.filter(AlertHistoryRow.scope_key == scope.key)
            if since is not None:
                query = query.filter(AlertHistoryRow.created_at >= to_db_time(since))
            counts = dict(query.group_by(AlertHistoryRow.severity).all())
        return {
            severity: counts.get(severity.label, 0)
            for severity in Severity
            if severity is not Severity.NONE
        }

    # Dead letters

    def record_dead_letter(self, dead_letter: DeadLetter) -> int:
        with self.db.get_session() as session:
            row = DeadLetterRow(
                event_id=dead_letter.event_id,
                event_type=dead_letter.event_type,
                key=dead_letter.key,
                consumer=dead_letter.consumer,
                error=dead_letter.error,
                attempts=dead_letter.attempts,
                payload=dead_letter.payload,
                created_at=to_db_time(dead_letter.created_at),
            )
            session.add(row)
            session.flush()
            return row.id

    def list_dead_letters(self, limit: int = 50, consumer: Optional[str] = None) -> List[DeadLetter]:
        """Most recent dead letters first."""
        with self.db.get_session() as session:
            query = session.query(DeadLetterRow)
            if consumer:
                query = query.filter(DeadLetterRow.consumer == consumer)
            rows = query.order_by(DeadLetterRow.id.desc()).limit(limit).all()
            return [
                DeadLetter(
                    event_type=row.event_type,
                    key=row.key,
                    consumer=row.consumer,
                    error=row.error,
                    attempts=row.attempts,
                    payload=row.payload or {},
                    event_id=row.event_id,
                    created_at=from_db_time(row.created_at),
                    id=row.id,
                )
                for row in rows
            ]


def _history_row(record: AlertRecord) -> AlertHistoryRow:
    return AlertHistoryRow(
        scope_key=record.scope.key,
        budget_type=record.budget_type.value,
        bucket=record.bucket,
        severity=record.severity.label,
        current_spend=record.current_spend,
        limit_amount=record.limit,
        percentage=record.percentage,
        currency=record.currency,
        request_id=record.request_id,
        renotification=record.renotification,
        created_at=to_db_time(record.created_at),
    )
