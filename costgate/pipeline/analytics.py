"""Additive reporting rollups by provider, model and scope."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from costgate.core.events import CostCalculated, Event
from costgate.core.scopes import as_utc
from costgate.storage.database import (
    AnalyticsRollup,
    DatabaseManager,
    ProcessedEvent,
    upsert_increment,
)

logger = logging.getLogger(__name__)

GRANULARITIES = ("hour", "day")
DIMENSIONS = ("provider", "model", "scope")

_BUCKET_FORMATS = {"hour": "%Y-%m-%dT%H", "day": "%Y-%m-%d"}


def rollup_bucket(granularity: str, when: datetime) -> str:
    """Bucket key, e.g. ``2025-01-15T13`` (hour) or ``2025-01-15`` (day)."""
    if granularity not in _BUCKET_FORMATS:
        raise ValueError(f"Unknown granularity {granularity!r}; expected one of {GRANULARITIES}")
    return as_utc(when).strftime(_BUCKET_FORMATS[granularity])


@dataclass(frozen=True)
class RollupRow:
    granularity: str
    bucket: str
    dimension: str
    value: str
    request_count: int
    input_units: int
    output_units: int
    cost: float


@dataclass
class RollupTotals:
    request_count: int = 0
    input_units: int = 0
    output_units: int = 0
    cost: float = 0.0


class AnalyticsAggregator:
    """Consumer of CostCalculated that maintains hourly and daily rollups.

    Each request id is applied once per aggregator (``processed_events``), in the
    same transaction as its increments.
    """

    name = "analytics-aggregator"

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def handle(self, event: Event) -> None:
        """Bus handler for CostCalculated events."""
        await asyncio.to_thread(self.apply, event.payload)

    def apply(self, calculated: CostCalculated) -> bool:
        """Add one priced request to every rollup. Returns False if already applied."""
        usage = calculated.usage
        dimensions: List[Tuple[str, str]] = [
            ("provider", usage.provider),
            ("model", f"{usage.provider}/{usage.model}"),
        ]
        dimensions.extend(("scope", scope.key) for scope in usage.scope_chain)

        try:
            with self.db.get_session() as session:
                session.add(ProcessedEvent(consumer=self.name, idempotency_key=usage.request_id))
                session.flush()

                for granularity in GRANULARITIES:
                    bucket = rollup_bucket(granularity, usage.timestamp)
                    for dimension, value in dimensions:
                        upsert_increment(
                            session,
                            AnalyticsRollup,
                            {
                                "granularity": granularity,
                                "bucket": bucket,
                                "dimension": dimension,
                                "value": value,
                            },
                            {
                                "request_count": 1,
                                "input_units": usage.input_units,
                                "output_units": usage.output_units,
                                "cost": usage.cost,
                            },
                        )
        except IntegrityError:
            logger.debug("Analytics already applied for %s", usage.request_id)
            return False
        return True

    def summary(
        self,
        granularity: str = "day",
        dimension: str = "provider",
        start: Optional[Union[datetime, str]] = None,
        end: Optional[Union[datetime, str]] = None,
    ) -> List[RollupRow]:
        """Rollup rows in ``[start, end]``, ordered by bucket then value.

        Args:
            granularity: "hour" or "day"
            dimension: "provider", "model" or "scope"
            start: First bucket (datetime or bucket string), inclusive
            end: Last bucket (datetime or bucket string), inclusive
        """
        with self.db.get_session() as session:
            rows = (
                self._filtered(session, granularity, dimension, start, end)
                .order_by(AnalyticsRollup.bucket, AnalyticsRollup.value)
                .all()
            )
            return [
                RollupRow(
                    granularity=row.granularity,
                    bucket=row.bucket,
                    dimension=row.dimension,
                    value=row.value,
                    request_count=row.request_count,
                    input_units=row.input_units,
                    output_units=row.output_units,
                    cost=row.cost,
                )
                for row in rows
            ]

    def totals(
        self,
        dimension: str = "provider",
        start: Optional[Union[datetime, str]] = None,
        end: Optional[Union[datetime, str]] = None,
        granularity: str = "day",
    ) -> Dict[str, RollupTotals]:
        """Per-value totals across all buckets in range, largest cost first."""
        with self.db.get_session() as session:
            rows = (
                self._filtered(session, granularity, dimension, start, end)
                .with_entities(
                    AnalyticsRollup.value,
                    func.sum(AnalyticsRollup.request_count),
                    func.sum(AnalyticsRollup.input_units),
                    func.sum(AnalyticsRollup.output_units),
                    func.sum(AnalyticsRollup.cost),
                )
                .group_by(AnalyticsRollup.value)
                .order_by(func.sum(AnalyticsRollup.cost).desc())
                .all()
            )
        return {
            value: RollupTotals(int(count or 0), int(inp or 0), int(out or 0), float(cost or 0.0))
            for value, count, inp, out, cost in rows
        }

    def _filtered(self, session: Session, granularity, dimension, start, end):
        if granularity not in GRANULARITIES:
            raise ValueError(f"Unknown granularity {granularity!r}; expected one of {GRANULARITIES}")
        if dimension not in DIMENSIONS:
            raise ValueError(f"Unknown dimension {dimension!r}; expected one of {DIMENSIONS}")

        query = session.query(AnalyticsRollup).filter(
            AnalyticsRollup.granularity == granularity,
            AnalyticsRollup.dimension == dimension,
        )
        if start is not None:
            query = query.filter(AnalyticsRollup.bucket >= self._as_bucket(granularity, start))
        if end is not None:
            query = query.filter(AnalyticsRollup.bucket <= self._as_bucket(granularity, end))
        return query

    @staticmethod
    def _as_bucket(granularity: str, value: Union[datetime, str]) -> str:
        if isinstance(value, datetime):
            return rollup_bucket(granularity, value)
        return value
