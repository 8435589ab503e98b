"""Durable, insert-only store for dynamically fed price entries."""

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from costgate.core.pricing import PriceEntry, PricingTier, PricingUnavailableError, PricingUnit
from costgate.storage.database import DatabaseManager, PriceEntryRow

logger = logging.getLogger(__name__)


def _to_entry(row: PriceEntryRow) -> PriceEntry:
    return PriceEntry(
        provider=row.provider,
        model=row.model,
        unit=PricingUnit(row.unit),
        input_rate=row.input_rate,
        output_rate=row.output_rate,
        currency=row.currency,
        effective_date=row.effective_date,
        source=PricingTier.DYNAMIC,
    )


class PricingStore:
    """Price entries written by an external feed (or an operator).

    Entries are never updated in place: a price change is a new row with a later
    effective date.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    def add_entry(self, entry: PriceEntry) -> int:
        """Insert a new price entry and return its row id.

        Raises:
            PricingUnavailableError: If the store cannot be written.
        """
        try:
            with self.db.get_session() as session:
                row = PriceEntryRow(
                    provider=entry.provider.lower(),
                    model=entry.model,
                    unit=entry.unit.value,
                    input_rate=entry.input_rate,
                    output_rate=entry.output_rate,
                    currency=entry.currency,
                    effective_date=entry.effective_date,
                )
                session.add(row)
                session.flush()
                row_id = row.id
        except SQLAlchemyError as e:
            raise PricingUnavailableError(f"Could not store price entry: {e}") from e

        logger.info(
            "Stored price for %s/%s effective %s",
            entry.provider, entry.model, entry.effective_date,
        )
        return row_id

    def latest(self, provider: str, model: str, as_of: date) -> Optional[PriceEntry]:
        """Newest entry effective on or before ``as_of``, or None.

        Raises:
            PricingUnavailableError: If the store cannot be read.
        """
        try:
            with self.db.get_session() as session:
                row = (
                    session.query(PriceEntryRow)
                    .filter(
                        PriceEntryRow.provider == provider.lower(),
                        PriceEntryRow.model == model,
                        PriceEntryRow.effective_date <= as_of,
                    )
                    .order_by(PriceEntryRow.effective_date.desc(), PriceEntryRow.id.desc())
                    .first()
                )
                return _to_entry(row) if row else None
        except SQLAlchemyError as e:
            raise PricingUnavailableError(f"Pricing store unavailable: {e}") from e

    def list_entries(self, provider: Optional[str] = None) -> List[PriceEntry]:
        """All stored entries, newest effective date first."""
        try:
            with self.db.get_session() as session:
                query = session.query(PriceEntryRow)
                if provider:
                    query = query.filter(PriceEntryRow.provider == provider.lower())
                rows = query.order_by(
                    PriceEntryRow.provider,
                    PriceEntryRow.model,
                    PriceEntryRow.effective_date.desc(),
                    PriceEntryRow.id.desc(),
                ).all()
                return [_to_entry(row) for row in rows]
        except SQLAlchemyError as e:
            raise PricingUnavailableError(f"Pricing store unavailable: {e}") from e
