"""Price resolution with a dynamic -> static -> universal fallback chain."""

import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from costgate.core.scopes import utcnow

if TYPE_CHECKING:
    from costgate.storage.pricing_store import PricingStore

logger = logging.getLogger(__name__)

DEFAULT_EFFECTIVE_DATE = date(2025, 1, 1)


class PricingError(Exception):
    """Base class for pricing failures."""


class PricingNotFoundError(PricingError):
    """Raised when pricing information is not found for a model."""


class PricingUnavailableError(PricingError):
    """Raised when the dynamic pricing store cannot be read."""


class PricingConfigurationError(PricingError):
    """Raised when the universal fallback entry is missing."""


class PricingUnitMismatchError(PricingError, ValueError):
    """Raised when converting between units with different base units."""


class PricingUnit(str, Enum):
    """Unit a rate is quoted in."""

    PER_TOKEN = "per_token"
    PER_1K_TOKENS = "1k_tokens"
    PER_1M_TOKENS = "1m_tokens"
    PER_CHARACTER = "per_character"
    PER_1K_CHARACTERS = "1k_characters"
    PER_SECOND = "per_second"
    PER_MINUTE = "per_minute"
    PER_HOUR = "per_hour"
    PER_REQUEST = "per_request"
    PER_IMAGE = "per_image"
    PER_AUDIO_FILE = "per_audio_file"
    PER_MB = "per_mb"
    PER_GB = "per_gb"

    @property
    def base_unit(self) -> "PricingUnit":
        """Unit this one normalizes to (1k/1m tokens -> token, and so on)."""
        return _BASE_UNITS.get(self, self)

    @property
    def multiplier(self) -> float:
        """How many base units one of this unit covers."""
        return _MULTIPLIERS.get(self, 1.0)

    @property
    def is_token_based(self) -> bool:
        return self.base_unit is PricingUnit.PER_TOKEN


_BASE_UNITS = {
    PricingUnit.PER_1K_TOKENS: PricingUnit.PER_TOKEN,
    PricingUnit.PER_1M_TOKENS: PricingUnit.PER_TOKEN,
    PricingUnit.PER_1K_CHARACTERS: PricingUnit.PER_CHARACTER,
    PricingUnit.PER_MINUTE: PricingUnit.PER_SECOND,
    PricingUnit.PER_HOUR: PricingUnit.PER_SECOND,
    PricingUnit.PER_GB: PricingUnit.PER_MB,
}

_MULTIPLIERS = {
    PricingUnit.PER_1K_TOKENS: 1_000.0,
    PricingUnit.PER_1M_TOKENS: 1_000_000.0,
    PricingUnit.PER_1K_CHARACTERS: 1_000.0,
    PricingUnit.PER_MINUTE: 60.0,
    PricingUnit.PER_HOUR: 3_600.0,
    PricingUnit.PER_GB: 1_024.0,
}


class PricingTier(str, Enum):
    """Where a resolved price came from."""

    DYNAMIC = "dynamic"
    STATIC = "static"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class PriceEntry:
    """Immutable price for one (provider, model) pair."""

    provider: str
    model: str
    unit: PricingUnit
    input_rate: float
    output_rate: float
    currency: str = "USD"
    effective_date: date = DEFAULT_EFFECTIVE_DATE
    source: PricingTier = PricingTier.STATIC

    def __post_init__(self) -> None:
        if not isinstance(self.unit, PricingUnit):
            object.__setattr__(self, "unit", PricingUnit(self.unit))
        if self.input_rate < 0 or self.output_rate < 0:
            raise ValueError(
                f"Rates must be non-negative for {self.provider}/{self.model}"
            )

    def cost(self, input_units: int, output_units: int) -> Tuple[float, float]:
        """Input and output cost for raw unit counts."""
        per = self.unit.multiplier
        return (input_units / per) * self.input_rate, (output_units / per) * self.output_rate

    def with_source(self, source: PricingTier) -> "PriceEntry":
        return replace(self, source=source)


def normalize(entry: PriceEntry, target_unit: PricingUnit) -> PriceEntry:
    """Re-express an entry's rates in another unit with the same base unit.

    Args:
        entry: Price entry to convert
        target_unit: Unit to quote the rates in (e.g. PER_1M_TOKENS)

    Returns:
        New PriceEntry quoted in ``target_unit``

    Raises:
        PricingUnitMismatchError: If the units measure different things.
    """
    target_unit = PricingUnit(target_unit)
    if entry.unit.base_unit is not target_unit.base_unit:
        raise PricingUnitMismatchError(
            f"Cannot convert {entry.unit.value} to {target_unit.value}"
        )
    factor = target_unit.multiplier / entry.unit.multiplier
    return replace(
        entry,
        unit=target_unit,
        input_rate=entry.input_rate * factor,
        output_rate=entry.output_rate * factor,
    )


def _entry_from_dict(provider: str, model: str, data: dict, source: PricingTier) -> PriceEntry:
    effective = data.get("effective_date")
    return PriceEntry(
        provider=provider,
        model=model,
        unit=PricingUnit(data.get("unit", PricingUnit.PER_1K_TOKENS.value)),
        input_rate=float(data["input"]),
        output_rate=float(data["output"]),
        currency=data.get("currency", "USD"),
        effective_date=date.fromisoformat(effective) if effective else DEFAULT_EFFECTIVE_DATE,
        source=source,
    )


class StaticPricingTable:
    """Compiled per-provider defaults loaded from pricing.json."""

    UNIVERSAL_KEY = "universal"
    ALIASES_KEY = "model_aliases"

    def __init__(self, pricing_file_path: Optional[str] = None):
        """Initialize the static table.

        Args:
            pricing_file_path: Path to the pricing JSON file. If None, uses the
                bundled config/pricing.json.
        """
        self._pricing_data: Dict[str, Dict[str, dict]] = {}
        self._aliases: Dict[str, str] = {}
        self._universal: Optional[dict] = None
        self._pricing_file_path = pricing_file_path
        self.load_pricing()

    def load_pricing(self) -> None:
        """Load pricing data from JSON file.

        Raises:
            FileNotFoundError: If the pricing file doesn't exist.
            json.JSONDecodeError: If the pricing file is invalid JSON.
        """
        if self._pricing_file_path:
            pricing_path = Path(self._pricing_file_path)
        else:
            package_dir = Path(__file__).parent.parent
            pricing_path = package_dir / "config" / "pricing.json"

        if not pricing_path.exists():
            raise FileNotFoundError(f"Pricing file not found: {pricing_path}")

        with open(pricing_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        self._aliases = data.pop(self.ALIASES_KEY, {})
        self._universal = data.pop(self.UNIVERSAL_KEY, None)
        self._pricing_data = {provider.lower(): models for provider, models in data.items()}

    def canonical_model(self, model_name: str) -> str:
        """Resolve model aliases to canonical names."""
        return self._aliases.get(model_name, model_name)

    def get(self, provider: str, model: str) -> PriceEntry:
        """Static entry for a model.

        Raises:
            PricingNotFoundError: If the provider or model is unknown.
        """
        models = self._pricing_data.get(provider.lower())
        resolved = self.canonical_model(model)
        if not models or resolved not in models:
            raise PricingNotFoundError(f"No static pricing for {provider}/{model}")
        return _entry_from_dict(provider.lower(), resolved, models[resolved], PricingTier.STATIC)

    def universal(self) -> Optional[PriceEntry]:
        """The universal fallback entry, if the file defines one."""
        if self._universal is None:
            return None
        return _entry_from_dict("*", "*", self._universal, PricingTier.FALLBACK)

    def list_providers(self) -> List[str]:
        return sorted(self._pricing_data)

    def list_supported_models(self, provider: str) -> List[str]:
        """List models with static pricing for a provider."""
        return sorted(self._pricing_data.get(provider.lower(), {}))

    def has_model(self, provider: str, model: str) -> bool:
        return self.canonical_model(model) in self._pricing_data.get(provider.lower(), {})


_MISSING = object()


class PricingResolver:
    """Resolves a unit price through dynamic store, static table, universal fallback.

    Before the first ``refresh`` dynamic lookups read the store and are cached
    (misses too) for ``cache_ttl_seconds``. After it they are served from an
    in-memory snapshot of the store, which the pipeline refreshes periodically.
    """

    def __init__(
        self,
        store: Optional["PricingStore"] = None,
        static_table: Optional[StaticPricingTable] = None,
        universal: Optional[PriceEntry] = None,
        cache_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the resolver.

        Args:
            store: Dynamic pricing store (skipped if None)
            static_table: Static defaults (bundled pricing.json if None)
            universal: Universal fallback entry (taken from the static table if None)
            cache_ttl_seconds: TTL for dynamic lookups
            clock: Monotonic clock, injectable for tests

        Raises:
            PricingConfigurationError: If no universal fallback entry is available.
        """
        self.store = store
        self.static_table = static_table or StaticPricingTable()
        universal = universal or self.static_table.universal()
        if universal is None:
            raise PricingConfigurationError(
                "No universal fallback price configured; add a 'universal' entry to the pricing file"
            )
        self.universal = universal.with_source(PricingTier.FALLBACK)
        self._ttl = cache_ttl_seconds
        self._clock = clock
        self._cache: Dict[Tuple[str, str, date], Tuple[float, Optional[PriceEntry]]] = {}
        self._snapshot: Optional[Dict[Tuple[str, str], List[PriceEntry]]] = None
        self._lock = threading.Lock()

    def resolve(
        self,
        provider: str,
        model: str,
        as_of: Optional[date] = None,
        cached_only: bool = False,
    ) -> Tuple[PriceEntry, PricingTier]:
        """Resolve the price for a (provider, model) pair. Never fails.

        Aliases are resolved first, so every tier is looked up under the
        canonical model name.

        Args:
            provider: Provider name (e.g. "openai")
            model: Model name or alias
            as_of: Date the price must be effective on (default: today, UTC)
            cached_only: Only consult the in-memory snapshot for dynamic prices,
                never the store

        Returns:
            Tuple of (PriceEntry, PricingTier)
        """
        as_of = as_of or utcnow().date()
        provider = provider.lower()
        model = self.static_table.canonical_model(model)

        entry = self._dynamic(provider, model, as_of, cached_only)
        if entry is not None:
            return entry, PricingTier.DYNAMIC

        try:
            entry = self.static_table.get(provider, model)
            return entry, PricingTier.STATIC
        except PricingNotFoundError:
            pass

        logger.warning(
            "No price for %s/%s; using universal fallback pricing", provider, model
        )
        return replace(self.universal, provider=provider, model=model), PricingTier.FALLBACK

    def normalize(self, entry: PriceEntry, target_unit: PricingUnit) -> PriceEntry:
        """Convert an entry to another pricing unit. See :func:`normalize`."""
        return normalize(entry, target_unit)

    def refresh(self) -> int:
        """Load every stored price into the in-memory snapshot.

        Once a snapshot exists, dynamic prices are served from it until the next
        refresh.

        Returns:
            Number of entries loaded

        Raises:
            PricingUnavailableError: If the store cannot be read. The previous
                snapshot stays in place.
        """
        if self.store is None:
            return 0
        snapshot: Dict[Tuple[str, str], List[PriceEntry]] = {}
        entries = self.store.list_entries()
        # list_entries is ordered newest effective date first per model.
        for entry in entries:
            key = (entry.provider.lower(), entry.model)
            snapshot.setdefault(key, []).append(entry.with_source(PricingTier.DYNAMIC))
        with self._lock:
            self._snapshot = snapshot
            self._cache.clear()
        logger.debug("Loaded %d dynamic prices", len(entries))
        return len(entries)

    def invalidate(self, provider: Optional[str] = None, model: Optional[str] = None) -> None:
        """Drop cached dynamic lookups (all, per provider, or per model)."""
        with self._lock:
            if provider is None:
                self._cache.clear()
                return
            provider = provider.lower()
            if model is not None:
                model = self.static_table.canonical_model(model)
            for key in list(self._cache):
                if key[0] == provider and (model is None or key[1] == model):
                    del self._cache[key]

    def _dynamic(
        self, provider: str, model: str, as_of: date, cached_only: bool
    ) -> Optional[PriceEntry]:
        with self._lock:
            snapshot = self._snapshot
        if snapshot is not None:
            for entry in snapshot.get((provider, model), ()):
                if entry.effective_date <= as_of:
                    return entry
            return None
        if cached_only:
            return None
        return self._from_store(provider, model, as_of)

    def _from_store(self, provider: str, model: str, as_of: date) -> Optional[PriceEntry]:
        if self.store is None:
            return None

        key = (provider, model, as_of)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(key, _MISSING)
        if cached is not _MISSING and now - cached[0] < self._ttl:
            return cached[1]

        try:
            entry = self.store.latest(provider, model, as_of)
        except PricingUnavailableError as e:
            logger.warning(
                "Pricing store unavailable for %s/%s (%s); degrading to static pricing",
                provider, model, e,
            )
            return None

        if entry is not None:
            entry = entry.with_source(PricingTier.DYNAMIC)
        with self._lock:
            self._cache[key] = (now, entry)
        return entry
