"""Unit tests for price resolution."""

import json
import pytest
from datetime import date
from pathlib import Path
from tempfile import NamedTemporaryFile, TemporaryDirectory
from unittest.mock import Mock

from costgate.core.pricing import (
    PriceEntry,
    PricingConfigurationError,
    PricingNotFoundError,
    PricingResolver,
    PricingTier,
    PricingUnavailableError,
    PricingUnit,
    PricingUnitMismatchError,
    StaticPricingTable,
    normalize,
)
from costgate.storage.database import DatabaseManager
from costgate.storage.pricing_store import PricingStore


@pytest.fixture
def sample_pricing_file():
    """Create a temporary pricing file for testing."""
    pricing_data = {
        "universal": {"input": 0.01, "output": 0.02, "unit": "1k_tokens"},
        "model_aliases": {"gpt-4-latest": "gpt-4"},
        "openai": {
            "gpt-4": {"input": 0.03, "output": 0.06, "unit": "1k_tokens"},
            "gpt-4o": {"input": 2.50, "output": 10.00, "unit": "1m_tokens"},
        },
        "Anthropic": {
            "claude-3-5-haiku": {"input": 0.80, "output": 4.00, "unit": "1m_tokens"},
        },
    }

    with NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump(pricing_data, f)
        temp_path = f.name

    yield temp_path

    # Cleanup
    Path(temp_path).unlink()


@pytest.fixture
def store():
    """Pricing store backed by a temporary SQLite database."""
    with TemporaryDirectory() as tmpdir:
        db = DatabaseManager(str(Path(tmpdir) / "pricing.db"))
        db.init_db()
        yield PricingStore(db)
        db.dispose()


def test_static_table_lookup(sample_pricing_file):
    """Test static lookups, aliases and provider case."""
    table = StaticPricingTable(pricing_file_path=sample_pricing_file)

    entry = table.get("openai", "gpt-4")
    assert entry.input_rate == 0.03
    assert entry.output_rate == 0.06
    assert entry.unit is PricingUnit.PER_1K_TOKENS

    assert table.get("OpenAI", "gpt-4-latest").model == "gpt-4"
    assert table.list_providers() == ["anthropic", "openai"]
    assert table.list_supported_models("openai") == ["gpt-4", "gpt-4o"]


def test_static_table_not_found(sample_pricing_file):
    """Test static lookup of an unknown model."""
    table = StaticPricingTable(pricing_file_path=sample_pricing_file)

    with pytest.raises(PricingNotFoundError):
        table.get("openai", "non-existent-model")


def test_pricing_file_not_found():
    """Test error when pricing file doesn't exist."""
    with pytest.raises(FileNotFoundError):
        StaticPricingTable(pricing_file_path="/non/existent/path.json")


def test_bundled_pricing_file_loads():
    """Test the bundled pricing file has a universal entry and known models."""
    table = StaticPricingTable()

    assert table.universal() is not None
    assert table.has_model("openai", "gpt-4o")
    assert table.has_model("anthropic", "claude-sonnet-4")


def test_resolver_requires_universal_entry():
    """Test the resolver refuses to start without a universal fallback."""
    with NamedTemporaryFile(mode='w', suffix='.json', delete=False) as f:
        json.dump({"openai": {"gpt-4": {"input": 0.03, "output": 0.06}}}, f)
        path = f.name

    try:
        with pytest.raises(PricingConfigurationError):
            PricingResolver(static_table=StaticPricingTable(path))
    finally:
        Path(path).unlink()


def test_resolve_static(sample_pricing_file):
    """Test resolution from the static table when there is no store."""
    resolver = PricingResolver(static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("openai", "gpt-4o")

    assert tier is PricingTier.STATIC
    assert entry.input_rate == 2.50
    assert entry.unit is PricingUnit.PER_1M_TOKENS


def test_resolve_unknown_model_uses_universal(sample_pricing_file):
    """Test that an unknown model never fails and gets the universal price."""
    resolver = PricingResolver(static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("mystery", "model-x")

    assert tier is PricingTier.FALLBACK
    assert entry.provider == "mystery"
    assert entry.model == "model-x"
    assert entry.input_rate == 0.01
    assert entry.output_rate == 0.02


def test_resolve_prefers_dynamic_entry(sample_pricing_file, store):
    """Test a stored price overrides the static default."""
    store.add_entry(PriceEntry("openai", "gpt-4", PricingUnit.PER_1K_TOKENS, 0.02, 0.04,
                               effective_date=date(2025, 3, 1)))
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("openai", "gpt-4", as_of=date(2025, 3, 15))

    assert tier is PricingTier.DYNAMIC
    assert entry.input_rate == 0.02


def test_resolve_dynamic_respects_effective_date(sample_pricing_file, store):
    """Test prices are only used from their effective date onwards."""
    store.add_entry(PriceEntry("openai", "gpt-4", "1k_tokens", 0.02, 0.04,
                               effective_date=date(2025, 3, 1)))
    store.add_entry(PriceEntry("openai", "gpt-4", "1k_tokens", 0.01, 0.02,
                               effective_date=date(2025, 6, 1)))
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    before, tier_before = resolver.resolve("openai", "gpt-4", as_of=date(2025, 2, 1))
    march, _ = resolver.resolve("openai", "gpt-4", as_of=date(2025, 4, 1))
    june, _ = resolver.resolve("openai", "gpt-4", as_of=date(2025, 6, 1))

    assert tier_before is PricingTier.STATIC
    assert before.input_rate == 0.03
    assert march.input_rate == 0.02
    assert june.input_rate == 0.01


def test_resolve_dynamic_entry_through_alias(sample_pricing_file, store):
    """Test an alias finds the dynamic price stored under its canonical model."""
    store.add_entry(PriceEntry("openai", "gpt-4", "1k_tokens", 0.02, 0.04,
                               effective_date=date(2025, 3, 1)))
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("openai", "gpt-4-latest", as_of=date(2025, 3, 15))

    assert tier is PricingTier.DYNAMIC
    assert entry.model == "gpt-4"
    assert entry.input_rate == 0.02

    resolver.refresh()
    entry, tier = resolver.resolve("OpenAI", "gpt-4-latest", as_of=date(2025, 3, 15), cached_only=True)
    assert tier is PricingTier.DYNAMIC
    assert entry.input_rate == 0.02


def test_refresh_serves_prices_from_snapshot(sample_pricing_file, store):
    """Test a refreshed resolver answers from memory and honours effective dates."""
    store.add_entry(PriceEntry("openai", "gpt-4", "1k_tokens", 0.02, 0.04,
                               effective_date=date(2025, 3, 1)))
    store.add_entry(PriceEntry("openai", "gpt-4", "1k_tokens", 0.01, 0.02,
                               effective_date=date(2025, 6, 1)))
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    assert resolver.refresh() == 2
    store.add_entry(PriceEntry("openai", "gpt-4o", "1m_tokens", 1.0, 4.0,
                               effective_date=date(2025, 1, 1)))

    before, tier_before = resolver.resolve("openai", "gpt-4", as_of=date(2025, 2, 1))
    march, _ = resolver.resolve("openai", "gpt-4", as_of=date(2025, 4, 1))
    june, _ = resolver.resolve("openai", "gpt-4", as_of=date(2025, 7, 1))
    gpt4o, tier_4o = resolver.resolve("openai", "gpt-4o", as_of=date(2025, 4, 1))

    assert tier_before is PricingTier.STATIC
    assert march.input_rate == 0.02
    assert june.input_rate == 0.01
    # added after the refresh
    assert tier_4o is PricingTier.STATIC
    assert gpt4o.input_rate == 2.50

    assert resolver.refresh() == 3
    assert resolver.resolve("openai", "gpt-4o", as_of=date(2025, 4, 1))[1] is PricingTier.DYNAMIC


def test_cached_only_never_reads_the_store(sample_pricing_file):
    """Test a resolver without a snapshot skips the store on the enforcement path."""
    store = Mock()
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("openai", "gpt-4", cached_only=True)

    assert tier is PricingTier.STATIC
    assert entry.input_rate == 0.03
    store.latest.assert_not_called()


def test_resolve_caches_dynamic_lookups(sample_pricing_file):
    """Test dynamic lookups are cached until the TTL passes."""
    now = [0.0]
    store = Mock()
    store.latest.return_value = PriceEntry("openai", "gpt-4", "1k_tokens", 0.02, 0.04)
    resolver = PricingResolver(
        store=store,
        static_table=StaticPricingTable(sample_pricing_file),
        cache_ttl_seconds=60,
        clock=lambda: now[0],
    )

    resolver.resolve("openai", "gpt-4", as_of=date(2025, 3, 1))
    resolver.resolve("openai", "gpt-4", as_of=date(2025, 3, 1))
    assert store.latest.call_count == 1

    now[0] = 61.0
    resolver.resolve("openai", "gpt-4", as_of=date(2025, 3, 1))
    assert store.latest.call_count == 2

    resolver.invalidate("openai", "gpt-4")
    resolver.resolve("openai", "gpt-4", as_of=date(2025, 3, 1))
    assert store.latest.call_count == 3


def test_resolve_degrades_when_store_unavailable(sample_pricing_file):
    """Test an unreachable store degrades to static pricing instead of failing."""
    store = Mock()
    store.latest.side_effect = PricingUnavailableError("connection refused")
    resolver = PricingResolver(store=store, static_table=StaticPricingTable(sample_pricing_file))

    entry, tier = resolver.resolve("openai", "gpt-4")

    assert tier is PricingTier.STATIC
    assert entry.input_rate == 0.03


def test_store_round_trip(store):
    """Test stored rates come back unchanged."""
    entry = PriceEntry("OpenAI", "gpt-4o", PricingUnit.PER_1M_TOKENS, 2.5, 10.0,
                       effective_date=date(2025, 1, 1))
    store.add_entry(entry)

    stored = store.latest("openai", "gpt-4o", date(2025, 1, 1))

    assert stored.provider == "openai"
    assert stored.source is PricingTier.DYNAMIC
    assert abs(stored.input_rate - 2.5) < 1e-9
    assert abs(stored.output_rate - 10.0) < 1e-9
    assert store.latest("openai", "gpt-4o", date(2024, 12, 31)) is None
    assert len(store.list_entries("openai")) == 1


def test_normalize_between_token_units():
    """Test converting rates between token units."""
    entry = PriceEntry("openai", "gpt-4o", PricingUnit.PER_1M_TOKENS, 2.50, 10.00)

    per_1k = normalize(entry, PricingUnit.PER_1K_TOKENS)
    per_token = normalize(entry, PricingUnit.PER_TOKEN)

    assert per_1k.unit is PricingUnit.PER_1K_TOKENS
    assert per_1k.input_rate == pytest.approx(0.0025)
    assert per_1k.output_rate == pytest.approx(0.01)
    assert per_token.input_rate == pytest.approx(2.5e-6)
    assert normalize(per_1k, PricingUnit.PER_1M_TOKENS).input_rate == pytest.approx(2.50)


def test_normalize_time_units():
    """Test converting rates between time units."""
    entry = PriceEntry("whisper", "large", PricingUnit.PER_MINUTE, 0.006, 0.0)

    per_hour = normalize(entry, PricingUnit.PER_HOUR)

    assert per_hour.input_rate == pytest.approx(0.36)


def test_normalize_unit_mismatch():
    """Test that converting tokens to seconds is rejected."""
    entry = PriceEntry("openai", "gpt-4", PricingUnit.PER_1K_TOKENS, 0.03, 0.06)

    with pytest.raises(PricingUnitMismatchError):
        normalize(entry, PricingUnit.PER_SECOND)


def test_price_entry_rejects_negative_rates():
    """Test negative rates are invalid."""
    with pytest.raises(ValueError):
        PriceEntry("openai", "gpt-4", PricingUnit.PER_1K_TOKENS, -0.01, 0.06)
