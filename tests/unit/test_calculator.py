"""Unit tests for cost calculator."""

import pytest
from unittest.mock import Mock

from costgate.core.calculator import CostCalculator
from costgate.core.pricing import PriceEntry, PricingResolver, PricingTier, PricingUnit


@pytest.fixture
def mock_resolver():
    """Create a mock resolver quoting $0.001/1K input, $0.002/1K output."""
    resolver = Mock(spec=PricingResolver)
    resolver.resolve.return_value = (
        PriceEntry("openai", "gpt-test", PricingUnit.PER_1K_TOKENS, 0.001, 0.002),
        PricingTier.STATIC,
    )
    return resolver


@pytest.fixture
def calculator(mock_resolver):
    """Create a calculator with a mocked resolver."""
    return CostCalculator(resolver=mock_resolver)


def test_calculator_initialization():
    """Test calculator initialization."""
    calculator = CostCalculator()
    assert calculator is not None
    assert calculator.resolver is not None


def test_calculate_basic(calculator):
    """Test basic cost calculation."""
    result = calculator.calculate("openai", "gpt-test", 1000, 500)

    # Input: 1000 / 1000 * 0.001 = 0.001
    # Output: 500 / 1000 * 0.002 = 0.001
    assert result.input_cost == pytest.approx(0.001)
    assert result.output_cost == pytest.approx(0.001)
    assert result.total_cost == pytest.approx(0.002)
    assert result.input_units == 1000
    assert result.output_units == 500
    assert result.currency == "USD"
    assert result.pricing_tier is PricingTier.STATIC


def test_calculate_passes_effective_date(calculator, mock_resolver):
    """Test the price is resolved for the given date."""
    from datetime import date

    calculator.calculate("openai", "gpt-test", 10, 10, as_of=date(2025, 2, 1))

    mock_resolver.resolve.assert_called_once_with(
        "openai", "gpt-test", as_of=date(2025, 2, 1), cached_only=False
    )


def test_calculate_zero_units(calculator):
    """Test a request with no usage costs nothing."""
    result = calculator.calculate("openai", "gpt-test", 0, 0)
    assert result.total_cost == 0.0


def test_calculate_negative_units(calculator):
    """Test that negative unit counts are rejected."""
    with pytest.raises(ValueError):
        calculator.calculate("openai", "gpt-test", -1, 10)


def test_calculate_per_million_pricing():
    """Test calculation with rates quoted per million tokens."""
    calculator = CostCalculator()

    # gpt-4o: $2.50 / 1M input, $10.00 / 1M output
    result = calculator.calculate("openai", "gpt-4o", 1_000_000, 100_000)

    assert result.input_cost == pytest.approx(2.50)
    assert result.output_cost == pytest.approx(1.00)
    assert result.unit is PricingUnit.PER_1M_TOKENS


def test_calculate_unknown_model_uses_fallback():
    """Test that unknown models are priced with the universal entry."""
    calculator = CostCalculator()

    result = calculator.calculate("nobody", "unknown-model", 1000, 1000)

    assert result.pricing_tier is PricingTier.FALLBACK
    assert result.total_cost > 0


def test_calculate_with_entry():
    """Test calculation from an explicit entry keeps the requested tier."""
    calculator = CostCalculator()
    entry = PriceEntry("x", "y", PricingUnit.PER_REQUEST, 0.05, 0.0)

    result = calculator.calculate_with_entry(entry, 3, 0, tier=PricingTier.FALLBACK)

    assert result.total_cost == pytest.approx(0.15)
    assert result.pricing_tier is PricingTier.FALLBACK
