"""Cost calculation from unit counts and resolved prices."""

from dataclasses import dataclass
from datetime import date
from typing import Optional

from costgate.core.pricing import PriceEntry, PricingResolver, PricingTier, PricingUnit


@dataclass
class CostBreakdown:
    """Result of a cost calculation."""

    provider: str
    model: str
    input_units: int
    output_units: int
    input_cost: float
    output_cost: float
    total_cost: float
    currency: str
    unit: PricingUnit
    pricing_tier: PricingTier

    def __repr__(self) -> str:
        return (
            f"CostBreakdown(model={self.provider}/{self.model}, "
            f"total_cost=${self.total_cost:.6f}, "
            f"units={self.input_units}+{self.output_units}, "
            f"tier={self.pricing_tier.value})"
        )


class CostCalculator:
    """Calculates costs from unit counts."""

    def __init__(self, resolver: Optional[PricingResolver] = None):
        """Initialize the cost calculator.

        Args:
            resolver: Pricing resolver instance (creates default if None)
        """
        self.resolver = resolver or PricingResolver()

    def calculate(
        self,
        provider: str,
        model: str,
        input_units: int,
        output_units: int,
        as_of: Optional[date] = None,
        cached_only: bool = False,
    ) -> CostBreakdown:
        """Calculate cost for a (provider, model) pair.

        Args:
            provider: Provider name
            model: Model name
            input_units: Number of input units (tokens, characters, ...)
            output_units: Number of output units
            as_of: Date the price must be effective on (default: today)
            cached_only: Never read the pricing store (enforcement path)

        Returns:
            CostBreakdown with input, output and total cost

        Raises:
            ValueError: If a unit count is negative
        """
        entry, tier = self.resolver.resolve(provider, model, as_of=as_of, cached_only=cached_only)
        return self.calculate_with_entry(entry, input_units, output_units, tier=tier)

    def calculate_with_entry(
        self,
        entry: PriceEntry,
        input_units: int,
        output_units: int,
        tier: Optional[PricingTier] = None,
    ) -> CostBreakdown:
        """Calculate cost from an already resolved price entry."""
        if input_units < 0 or output_units < 0:
            raise ValueError(
                f"Unit counts must be non-negative, got {input_units}/{output_units}"
            )

        input_cost, output_cost = entry.cost(input_units, output_units)

        return CostBreakdown(
            provider=entry.provider,
            model=entry.model,
            input_units=input_units,
            output_units=output_units,
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            currency=entry.currency,
            unit=entry.unit,
            pricing_tier=tier or entry.source,
        )
