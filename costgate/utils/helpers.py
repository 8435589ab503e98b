"""Utility functions and helpers."""

from typing import Optional


def format_cost(cost: Optional[float], currency: str = "USD") -> str:
    """Format cost as currency string.

    Args:
        cost: Cost value (None renders as a dash)
        currency: ISO currency code; USD is shown with a dollar sign

    Returns:
        Formatted cost string (e.g., "$0.00338")
    """
    if cost is None:
        return "-"
    if currency == "USD":
        return f"${cost:.5f}"
    return f"{cost:.5f} {currency}"


def format_units(units: int) -> str:
    """Format a unit count with thousands separator (e.g., "1,250")."""
    return f"{units:,}"


def format_percentage(percent: Optional[float]) -> str:
    """Format percentage value (e.g., "76.0%")."""
    if percent is None:
        return "-"
    return f"{percent:.1f}%"


def severity_style(percent: Optional[float], warning: float = 75.0, critical: float = 90.0) -> str:
    """Rich style for a spend percentage.

    Args:
        percent: Spend as percent of the limit
        warning: Warning threshold
        critical: Critical threshold

    Returns:
        Style name for rich markup
    """
    if percent is None:
        return "dim"
    if percent >= 100:
        return "bold red"
    if percent >= critical:
        return "red"
    if percent >= warning:
        return "yellow"
    return "green"


def truncate_text(text: str, max_length: int = 100) -> str:
    """Truncate text to maximum length.

    Args:
        text: Text to truncate
        max_length: Maximum length

    Returns:
        Truncated text with ellipsis if needed
    """
    if len(text) <= max_length:
        return text
    return text[:max_length - 3] + "..."
