"""Unit tests for the enforcement gate."""

import time
import pytest
from datetime import datetime, timezone
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import Mock, patch

from costgate.config.settings import Settings
from costgate.core.calculator import CostBreakdown, CostCalculator
from costgate.core.estimator import EstimatedUsage, TokenEstimator, UsageEstimator
from costgate.core.gate import (
    REASON_LIMIT_EXCEEDED,
    REASON_UNAVAILABLE,
    Allow,
    BudgetExceededError,
    Deny,
    EnforcementGate,
    FailurePolicy,
)
from costgate.core.models import BudgetLimit, UsageEvent
from costgate.core.pricing import PricingTier, PricingUnit
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeChain, ScopeKind
from costgate.pipeline.runtime import CostPipeline
from costgate.storage.cache import SpendCacheUnavailableError
from costgate.storage.database import DatabaseManager
from costgate.storage.ledger import BudgetLedger

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

OWNER = BudgetScope(ScopeKind.REQUEST_OWNER, "alice")
PROJECT = BudgetScope(ScopeKind.PROJECT, "search")
CHAIN = ScopeChain([OWNER, PROJECT])
USAGE = EstimatedUsage("openai", "gpt-4o", input_units=1000, max_output_units=100)


def _calculator(total_cost):
    """Calculator that prices every request at ``total_cost``."""
    calculator = Mock(spec=CostCalculator)
    calculator.calculate.return_value = CostBreakdown(
        provider="openai",
        model="gpt-4o",
        input_units=1000,
        output_units=100,
        input_cost=total_cost,
        output_cost=0.0,
        total_cost=total_cost,
        currency="USD",
        unit=PricingUnit.PER_1M_TOKENS,
        pricing_tier=PricingTier.STATIC,
    )
    return calculator


def _spend(ledger, request_id, cost, chain=CHAIN):
    ledger.merge_usage(
        UsageEvent(request_id, chain, "openai", "gpt-4o", 1000, 100, cost, NOW)
    )


@pytest.fixture
def ledger():
    """Ledger backed by a temporary database."""
    with TemporaryDirectory() as tmpdir:
        db = DatabaseManager(str(Path(tmpdir) / "gate.db"))
        db.init_db()
        ledger = BudgetLedger(db)
        ledger.warm_cache(now=NOW)
        yield ledger
        db.dispose()


def _gate(ledger, total_cost, **kwargs):
    kwargs.setdefault("timeout_ms", 5000)
    return EnforcementGate(
        ledger,
        _calculator(total_cost),
        UsageEstimator(TokenEstimator("heuristic")),
        **kwargs,
    )


def test_allow_without_limits(ledger):
    """Test a request is allowed when no scope has a limit."""
    gate = _gate(ledger, 100.0)

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert isinstance(decision, Allow)
    assert decision.allowed
    assert decision.estimated_cost == 100.0
    assert not decision.degraded
    gate.close()


def test_deny_when_daily_limit_would_be_exceeded(ledger):
    """Test spend 9.50 plus an estimate of 1.00 is denied by a 10.00 daily limit."""
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
    _spend(ledger, "req-1", 9.50)
    gate = _gate(ledger, 1.00)

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert isinstance(decision, Deny)
    assert not decision.allowed
    assert decision.scope == PROJECT
    assert decision.window is BudgetWindow.DAILY
    assert decision.reason == REASON_LIMIT_EXCEEDED
    assert decision.current_spend == pytest.approx(9.50)
    assert decision.limit == 10.0
    assert "daily" in decision.message
    gate.close()


def test_allow_exactly_at_limit(ledger):
    """Test reaching the limit exactly is still allowed."""
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
    _spend(ledger, "req-1", 9.0)
    gate = _gate(ledger, 1.0)

    assert gate.check(CHAIN, USAGE, now=NOW).allowed
    gate.close()


def test_per_request_limit(ledger):
    """Test the per-request limit compares the estimate alone."""
    ledger.set_limit(OWNER, BudgetWindow.PER_REQUEST, 0.5)
    gate = _gate(ledger, 0.75)

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert decision.scope == OWNER
    assert decision.window is BudgetWindow.PER_REQUEST
    assert decision.current_spend == 0.0
    gate.close()


def test_first_violation_is_narrowest_scope(ledger):
    """Test the narrowest scope is reported when several limits are exceeded."""
    ledger.set_limit(OWNER, BudgetWindow.MONTHLY, 1.0)
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 1.0)
    gate = _gate(ledger, 2.0)

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert decision.scope == OWNER
    assert decision.window is BudgetWindow.MONTHLY
    gate.close()


def test_check_does_not_mutate_ledger(ledger):
    """Test allowed checks leave spend untouched."""
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
    gate = _gate(ledger, 1.0)

    for _ in range(3):
        gate.check(CHAIN, USAGE, now=NOW)

    assert ledger.get_spend(PROJECT, BudgetWindow.DAILY, "2025-01-15") == 0.0
    gate.close()


def test_concurrent_checks_are_advisory(ledger):
    """Test two checks against the same spend are both admitted.

    The gate does not reserve budget, so together they may overshoot the limit.
    """
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
    _spend(ledger, "req-1", 9.0)
    gate = _gate(ledger, 0.8)

    first = gate.check(CHAIN, USAGE, now=NOW)
    second = gate.check(CHAIN, USAGE, now=NOW)

    assert gate.advisory
    assert first.allowed
    assert second.allowed
    gate.close()


def test_enforce_raises_on_deny(ledger):
    """Test enforce raises BudgetExceededError carrying the Deny."""
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 1.0)
    gate = _gate(ledger, 2.0)

    with pytest.raises(BudgetExceededError) as exc_info:
        gate.enforce(CHAIN, USAGE, now=NOW)

    assert exc_info.value.scope == PROJECT
    assert exc_info.value.window is BudgetWindow.DAILY
    gate.close()


def _unavailable_ledger():
    ledger = Mock(spec=BudgetLedger)
    ledger.get_cached_limit.return_value = BudgetLimit(PROJECT, BudgetWindow.DAILY, 10.0)
    ledger.get_cached_spend.side_effect = SpendCacheUnavailableError("store down")
    return ledger


def test_fail_open_when_spend_unavailable():
    """Test fail-open admits the request flagged as degraded."""
    gate = _gate(_unavailable_ledger(), 1.0, failure_policy=FailurePolicy.FAIL_OPEN)

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert isinstance(decision, Allow)
    assert decision.degraded
    assert decision.reason == REASON_UNAVAILABLE
    gate.close()


def test_fail_closed_when_spend_unavailable():
    """Test fail-closed rejects the request."""
    gate = _gate(_unavailable_ledger(), 1.0, failure_policy="fail_closed")

    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert isinstance(decision, Deny)
    assert decision.reason == REASON_UNAVAILABLE
    assert decision.window is None
    assert decision.scope == OWNER
    gate.close()


def test_timeout_applies_failure_policy():
    """Test a check slower than the timeout falls back to the failure policy."""
    ledger = Mock(spec=BudgetLedger)

    def slow_limit(scope, window):
        time.sleep(0.5)
        return None

    ledger.get_cached_limit.side_effect = slow_limit
    gate = _gate(ledger, 1.0, timeout_ms=20, failure_policy=FailurePolicy.FAIL_CLOSED)

    started = time.monotonic()
    decision = gate.check(CHAIN, USAGE, now=NOW)

    assert time.monotonic() - started < 0.4
    assert isinstance(decision, Deny)
    assert decision.reason == REASON_UNAVAILABLE
    gate.close()


def test_estimate_uses_usage_estimator(ledger):
    """Test the estimate prices the estimator's unit counts."""
    calculator = _calculator(0.5)
    gate = EnforcementGate(ledger, calculator, UsageEstimator(TokenEstimator("heuristic")))

    gate.estimate(EstimatedUsage("openai", "gpt-4o", input_units=1000))

    calculator.calculate.assert_called_once_with("openai", "gpt-4o", 1000, 600, cached_only=True)
    gate.close()


def test_concurrent_checks_against_small_budget(ledger):
    """Test two 3.00 requests against a 5.00 budget are both admitted.

    Both checks read the same 0.00 spend; once both usages are merged the
    budget has been overshot to 6.00.
    """
    short_ttl = BudgetLedger(ledger.db, spend_cache_ttl_seconds=2)
    short_ttl.warm_cache(now=NOW)
    short_ttl.set_limit(PROJECT, BudgetWindow.DAILY, 5.0)
    gate = _gate(short_ttl, 3.0)

    first = gate.check(CHAIN, USAGE, now=NOW)
    second = gate.check(CHAIN, USAGE, now=NOW)

    assert first.allowed
    assert second.allowed

    _spend(short_ttl, "req-1", 3.0)
    _spend(short_ttl, "req-2", 3.0)

    assert short_ttl.get_spend(PROJECT, BudgetWindow.DAILY, "2025-01-15") == pytest.approx(6.0)
    assert short_ttl.get_cached_spend(PROJECT, BudgetWindow.DAILY, now=NOW) == pytest.approx(6.0)
    assert not gate.check(CHAIN, USAGE, now=NOW).allowed
    gate.close()


def test_check_never_opens_a_session(ledger):
    """Test a warm gate answers from memory without touching the database."""
    ledger.set_limit(PROJECT, BudgetWindow.DAILY, 10.0)
    _spend(ledger, "req-1", 9.5)
    gate = _gate(ledger, 1.0)

    with patch.object(ledger.db, "get_session", wraps=ledger.db.get_session) as sessions:
        decision = gate.check(CHAIN, USAGE, now=NOW)

    assert isinstance(decision, Deny)
    assert decision.current_spend == pytest.approx(9.5)
    assert sessions.call_count == 0
    gate.close()


def test_cold_cache_applies_failure_policy():
    """Test a ledger that was never loaded triggers the failure policy."""
    with TemporaryDirectory() as tmpdir:
        db = DatabaseManager(str(Path(tmpdir) / "cold.db"))
        db.init_db()
        gate = _gate(BudgetLedger(db), 1.0, failure_policy="fail_closed")

        decision = gate.check(CHAIN, USAGE, now=NOW)

        gate.close()
        db.dispose()

    assert isinstance(decision, Deny)
    assert decision.reason == REASON_UNAVAILABLE


def test_first_check_with_default_settings_does_not_wait_for_tokenizer(monkeypatch):
    """Test a slow tokenizer load does not push the first check past its timeout."""

    def slow_load(self, model):
        time.sleep(1.0)
        raise RuntimeError("tokenizer download still running")

    monkeypatch.setattr(TokenEstimator, "_load", slow_load)

    with TemporaryDirectory() as tmpdir:
        settings = Settings(database_path=str(Path(tmpdir) / "defaults.db"))
        pipeline = CostPipeline.from_settings(settings)
        pipeline.ledger.warm_cache()
        usage = EstimatedUsage("openai", "gpt-4o", prompt="How far is the moon? " * 20,
                               max_output_units=100)

        decision = pipeline.check(ScopeChain([PROJECT]), usage)
        pipeline.close()

    assert settings.token_estimation_mode == "tiktoken"
    assert settings.enforcement_timeout_ms == 50.0
    assert isinstance(decision, Allow)
    assert not decision.degraded
    assert decision.estimated_cost > 0
