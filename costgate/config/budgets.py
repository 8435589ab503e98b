"""Budget definitions (scopes, limits, alert thresholds) loaded from YAML.

Example::

    scopes:
      - kind: organization
        id: acme
        limits: {daily: 100, monthly: 2000}
      - kind: project
        id: search
        parent: organization:acme
        limits: {per_request: 0.5, daily: 10}
        alerts: {warning: 80, critical: 95}
"""

import logging
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from costgate.core.models import AlertConfig
from costgate.core.scopes import BudgetScope, BudgetWindow, ScopeKind
from costgate.core.severity import Thresholds

logger = logging.getLogger(__name__)


class AlertSettings(BaseModel):
    warning: float = 75.0
    critical: float = 90.0
    renotify_cooldown_seconds: float = Field(default=300.0, ge=0)
    enabled: bool = True

    @model_validator(mode="after")
    def _check_order(self) -> "AlertSettings":
        if not 0 < self.warning < self.critical <= 100:
            raise ValueError(
                f"Alert thresholds must satisfy 0 < warning < critical <= 100, "
                f"got {self.warning}/{self.critical}"
            )
        return self

    def to_alert_config(self) -> AlertConfig:
        return AlertConfig(
            thresholds=Thresholds(warning=self.warning, critical=self.critical),
            renotify_cooldown_seconds=self.renotify_cooldown_seconds,
            enabled=self.enabled,
        )


class ScopeConfig(BaseModel):
    kind: ScopeKind
    id: str = Field(min_length=1)
    parent: Optional[str] = Field(default=None, description="Parent scope as 'kind:id'")
    currency: str = "USD"
    limits: Dict[BudgetWindow, float] = Field(default_factory=dict)
    alerts: Optional[AlertSettings] = None

    @field_validator("limits")
    @classmethod
    def _positive_limits(cls, limits: Dict[BudgetWindow, float]) -> Dict[BudgetWindow, float]:
        for window, amount in limits.items():
            if amount <= 0:
                raise ValueError(f"{window.value} limit must be > 0, got {amount}")
        return limits

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.id}"


class BudgetConfig(BaseModel):
    scopes: List[ScopeConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_parents(self) -> "BudgetConfig":
        keys = [scope.key for scope in self.scopes]
        if len(keys) != len(set(keys)):
            raise ValueError("Scopes must be unique by kind and id")
        for scope in self.scopes:
            if scope.parent is not None and scope.parent not in keys:
                raise ValueError(f"Parent {scope.parent!r} of {scope.key} is not defined")
        return self


def load_budget_config(path: str) -> BudgetConfig:
    """Read and validate a YAML budget file."""
    import yaml

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return BudgetConfig.model_validate(data)


def apply_budget_config(config: BudgetConfig, ledger) -> List[BudgetScope]:
    """Register every scope, limit and alert config of ``config`` in the ledger.

    Returns:
        The configured scopes, widest first, with parent links resolved
    """
    by_key = {scope.key: scope for scope in config.scopes}
    built: Dict[str, BudgetScope] = {}

    def build(key: str) -> BudgetScope:
        if key not in built:
            item = by_key[key]
            parent = build(item.parent) if item.parent else None
            built[key] = BudgetScope(item.kind, item.id, parent=parent)
        return built[key]

    ordered = sorted(config.scopes, key=lambda s: -s.kind.rank)
    for item in ordered:
        scope = build(item.key)
        ledger.register_scope(scope)
        for window, amount in item.limits.items():
            ledger.set_limit(scope, window, amount, item.currency)
        if item.alerts is not None:
            ledger.set_alert_config(scope, item.alerts.to_alert_config())

    logger.info("Applied budget configuration for %d scope(s)", len(ordered))
    return [built[item.key] for item in ordered]
