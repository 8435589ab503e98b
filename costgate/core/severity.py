"""Budget alert severity state machine.

States are ordered tiers; ``TRANSITIONS`` maps (stored tier, observed tier) to an
action. Only a strictly higher tier escalates, and staying in ``exceeded`` may
re-notify once the cooldown has passed. Lower observations never downgrade.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum, IntEnum
from typing import Dict, Optional, Tuple

from costgate.core.scopes import as_utc

# Float error allowed when comparing a percentage against a threshold.
PERCENT_TOLERANCE = 1e-9


class Severity(IntEnum):
    NONE = 0
    WARNING = 1
    CRITICAL = 2
    EXCEEDED = 3

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        return cls[label.upper()]


class Action(Enum):
    HOLD = "hold"
    ESCALATE = "escalate"
    RENOTIFY = "renotify"


N, W, C, E = Severity.NONE, Severity.WARNING, Severity.CRITICAL, Severity.EXCEEDED

TRANSITIONS: Dict[Tuple[Severity, Severity], Action] = {
    (N, N): Action.HOLD,
    (N, W): Action.ESCALATE,
    (N, C): Action.ESCALATE,
    (N, E): Action.ESCALATE,
    (W, N): Action.HOLD,
    (W, W): Action.HOLD,
    (W, C): Action.ESCALATE,
    (W, E): Action.ESCALATE,
    (C, N): Action.HOLD,
    (C, W): Action.HOLD,
    (C, C): Action.HOLD,
    (C, E): Action.ESCALATE,
    (E, N): Action.HOLD,
    (E, W): Action.HOLD,
    (E, C): Action.HOLD,
    (E, E): Action.RENOTIFY,
}


@dataclass(frozen=True)
class Thresholds:
    """Tier thresholds in percent of the limit."""

    warning: float = 75.0
    critical: float = 90.0
    exceeded: float = 100.0

    def __post_init__(self) -> None:
        if not 0 < self.warning < self.critical <= self.exceeded:
            raise ValueError(
                "Thresholds must satisfy 0 < warning < critical <= exceeded, got "
                f"{self.warning}/{self.critical}/{self.exceeded}"
            )

    def classify(self, percentage: float) -> Severity:
        """Highest tier whose threshold is met."""
        percentage += PERCENT_TOLERANCE
        if percentage >= self.exceeded:
            return Severity.EXCEEDED
        if percentage >= self.critical:
            return Severity.CRITICAL
        if percentage >= self.warning:
            return Severity.WARNING
        return Severity.NONE


@dataclass(frozen=True)
class Transition:
    previous: Severity
    observed: Severity
    state: Severity
    emit: bool
    renotification: bool = False


class SeverityStateMachine:
    """Pure transition function over (stored state, observed percentage)."""

    def __init__(self, thresholds: Thresholds, renotify_cooldown: timedelta):
        self.thresholds = thresholds
        self.renotify_cooldown = renotify_cooldown

    def step(
        self,
        previous: Severity,
        percentage: float,
        now: datetime,
        last_notified_at: Optional[datetime] = None,
    ) -> Transition:
        observed = self.thresholds.classify(percentage)
        action = TRANSITIONS[(previous, observed)]

        if action is Action.ESCALATE:
            return Transition(previous, observed, observed, emit=True)

        if action is Action.RENOTIFY:
            due = last_notified_at is None or (
                as_utc(now) - as_utc(last_notified_at) >= self.renotify_cooldown
            )
            return Transition(previous, observed, previous, emit=due, renotification=due)

        return Transition(previous, observed, previous, emit=False)
