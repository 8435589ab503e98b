"""Budget scopes, scope chains and time windows.

Every level of the hierarchy (request owner, project, organization) is a plain
``BudgetScope``; a ``ScopeChain`` orders them narrowest first so enforcement and
accounting can walk every level the same way.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterator, List, Optional, Sequence, Tuple


class ScopeKind(str, Enum):
    """Level of the budget hierarchy."""

    REQUEST_OWNER = "request_owner"
    PROJECT = "project"
    ORGANIZATION = "organization"

    @property
    def rank(self) -> int:
        return SCOPE_ORDER.index(self)


SCOPE_ORDER: Tuple[ScopeKind, ...] = (
    ScopeKind.REQUEST_OWNER,
    ScopeKind.PROJECT,
    ScopeKind.ORGANIZATION,
)


class BudgetWindow(str, Enum):
    """Time bucket a limit applies to."""

    PER_REQUEST = "per_request"
    DAILY = "daily"
    MONTHLY = "monthly"


# Narrowest first; this is also the evaluation order of the enforcement gate.
WINDOW_ORDER: Tuple[BudgetWindow, ...] = (
    BudgetWindow.PER_REQUEST,
    BudgetWindow.DAILY,
    BudgetWindow.MONTHLY,
)

# Windows that accumulate spend across requests.
AGGREGATE_WINDOWS: Tuple[BudgetWindow, ...] = (BudgetWindow.DAILY, BudgetWindow.MONTHLY)


def as_utc(when: datetime) -> datetime:
    """Return an aware UTC datetime; naive values are taken to be UTC already."""
    if when.tzinfo is None:
        return when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def bucket_for(window: BudgetWindow, when: datetime, request_id: Optional[str] = None) -> str:
    """Bucket key for a window at a point in time.

    Args:
        window: Budget window
        when: Timestamp (UTC or naive UTC)
        request_id: Request id, used as the bucket for per-request windows

    Returns:
        Bucket key such as ``2025-01-15`` (daily) or ``2025-01`` (monthly)
    """
    when = as_utc(when)
    if window is BudgetWindow.DAILY:
        return when.strftime("%Y-%m-%d")
    if window is BudgetWindow.MONTHLY:
        return when.strftime("%Y-%m")
    return request_id or "request"


@dataclass(frozen=True)
class BudgetScope:
    """One level of the budget hierarchy. Identity is (kind, identifier)."""

    kind: ScopeKind
    identifier: str
    parent: Optional["BudgetScope"] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, ScopeKind):
            object.__setattr__(self, "kind", ScopeKind(self.kind))
        if not self.identifier:
            raise ValueError("Scope identifier must not be empty")
        if self.parent is not None and self.parent.kind.rank <= self.kind.rank:
            raise ValueError(
                f"Parent of a {self.kind.value} scope must be a wider scope, "
                f"got {self.parent.kind.value}"
            )

    @property
    def key(self) -> str:
        return f"{self.kind.value}:{self.identifier}"

    @classmethod
    def parse(cls, key: str) -> "BudgetScope":
        """Parse ``kind:identifier`` (e.g. ``project:search``)."""
        kind, sep, identifier = key.partition(":")
        if not sep:
            raise ValueError(f"Scope must look like 'kind:identifier', got {key!r}")
        return cls(ScopeKind(kind), identifier)

    def chain(self) -> "ScopeChain":
        """Scope chain from this scope up through its parents."""
        scopes: List[BudgetScope] = []
        node: Optional[BudgetScope] = self
        while node is not None:
            scopes.append(node)
            node = node.parent
        return ScopeChain(scopes)

    def __str__(self) -> str:
        return self.key


class ScopeChain:
    """Ordered ancestor list, narrowest first.

    Levels may be skipped (a request may belong to an organization without a
    project) but never reordered, and each kind appears at most once.
    """

    def __init__(self, scopes: Sequence[BudgetScope]):
        scopes = tuple(scopes)
        if not scopes:
            raise ValueError("A scope chain needs at least one scope")
        ranks = [scope.kind.rank for scope in scopes]
        if ranks != sorted(set(ranks)):
            raise ValueError(
                "Scope chain must be ordered request_owner -> project -> organization "
                f"without repeats, got {[s.key for s in scopes]}"
            )
        self._scopes: Tuple[BudgetScope, ...] = scopes

    @classmethod
    def of(
        cls,
        owner: Optional[str] = None,
        project: Optional[str] = None,
        organization: Optional[str] = None,
    ) -> "ScopeChain":
        """Build a chain from identifiers; omitted levels are skipped."""
        scopes = []
        if owner is not None:
            scopes.append(BudgetScope(ScopeKind.REQUEST_OWNER, owner))
        if project is not None:
            scopes.append(BudgetScope(ScopeKind.PROJECT, project))
        if organization is not None:
            scopes.append(BudgetScope(ScopeKind.ORGANIZATION, organization))
        return cls(scopes)

    def to_snapshot(self) -> List[Dict[str, str]]:
        """JSON-friendly snapshot stored with each usage event."""
        return [{"kind": s.kind.value, "id": s.identifier} for s in self._scopes]

    @classmethod
    def from_snapshot(cls, snapshot: Sequence[Dict[str, str]]) -> "ScopeChain":
        return cls([BudgetScope(ScopeKind(item["kind"]), item["id"]) for item in snapshot])

    @property
    def narrowest(self) -> BudgetScope:
        return self._scopes[0]

    def __iter__(self) -> Iterator[BudgetScope]:
        return iter(self._scopes)

    def __len__(self) -> int:
        return len(self._scopes)

    def __getitem__(self, index: int) -> BudgetScope:
        return self._scopes[index]

    def __contains__(self, scope: object) -> bool:
        return scope in self._scopes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ScopeChain):
            return NotImplemented
        return self._scopes == other._scopes

    def __hash__(self) -> int:
        return hash(self._scopes)

    def __repr__(self) -> str:
        return f"ScopeChain({' -> '.join(s.key for s in self._scopes)})"
