"""
Blocked-model policy.

Decides whether a model is usable at a given instant and, if not, which
fallback to suggest. Expiry is evaluated live on every query: an entry whose
``blocked_until`` has passed is never reported as blocked, whether or not a
maintenance pass has pruned it.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Mapping, Optional, Sequence, Tuple


def as_utc(moment: datetime) -> datetime:
    """Normalize a timestamp to aware UTC. Naive values are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class BlockEntry:
    """A model blocked until a point in time."""
    model: str
    blocked_until: datetime
    reason: str = ""

    def is_active(self, now: datetime) -> bool:
        return as_utc(now) < as_utc(self.blocked_until)


@dataclass(frozen=True)
class BlockStatus:
    """Result of a block query for one model at one instant."""
    blocked: bool
    reason: Optional[str] = None
    blocked_until: Optional[datetime] = None
    expired: bool = False


class BlockPolicy:
    """Blocked models, an ordered fallback list and an optional default model."""

    def __init__(
        self,
        entries: Iterable[BlockEntry] = (),
        fallback_order: Sequence[str] = (),
        default_model: Optional[str] = None
    ):
        self._entries: Mapping[str, BlockEntry] = {e.model: e for e in entries}
        self.fallback_order: Tuple[str, ...] = tuple(fallback_order)
        self.default_model = default_model

    @property
    def entries(self) -> Tuple[BlockEntry, ...]:
        return tuple(self._entries.values())

    def status(self, model: str, now: datetime) -> BlockStatus:
        entry = self._entries.get(model)
        if entry is None:
            return BlockStatus(blocked=False)
        if not entry.is_active(now):
            return BlockStatus(blocked=False, expired=True)
        return BlockStatus(
            blocked=True,
            reason=entry.reason,
            blocked_until=entry.blocked_until
        )

    def fallback_for(self, model: str, now: datetime) -> Optional[str]:
        """First fallback in declared order that is not ``model`` and not blocked at ``now``.

        Falls back to the default model, then None. The default model is
        subject to the same two exclusions.
        """
        for candidate in self.fallback_order:
            if candidate == model:
                continue
            if not self.status(candidate, now).blocked:
                return candidate

        default = self.default_model
        if default and default != model and not self.status(default, now).blocked:
            return default
        return None

    def prune_expired(self, now: datetime) -> "BlockPolicy":
        """Return a copy of this policy without entries that have expired at ``now``."""
        return BlockPolicy(
            entries=[e for e in self._entries.values() if e.is_active(now)],
            fallback_order=self.fallback_order,
            default_model=self.default_model
        )
