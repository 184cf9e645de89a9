"""Session Router – Channel Selection.

Pure tier evaluation over the connected candidate channels of one tenant.
Tiers are evaluated in this fixed order and the first non-empty one wins:

  1. tag override  – candidates carrying the force-priority tag
  2. rank 1        – candidates with priority == 1 (beats sticky affinity)
  3. sticky        – the channel the destination last used
  4. fallback      – lowest priority number

Ties inside a tier go to the lowest ``(priority, slot)``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Tier(str, Enum):
    TAG = "tag"
    RANK_1 = "rank_1"
    STICKY = "sticky"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class Candidate:
    slot_id: int
    address: str
    priority: int
    tags: tuple[str, ...] = field(default_factory=tuple)

    def has_tag(self, tag: str) -> bool:
        wanted = tag.strip().lower()
        return bool(wanted) and any(t.strip().lower() == wanted for t in self.tags)


def _best(candidates: list[Candidate]) -> Candidate:
    return min(candidates, key=lambda c: (c.priority, c.slot_id))


def exclude_self_send(candidates: list[Candidate], destination: str) -> list[Candidate]:
    """A channel never sends to its own number."""
    return [c for c in candidates if c.address != destination]


def select_channel(
    candidates: list[Candidate],
    sticky_address: str | None,
    force_tag: str,
) -> tuple[Candidate, Tier] | None:
    if not candidates:
        return None

    tagged = [c for c in candidates if c.has_tag(force_tag)]
    if tagged:
        return _best(tagged), Tier.TAG

    rank_1 = [c for c in candidates if c.priority == 1]
    if rank_1:
        return _best(rank_1), Tier.RANK_1

    if sticky_address:
        sticky = [c for c in candidates if c.address == sticky_address]
        if sticky:
            return _best(sticky), Tier.STICKY

    return _best(candidates), Tier.FALLBACK
