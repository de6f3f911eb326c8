"""Candidate selection for help requests.

`select_candidate` is a pure function: given the presence snapshot and a
session's exclusion state it decides who to invite next, or reports that
nobody is online (retry later) or that every responder has been tried for
too many passes (stop and ask the user).
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Callable, Optional, Sequence

from .presence import PresenceEntry


SelectionPolicy = Callable[[Sequence[PresenceEntry]], PresenceEntry]

DEFAULT_PASS_LIMIT = 2
DEFAULT_POLICY = "oldest_first"


class MatchOutcome(str, Enum):
    CANDIDATE = "candidate"
    EXHAUSTED = "exhausted"
    NO_CANDIDATES = "no-candidates"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one selection round.

    `tried` and `loop_count` are the session values the caller should keep
    after this round.  For a candidate, `tried` already contains the chosen
    responder; `new_pass` is set when the tried set was cleared to start a
    new pass.
    """

    outcome: MatchOutcome
    responder_id: Optional[str]
    tried: frozenset[str]
    loop_count: int
    new_pass: bool = False
    pool_size: int = 0

    @property
    def found(self) -> bool:
        return self.outcome is MatchOutcome.CANDIDATE


def oldest_first(available: Sequence[PresenceEntry]) -> PresenceEntry:
    """Longest-waiting responder first; ties keep snapshot order."""
    best = available[0]
    for entry in available[1:]:
        if entry.joined_at < best.joined_at:
            best = entry
    return best


def random_policy(rng: Optional[random.Random] = None) -> SelectionPolicy:
    """Uniform choice among candidates, with an injectable generator."""
    generator = rng or random.Random()

    def choose(available: Sequence[PresenceEntry]) -> PresenceEntry:
        return generator.choice(list(available))

    return choose


SELECTION_POLICIES: dict[str, Callable[[], SelectionPolicy]] = {
    "oldest_first": lambda: oldest_first,
    "random": random_policy,
}


def resolve_policy(name: str) -> SelectionPolicy:
    try:
        factory = SELECTION_POLICIES[name]
    except KeyError as exc:
        raise ValueError(f"Unknown selection policy: {name}") from exc
    return factory()


def select_candidate(
    requester_id: Optional[str],
    snapshot: Sequence[PresenceEntry],
    tried: AbstractSet[str],
    loop_count: int,
    *,
    pass_limit: int = DEFAULT_PASS_LIMIT,
    policy: SelectionPolicy = oldest_first,
    avoid: Optional[str] = None,
) -> MatchResult:
    pool = [entry for entry in snapshot if entry.id != requester_id]
    if not pool:
        return MatchResult(
            outcome=MatchOutcome.NO_CANDIDATES,
            responder_id=None,
            tried=frozenset(tried),
            loop_count=loop_count,
        )

    available = [entry for entry in pool if entry.id not in tried]
    new_pass = False
    if not available:
        completed_passes = loop_count + 1
        if completed_passes >= pass_limit:
            return MatchResult(
                outcome=MatchOutcome.EXHAUSTED,
                responder_id=None,
                tried=frozenset(tried),
                loop_count=completed_passes,
                pool_size=len(pool),
            )
        tried = frozenset()
        loop_count = completed_passes
        available = pool
        new_pass = True

    if avoid is not None and len(available) > 1:
        available = [entry for entry in available if entry.id != avoid]

    chosen = policy(available)
    return MatchResult(
        outcome=MatchOutcome.CANDIDATE,
        responder_id=chosen.id,
        tried=frozenset(tried) | {chosen.id},
        loop_count=loop_count,
        new_pass=new_pass,
        pool_size=len(pool),
    )
