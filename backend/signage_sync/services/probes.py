"""
Ordered endpoint probing.

Some Yodeck actions have no single documented endpoint. The fallback order is
declared as data (a list of `Candidate`) and executed by `run_candidates`:
2xx wins, 404/405 means "not supported here, try next", any other outcome is
logged and the next candidate is tried as well.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from signage_sync.integrations.yodeck_api import YodeckResponse

logger = logging.getLogger(__name__)

NOT_SUPPORTED_STATUSES = frozenset({404, 405})


@dataclass(frozen=True)
class Candidate:
    label: str
    call: Callable[[], Awaitable[YodeckResponse]]


@dataclass
class ProbeAttempt:
    label: str
    status: int
    error: str | None = None


@dataclass
class ProbeOutcome:
    accepted: bool
    winner: str | None = None
    response: YodeckResponse | None = None
    attempts: list[ProbeAttempt] = field(default_factory=list)

    @property
    def all_not_supported(self) -> bool:
        return bool(self.attempts) and all(a.status in NOT_SUPPORTED_STATUSES for a in self.attempts)

    @property
    def last_status(self) -> int | None:
        return self.attempts[-1].status if self.attempts else None


async def run_candidates(candidates: list[Candidate], *, tag: str = "probe") -> ProbeOutcome:
    outcome = ProbeOutcome(accepted=False)
    for candidate in candidates:
        result = await candidate.call()
        outcome.attempts.append(ProbeAttempt(candidate.label, result.status, result.error))
        if result.ok:
            outcome.accepted = True
            outcome.winner = candidate.label
            outcome.response = result
            return outcome
        if result.status in NOT_SUPPORTED_STATUSES:
            logger.debug(f"[{tag}] {candidate.label} -> {result.status}, trying next")
        else:
            logger.warning(f"[{tag}] {candidate.label} -> {result.status}: {result.error}")
    return outcome
