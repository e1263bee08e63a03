#!/usr/bin/env python3
"""
POA Governance Vote Tally

Derives displayable vote counts, percentages and the time-to-close countdown
from the raw counters a ballot contract stores. Everything here is computed
on demand from a snapshot; nothing polls or caches.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from ballot_contracts import Ballot
from governance_utils import logger, to_utc, utc_now

Votes = Union[int, float]


@dataclass(frozen=True)
class VoteTally:
    votes_for: Votes
    votes_against: Votes
    votes_for_percents: int
    votes_against_percents: int


@dataclass(frozen=True)
class Countdown:
    hours: int
    minutes: int
    seconds: int

    @property
    def is_over(self) -> bool:
        return self.hours == 0 and self.minutes == 0 and self.seconds == 0

    def __str__(self) -> str:
        if self.is_over:
            return "00:00:00"
        return f"{self.hours}:{self.minutes:02d}:{self.seconds:02d}"


def _half(value: int) -> Votes:
    # An odd sum only happens with malformed counters; keep the fraction visible
    return value // 2 if value % 2 == 0 else value / 2


def _percent(votes: Votes, total_voters: int) -> int:
    if total_voters <= 0:
        return 0
    ratio = Decimal(str(votes)) / Decimal(total_voters) * 100
    return int(ratio.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def calculate_tally(total_voters: int, progress: int) -> VoteTally:
    """
    Split the signed progress counter into for/against votes.

    Every vote moves progress by exactly one, so
    for = (total + progress) / 2 and against = (total - progress) / 2.
    A progress outside [-total, total] cannot come from valid votes; it is
    clamped so neither side goes negative.

    Args:
        total_voters: Voters eligible when the ballot was created
        progress: Net yes-minus-no vote delta

    Returns:
        VoteTally with counts and percentages (0 when total_voters <= 0)
    """
    total_voters = int(total_voters)
    progress = int(progress)

    bound = max(total_voters, 0)
    if abs(progress) > bound:
        clamped = max(-bound, min(progress, bound))
        logger.warning(
            f"Ballot progress {progress} out of range for {total_voters} voters, using {clamped}"
        )
        progress = clamped

    votes_for = _half(total_voters + progress)
    votes_against = _half(total_voters - progress)
    return VoteTally(
        votes_for=votes_for,
        votes_against=votes_against,
        votes_for_percents=_percent(votes_for, total_voters),
        votes_against_percents=_percent(votes_against, total_voters)
    )


def tally_for(ballot: Ballot) -> VoteTally:
    return calculate_tally(ballot.total_voters, ballot.progress)


def time_to_finish(end_time: datetime, now: Optional[datetime] = None) -> Countdown:
    """
    Countdown until a ballot closes.

    Hours are not wrapped into days; minutes and seconds wrap at 60. A ballot
    that already ended gives a zeroed countdown.
    """
    now = to_utc(now) if now is not None else utc_now()
    remaining = int((to_utc(end_time) - now).total_seconds())
    if remaining <= 0:
        return Countdown(0, 0, 0)
    hours, rest = divmod(remaining, 3600)
    minutes, seconds = divmod(rest, 60)
    return Countdown(hours, minutes, seconds)
