#!/usr/bin/env python3
"""
POA Governance Ballot Cache

In-memory, ordered collection of the ballots known to this client. Entries
are advisory snapshots; the ledger stays authoritative.

Writers are the submission pipeline (append/update after a confirmed
transaction) and a full refresh (replace). There is no locking: if a refresh
overlaps a pending submission the new ballot may show up twice, and readers
must tolerate that.
"""

from typing import Iterable, Iterator, List, Optional

from ballot_contracts import Ballot
from governance_utils import BallotType


class BallotCache:
    def __init__(self, ballots: Optional[Iterable[Ballot]] = None) -> None:
        self._ballots: List[Ballot] = list(ballots or [])

    def __len__(self) -> int:
        return len(self._ballots)

    def __iter__(self) -> Iterator[Ballot]:
        return iter(list(self._ballots))

    @property
    def ballots(self) -> List[Ballot]:
        return list(self._ballots)

    def append(self, ballot: Ballot) -> None:
        self._ballots.append(ballot)

    def update(self, ballot: Ballot) -> bool:
        """
        Replace every cached entry for the same ballot with a fresh snapshot.

        Returns:
            False if the ballot was not cached (nothing is added)
        """
        found = False
        for index, cached in enumerate(self._ballots):
            if cached.ballot_type == ballot.ballot_type and cached.id == ballot.id:
                self._ballots[index] = ballot
                found = True
        return found

    def replace(self, ballots: Iterable[Ballot]) -> None:
        self._ballots = list(ballots)

    def reset(self) -> None:
        self._ballots = []

    def get(self, ballot_type: BallotType, ballot_id: int) -> Optional[Ballot]:
        for ballot in self._ballots:
            if ballot.ballot_type == ballot_type and ballot.id == ballot_id:
                return ballot
        return None

    def search(self, term: Optional[str] = None, active_only: bool = False) -> List[Ballot]:
        """
        Filter ballots for display.

        Args:
            term: Case-insensitive text matched against proposed value and creator
            active_only: Hide finalized ballots
        """
        term = (term or '').lower()
        results = []
        for ballot in self._ballots:
            if active_only and ballot.is_finalized:
                continue
            if term and term not in str(ballot.proposed_value).lower() \
                    and term not in ballot.creator.lower():
                continue
            results.append(ballot)
        return results
