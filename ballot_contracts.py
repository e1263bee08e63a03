#!/usr/bin/env python3
"""
POA Governance Ballot Contracts

Adapters over the three ballot voting contracts (validator keys, consensus
minimum threshold, proxy contract address) and the validator metadata
contract. Each ballot adapter exposes the same operation set even though the
deployed contracts differ in method names and signatures across releases.

Write operations only encode call data (see PreparedCall); sending is done by
the submission pipeline in ballot_submitter.py.
"""

from abc import abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from governance_base import GovernanceContract
from governance_utils import (
    ZERO_ADDRESS, BallotType, KeysBallotType, KeyType, VoteChoice,
    from_timestamp, to_ascii, logger
)
from network_addresses import (
    BALLOTS_STORAGE, METADATA, POA_CONSENSUS, VOTING_TO_CHANGE_KEYS,
    VOTING_TO_CHANGE_MIN_THRESHOLD, VOTING_TO_CHANGE_PROXY
)

# BallotsStorage threshold type shared by keys and min threshold ballots
VOTERS_THRESHOLD_TYPE = 1


@dataclass(frozen=True)
class KeysChange:
    """Proposed validator key change"""
    affected_key: str
    affected_key_type: int
    mining_key: str
    ballot_type: int
    new_voting_key: str = ''
    new_payout_key: str = ''

    @property
    def adds_new_validator(self) -> bool:
        return (
            self.ballot_type == KeysBallotType.ADD
            and self.affected_key_type == KeyType.MINING
            and bool(self.new_voting_key or self.new_payout_key)
        )


@dataclass(frozen=True)
class ProxyChange:
    """Proposed implementation address for one of the proxy contracts"""
    proposed_address: str
    contract_type: int


ProposedValue = Union[KeysChange, int, ProxyChange]


@dataclass(frozen=True)
class BallotParams:
    """Input for creating a ballot; times are unix timestamps"""
    start_time: int
    end_time: int
    proposed_value: ProposedValue
    memo: str


@dataclass(frozen=True)
class Ballot:
    """Snapshot of one on-chain ballot; the ledger stays authoritative"""
    id: int
    ballot_type: BallotType
    creator: str
    creator_mining_key: str
    start_time: datetime
    end_time: datetime
    proposed_value: ProposedValue
    progress: int
    total_voters: int
    is_finalized: bool
    memo: str = ''


@dataclass
class PreparedCall:
    """Encoded contract call, ready to be sent as a transaction"""
    function_name: str
    contract_address: str
    data: str
    sender: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


def _coerce(enum_cls, value: Any) -> int:
    try:
        return enum_cls(int(value))
    except ValueError:
        return int(value)


class ValidatorMetadataContract(GovernanceContract):
    """Validator personal data, used to show ballot creators by name"""

    contract_name = 'ValidatorMetadata'
    address_role = METADATA

    async def get_full_name(self, mining_key: str) -> str:
        """
        Resolve a mining key to 'First Last'.

        Falls back to the mining key itself when no name is registered.
        """
        validator = await self.call_named('validators', mining_key)
        first_name = to_ascii(validator.get('firstName'))
        last_name = to_ascii(validator.get('lastName'))
        full_name = f"{first_name} {last_name}".strip()
        return full_name or mining_key


class BallotsStorageContract(GovernanceContract):
    """Votes each ballot family needs to pass"""

    contract_name = 'BallotsStorage'
    address_role = BALLOTS_STORAGE

    async def get_ballot_threshold(self, ballot_type: BallotType) -> int:
        """
        Minimum accepting votes for a ballot of this family to pass.

        Keys and min threshold ballots share the voters threshold; proxy
        ballots have their own, derived from the validator count.
        """
        if ballot_type == BallotType.PROXY:
            return int(await self.call(self.require_method('getProxyThreshold')))
        return int(await self.call('getBallotThreshold', VOTERS_THRESHOLD_TYPE))


class PoaConsensusContract(GovernanceContract):
    """Current validator set of the network"""

    contract_name = 'PoaNetworkConsensus'
    address_role = POA_CONSENSUS

    async def get_validators_length(self) -> int:
        return int(await self.call('getCurrentValidatorsLength'))


class BallotContract(GovernanceContract):
    """
    Common operations of the ballot voting contracts.

    Newer deployments renamed several methods; METHOD_FALLBACKS lists for each
    logical operation the current name followed by the older one.
    """

    ballot_type: BallotType
    CREATE_FALLBACK: str = ''

    def __init__(self, contract: Any, abi: List[Dict[str, Any]], address: str,
                 metadata: Optional[ValidatorMetadataContract] = None,
                 label: Optional[str] = None) -> None:
        super().__init__(contract, abi, address, label=label)
        self.metadata = metadata
        self.METHOD_FALLBACKS = {
            'createBallot': ('createBallot', self.CREATE_FALLBACK),
            'getBallotInfo': ('getBallotInfo', 'votingState'),
            'getIsFinalized': ('getIsFinalized',),
            'canBeFinalizedNow': ('canBeFinalizedNow',),
        }

    def input_count(self, method_name: str) -> int:
        for item in self.abi:
            if item.get('type') == 'function' and item.get('name') == method_name:
                return len(item.get('inputs', []))
        return 0

    # Setters (encode only)

    def create_ballot(self, params: BallotParams) -> PreparedCall:
        method_name = self.require_method('createBallot')
        args = self._creation_args(params)
        return PreparedCall(
            function_name=method_name,
            contract_address=self.address,
            data=self.encode(method_name, *args),
            parameters={'args': list(args)}
        )

    def vote(self, ballot_id: int, choice: VoteChoice, voting_key: str) -> PreparedCall:
        return PreparedCall(
            function_name='vote',
            contract_address=self.address,
            data=self.encode('vote', ballot_id, int(choice)),
            sender=voting_key,
            parameters={'id': ballot_id, 'choice': int(choice)}
        )

    def finalize(self, ballot_id: int, voting_key: str) -> PreparedCall:
        return PreparedCall(
            function_name='finalize',
            contract_address=self.address,
            data=self.encode('finalize', ballot_id),
            sender=voting_key,
            parameters={'id': ballot_id}
        )

    @abstractmethod
    def _creation_args(self, params: BallotParams) -> Tuple[Any, ...]:
        """Positional arguments of the createBallot call for this family"""
        pass

    @abstractmethod
    def _proposed_value(self, info: Dict[str, Any]) -> ProposedValue:
        """Decode the proposed change from raw ballot info"""
        pass

    # Getters

    async def next_ballot_id(self) -> int:
        return int(await self.call('nextBallotId'))

    async def is_active(self, ballot_id: int) -> bool:
        return bool(await self.call('isActive', ballot_id))

    async def is_valid_vote(self, ballot_id: int, voting_key: str) -> bool:
        return bool(await self.call('isValidVote', ballot_id, voting_key))

    async def has_already_voted(self, ballot_id: int, voting_key: str) -> bool:
        return bool(await self.call('hasAlreadyVoted', ballot_id, voting_key))

    async def can_be_finalized_now(self, ballot_id: int) -> Optional[bool]:
        """None when the deployed contract has no such check"""
        method_name = self.resolve_method('canBeFinalizedNow')
        if method_name is None:
            return None
        return bool(await self.call(method_name, ballot_id))

    async def get_ballot_info(self, ballot_id: int,
                              voting_key: Optional[str] = None) -> Dict[str, Any]:
        """Raw ballot state keyed by contract field name (e.g. 'progress')"""
        method_name = self.require_method('getBallotInfo')
        if self.input_count(method_name) > 1:
            return await self.call_named(method_name, ballot_id, voting_key or ZERO_ADDRESS)
        return await self.call_named(method_name, ballot_id)

    async def is_finalized(self, ballot_id: int) -> bool:
        method_name = self.resolve_method('getIsFinalized')
        if method_name is not None:
            return bool(await self.call(method_name, ballot_id))
        info = await self.get_ballot_info(ballot_id)
        return bool(info['isFinalized'])

    async def get_mining_by_voting_key(self, voting_key: str) -> str:
        return await self.call('getMiningByVotingKey', voting_key)

    async def get_validator_active_ballots(self, voting_key: str) -> int:
        """
        Count the active ballots created by the validator owning a voting key.

        An unregistered voting key makes the mining key lookup fail; it is
        counted as the zero address, which never has active ballots.
        """
        try:
            mining_key = await self.get_mining_by_voting_key(voting_key)
        except Exception as e:
            logger.debug(f"{self.label}: no mining key for {voting_key} ({e}), using zero address")
            mining_key = ZERO_ADDRESS
        return int(await self.call('validatorActiveBallots', mining_key))

    async def get_ballot_limit(self, voting_key: str) -> int:
        """How many more ballots this voting key may create on this contract"""
        current_limit = int(await self.call('getBallotLimitPerValidator'))
        return current_limit - await self.get_validator_active_ballots(voting_key)

    async def get_ballot(self, ballot_id: int) -> Ballot:
        """Fetch the full state of a ballot, with the creator resolved to a name"""
        info = await self.get_ballot_info(ballot_id)
        creator_key = info.get('creator') or ZERO_ADDRESS
        creator = creator_key
        if self.metadata is not None:
            creator = await self.metadata.get_full_name(creator_key)
        return Ballot(
            id=int(ballot_id),
            ballot_type=self.ballot_type,
            creator=creator,
            creator_mining_key=creator_key,
            start_time=from_timestamp(info['startTime']),
            end_time=from_timestamp(info['endTime']),
            proposed_value=self._proposed_value(info),
            progress=int(info['progress']),
            total_voters=int(info['totalVoters']),
            is_finalized=bool(info['isFinalized']),
            memo=info.get('memo') or ''
        )


class KeysBallotContract(BallotContract):
    """Ballots to add, remove or swap validator keys"""

    contract_name = 'VotingToChangeKeys'
    address_role = VOTING_TO_CHANGE_KEYS
    ballot_type = BallotType.KEYS
    CREATE_FALLBACK = 'createVotingForKeys'

    def create_ballot(self, params: BallotParams) -> PreparedCall:
        change = params.proposed_value
        if change.adds_new_validator and self.does_method_exist('createBallotToAddNewValidator'):
            return self.create_ballot_to_add_new_validator(params)
        return super().create_ballot(params)

    def create_ballot_to_add_new_validator(self, params: BallotParams) -> PreparedCall:
        change = params.proposed_value
        args = (
            params.start_time, params.end_time, change.affected_key,
            change.new_voting_key, change.new_payout_key, params.memo
        )
        return PreparedCall(
            function_name='createBallotToAddNewValidator',
            contract_address=self.address,
            data=self.encode('createBallotToAddNewValidator', *args),
            parameters={'args': list(args)}
        )

    def _creation_args(self, params: BallotParams) -> Tuple[Any, ...]:
        change = params.proposed_value
        return (
            params.start_time, params.end_time, change.affected_key,
            int(change.affected_key_type), change.mining_key, int(change.ballot_type), params.memo
        )

    async def are_ballot_params_valid(self, change: KeysChange) -> bool:
        """On-chain check that the key change makes sense for current validators"""
        return bool(await self.call(
            'areBallotParamsValid', int(change.ballot_type), change.affected_key,
            int(change.affected_key_type), change.mining_key
        ))

    def _proposed_value(self, info: Dict[str, Any]) -> KeysChange:
        return KeysChange(
            affected_key=info.get('affectedKey', ''),
            affected_key_type=_coerce(KeyType, info.get('affectedKeyType', 0)),
            mining_key=info.get('miningKey', ''),
            ballot_type=_coerce(KeysBallotType, info.get('ballotType', 0)),
            new_voting_key=info.get('newVotingKey', ''),
            new_payout_key=info.get('newPayoutKey', '')
        )


class MinThresholdBallotContract(BallotContract):
    """Ballots to change the consensus minimum threshold"""

    contract_name = 'VotingToChangeMinThreshold'
    address_role = VOTING_TO_CHANGE_MIN_THRESHOLD
    ballot_type = BallotType.MIN_THRESHOLD
    CREATE_FALLBACK = 'createBallotForMinThreshold'

    def _creation_args(self, params: BallotParams) -> Tuple[Any, ...]:
        return (params.start_time, params.end_time, int(params.proposed_value), params.memo)

    def _proposed_value(self, info: Dict[str, Any]) -> int:
        return int(info['proposedValue'])


class ProxyBallotContract(BallotContract):
    """Ballots to point one of the proxy contracts at a new implementation"""

    contract_name = 'VotingToChangeProxyAddress'
    address_role = VOTING_TO_CHANGE_PROXY
    ballot_type = BallotType.PROXY
    CREATE_FALLBACK = 'createBallotToChangeProxyAddress'

    def _creation_args(self, params: BallotParams) -> Tuple[Any, ...]:
        change = params.proposed_value
        return (
            params.start_time, params.end_time, change.proposed_address,
            int(change.contract_type), params.memo
        )

    def _proposed_value(self, info: Dict[str, Any]) -> ProxyChange:
        return ProxyChange(
            proposed_address=info['proposedValue'],
            contract_type=int(info.get('contractType', 0))
        )


BALLOT_CONTRACTS = {
    BallotType.KEYS: KeysBallotContract,
    BallotType.MIN_THRESHOLD: MinThresholdBallotContract,
    BallotType.PROXY: ProxyBallotContract,
}
