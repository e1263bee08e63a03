#!/usr/bin/env python3
"""
POA Governance Client

Wires the governance components together for the connected network: address
resolution, contract adapters, validation, ballot cache and the submission
pipeline. Every component is built once here and passed down explicitly.

Usage:
    # List ballots with their tallies
    python3 governance_client.py list --active

    # Show how many more ballots the voting key may create
    python3 governance_client.py --voting-key 0x... limits

    # Propose lowering the consensus threshold to 3
    python3 governance_client.py create minThreshold --proposed-value 3 --memo "Lower it" --end-time 2018-03-24T12:00

    # Vote on / finalize a ballot (key from GOVERNANCE_VOTING_PRIVATE_KEY)
    python3 governance_client.py vote keys 4 yes
    python3 governance_client.py finalize minThreshold 2
"""

import argparse
import asyncio
import os
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from web3 import AsyncWeb3

from ballot_cache import BallotCache
from ballot_contracts import (
    BALLOT_CONTRACTS, Ballot, BallotContract, BallotsStorageContract, PoaConsensusContract,
    ValidatorMetadataContract
)
from ballot_submitter import (
    LocalAccountSender, NodeAccountSender, SubmissionResult, SubmissionState,
    TransactionSubmissionPipeline
)
from ballot_validation import (
    BallotForm, BallotValidationEngine, KeysBallotFields, MinThresholdBallotFields,
    ProxyBallotFields, ValidatorPersonalData
)
from governance_utils import (
    DEFAULT_RPC_URL, PRIVATE_KEY_ENV, RPC_URL_ENV, AuthorizationError, BallotType,
    InvalidInputError, MissingAddressError, NetworkError, VoteChoice, format_ballot_time,
    logger, to_utc
)
from network_addresses import (
    BALLOTS_STORAGE, METADATA, POA_CONSENSUS, NetworkAddressResolver, NetworkAddressSet
)
from vote_tally import tally_for, time_to_finish

# Version
__version__ = "1.0.0"


class GovernanceClient:
    """Entry point for listing, creating, voting on and finalizing ballots"""

    def __init__(self, w3: AsyncWeb3, network_id: str, addresses: NetworkAddressSet,
                 adapters: Dict[BallotType, BallotContract], cache: BallotCache,
                 validator: BallotValidationEngine,
                 pipeline: Optional[TransactionSubmissionPipeline] = None,
                 voting_key: Optional[str] = None,
                 ballots_storage: Optional[BallotsStorageContract] = None,
                 consensus: Optional[PoaConsensusContract] = None) -> None:
        self.w3 = w3
        self.network_id = network_id
        self.addresses = addresses
        self.adapters = adapters
        self.cache = cache
        self.validator = validator
        self.pipeline = pipeline
        self.voting_key = voting_key
        self.ballots_storage = ballots_storage
        self.consensus = consensus

    @classmethod
    async def connect(cls, rpc_url: Optional[str] = None, voting_key: Optional[str] = None,
                      private_key: Optional[str] = None,
                      resolver: Optional[NetworkAddressResolver] = None) -> 'GovernanceClient':
        """
        Connect to a node and build every component for its network.

        A local private key (argument or GOVERNANCE_VOTING_PRIVATE_KEY) signs
        transactions itself; otherwise a voting key alone sends through the
        node's account. Without either, the client is read-only.
        """
        rpc_url = rpc_url or os.getenv(RPC_URL_ENV) or DEFAULT_RPC_URL
        w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        if not await w3.is_connected():
            raise NetworkError(f"Failed to connect to RPC: {rpc_url}")

        network_id = str(await w3.net.version)
        logger.info(f"Connected to network {network_id} at {rpc_url}")

        resolver = resolver or NetworkAddressResolver()
        addresses = await resolver.resolve(network_id)

        metadata_abi = await resolver.fetch_abi(network_id, ValidatorMetadataContract.contract_name)
        metadata = ValidatorMetadataContract.from_web3(w3, metadata_abi, addresses.require(METADATA))

        ballots_storage = BallotsStorageContract.from_web3(
            w3, await resolver.fetch_abi(network_id, BallotsStorageContract.contract_name),
            addresses.require(BALLOTS_STORAGE)
        )
        consensus = PoaConsensusContract.from_web3(
            w3, await resolver.fetch_abi(network_id, PoaConsensusContract.contract_name),
            addresses.require(POA_CONSENSUS)
        )

        adapters: Dict[BallotType, BallotContract] = {}
        for ballot_type, adapter_cls in BALLOT_CONTRACTS.items():
            abi = await resolver.fetch_abi(network_id, adapter_cls.contract_name)
            adapters[ballot_type] = adapter_cls.from_web3(
                w3, abi, addresses.require(adapter_cls.address_role), metadata=metadata
            )

        if private_key is None:
            private_key = os.getenv(PRIVATE_KEY_ENV)
        sender = None
        if private_key:
            sender = LocalAccountSender(w3, private_key)
            voting_key = voting_key or sender.address
        elif voting_key:
            sender = NodeAccountSender(w3, voting_key)

        cache = BallotCache()
        pipeline = TransactionSubmissionPipeline(w3, sender, cache) if sender else None
        if pipeline is None:
            logger.warning("No voting key configured - client is read-only")

        return cls(w3, network_id, addresses, adapters, cache, BallotValidationEngine(),
                   pipeline=pipeline, voting_key=voting_key,
                   ballots_storage=ballots_storage, consensus=consensus)

    async def close(self) -> None:
        disconnect = getattr(self.w3.provider, 'disconnect', None)
        if disconnect is not None:
            await disconnect()

    def adapter(self, ballot_type: BallotType) -> BallotContract:
        return self.adapters[ballot_type]

    async def load_ballots(self) -> List[Ballot]:
        """Re-read every ballot of every family and replace the cache"""
        ballots: List[Ballot] = []
        for ballot_type, adapter in self.adapters.items():
            next_id = await adapter.next_ballot_id()
            logger.info(f"Loading {next_id} {ballot_type.value} ballot(s)")
            for ballot_id in range(next_id):
                ballots.append(await adapter.get_ballot(ballot_id))
        self.cache.replace(ballots)
        return ballots

    async def ballot_limits(self) -> Dict[BallotType, int]:
        if not self.voting_key:
            raise InvalidInputError("A voting key is required to compute ballot limits")
        return {
            ballot_type: await adapter.get_ballot_limit(self.voting_key)
            for ballot_type, adapter in self.adapters.items()
        }

    async def pass_requirements(self) -> Tuple[Dict[BallotType, int], int]:
        """
        Accepting votes each ballot family needs, and the validator count.

        Raises:
            MissingAddressError: If the storage or consensus contract is not bound
        """
        if self.ballots_storage is None or self.consensus is None:
            raise MissingAddressError("Ballots storage and consensus contracts are not bound")
        thresholds = {
            ballot_type: await self.ballots_storage.get_ballot_threshold(ballot_type)
            for ballot_type in self.adapters
        }
        return thresholds, await self.consensus.get_validators_length()

    def _read_only_result(self, function_name: str) -> SubmissionResult:
        return SubmissionResult(
            function_name=function_name, state=SubmissionState.FAILED,
            error="No voting key configured"
        )

    async def create_ballot(self, form: BallotForm,
                            now: Optional[datetime] = None) -> SubmissionResult:
        """Validate the form, encode the matching createBallot call and submit it"""
        if self.pipeline is None:
            return self._read_only_result('createBallot')

        validation = self.validator.validate(form, now)
        if not validation:
            return SubmissionResult(
                function_name='createBallot', state=SubmissionState.FAILED,
                error=validation.reason
            )

        adapter = self.adapter(form.ballot_type)
        try:
            await self.pipeline.check_voting_key(adapter, self.voting_key)
            params = form.to_params(self.validator.start_time(now))
            if form.ballot_type == BallotType.KEYS \
                    and not await adapter.are_ballot_params_valid(params.proposed_value):
                raise AuthorizationError("The ballot input params are invalid")
            call = adapter.create_ballot(params)
        except Exception as e:
            logger.warning(f"Ballot not submitted: {e}")
            return SubmissionResult(
                function_name='createBallot', state=SubmissionState.FAILED, error=str(e)
            )

        call.sender = self.voting_key
        return await self.pipeline.submit_ballot(adapter, call)

    async def vote(self, ballot_type: BallotType, ballot_id: int,
                   choice: VoteChoice) -> SubmissionResult:
        if self.pipeline is None:
            return self._read_only_result('vote')
        return await self.pipeline.submit_vote(
            self.adapter(ballot_type), ballot_id, choice, self.voting_key
        )

    async def finalize(self, ballot_type: BallotType, ballot_id: int) -> SubmissionResult:
        if self.pipeline is None:
            return self._read_only_result('finalize')
        return await self.pipeline.submit_finalize(
            self.adapter(ballot_type), ballot_id, self.voting_key
        )


def format_ballot(ballot: Ballot, now: Optional[datetime] = None) -> str:
    """One-line summary of a ballot for terminal output"""
    tally = tally_for(ballot)
    status = "finalized" if ballot.is_finalized else f"closes in {time_to_finish(ballot.end_time, now)}"
    return (
        f"[{ballot.ballot_type.value} #{ballot.id}] {ballot.creator} "
        f"({format_ballot_time(ballot.start_time)}) proposed {ballot.proposed_value} | "
        f"yes {tally.votes_for} ({tally.votes_for_percents}%) / "
        f"no {tally.votes_against} ({tally.votes_against_percents}%) | {status}"
    )


def parse_ballot_type(value: str) -> BallotType:
    for ballot_type in BallotType:
        if value.lower() in (ballot_type.value.lower(), ballot_type.name.lower()):
            return ballot_type
    raise InvalidInputError(f"Unknown ballot type: {value}")


def parse_choice(value: str) -> VoteChoice:
    if value.lower() in ('yes', 'y', 'accept', '1'):
        return VoteChoice.ACCEPT
    if value.lower() in ('no', 'n', 'reject', '2'):
        return VoteChoice.REJECT
    raise InvalidInputError(f"Unknown vote choice: {value}")


def format_requirement(ballot_type: BallotType, threshold: int, validators_length: int) -> str:
    return (
        f"{ballot_type.value}: minimum {threshold} from {validators_length} validators "
        f"required to pass the proposal"
    )


def parse_end_time(value: str) -> datetime:
    """ISO 8601 end time; values without an offset are taken as UTC"""
    try:
        return to_utc(datetime.fromisoformat(value))
    except ValueError:
        raise InvalidInputError(f"Invalid end time: {value} (expected e.g. 2018-03-23T16:00)")


def _optional(value: Optional[int]) -> Any:
    return '' if value is None else value


def build_form(args: argparse.Namespace) -> BallotForm:
    """Turn `create` arguments into a BallotForm; missing fields are left for validation"""
    return BallotForm(
        ballot_type=parse_ballot_type(args.ballot_type),
        memo=args.memo or '',
        end_time=parse_end_time(args.end_time) if args.end_time else None,
        is_new_validator_personal_data=args.new_validator,
        validator=ValidatorPersonalData(
            full_name=args.full_name or '',
            address=args.address or '',
            state=args.state or '',
            zip_code=args.zip_code or '',
            license_id=args.license_id or '',
            expiration_date=args.expiration_date or ''
        ),
        keys=KeysBallotFields(
            keys_ballot_type=_optional(args.keys_ballot_type),
            key_type=_optional(args.key_type),
            affected_key=args.affected_key or '',
            mining_key=args.mining_key or '',
            new_voting_key=args.new_voting_key or '',
            new_payout_key=args.new_payout_key or ''
        ),
        min_threshold=MinThresholdBallotFields(proposed_value=_optional(args.proposed_value)),
        proxy=ProxyBallotFields(
            proposed_address=args.proposed_address or '',
            contract_type=_optional(args.contract_type)
        )
    )


async def print_requirements(client: GovernanceClient) -> None:
    thresholds, validators_length = await client.pass_requirements()
    for ballot_type, threshold in thresholds.items():
        print(format_requirement(ballot_type, threshold, validators_length))


def report(result: SubmissionResult) -> int:
    if result.confirmed:
        logger.info(f"{result.function_name} confirmed: {result.tx_hash}")
        if result.error:
            logger.warning(result.error)
        return 0
    logger.error(f"{result.function_name} failed: {result.error}")
    return 1


async def run_command(args: argparse.Namespace) -> int:
    client = await GovernanceClient.connect(rpc_url=args.rpc_url, voting_key=args.voting_key)
    try:
        if args.command == 'list':
            await print_requirements(client)
            await client.load_ballots()
            for ballot in client.cache.search(args.search, active_only=args.active):
                print(format_ballot(ballot))
            return 0

        if args.command == 'limits':
            await print_requirements(client)
            for ballot_type, limit in (await client.ballot_limits()).items():
                print(f"You can create {limit} {ballot_type.value} ballot(s)")
            return 0

        if args.command == 'create':
            result = await client.create_ballot(build_form(args))
            if result.ballot is not None:
                print(format_ballot(result.ballot))
            return report(result)

        ballot_type = parse_ballot_type(args.ballot_type)
        if args.command == 'vote':
            result = await client.vote(ballot_type, args.ballot_id, parse_choice(args.choice))
        else:
            result = await client.finalize(ballot_type, args.ballot_id)
        return report(result)
    finally:
        await client.close()


def add_create_arguments(create_parser: argparse.ArgumentParser) -> None:
    create_parser.add_argument('ballot_type', help='keys, minThreshold or proxy')
    create_parser.add_argument('--memo', help='Ballot description')
    create_parser.add_argument('--end-time', help='Ballot end time, ISO 8601 (UTC unless offset given)')

    keys_group = create_parser.add_argument_group('keys ballot')
    keys_group.add_argument('--keys-ballot-type', type=int, help='1 add, 2 remove, 3 swap')
    keys_group.add_argument('--key-type', type=int, help='1 mining, 2 voting, 3 payout')
    keys_group.add_argument('--affected-key')
    keys_group.add_argument('--mining-key')
    keys_group.add_argument('--new-voting-key')
    keys_group.add_argument('--new-payout-key')

    validator_group = create_parser.add_argument_group('new validator personal data')
    validator_group.add_argument('--new-validator', action='store_true',
                                 help='Require personal data of the new validator')
    validator_group.add_argument('--full-name')
    validator_group.add_argument('--address')
    validator_group.add_argument('--state')
    validator_group.add_argument('--zip-code')
    validator_group.add_argument('--license-id')
    validator_group.add_argument('--expiration-date')

    threshold_group = create_parser.add_argument_group('min threshold ballot')
    threshold_group.add_argument('--proposed-value', type=int)

    proxy_group = create_parser.add_argument_group('proxy ballot')
    proxy_group.add_argument('--proposed-address')
    proxy_group.add_argument('--contract-type', type=int)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Governance ballots for POA validator networks'
    )
    parser.add_argument(
        '--rpc-url',
        help=f'Node RPC URL (or {RPC_URL_ENV} env var)'
    )
    parser.add_argument(
        '--voting-key',
        help='Voting key address (node-managed account unless a private key is set)'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    list_parser = subparsers.add_parser('list', help='List ballots')
    list_parser.add_argument('--search', help='Filter by proposed value or creator')
    list_parser.add_argument('--active', action='store_true', help='Hide finalized ballots')

    subparsers.add_parser('limits', help='Show remaining ballot limits for the voting key')

    add_create_arguments(subparsers.add_parser('create', help='Create a ballot'))

    vote_parser = subparsers.add_parser('vote', help='Vote on a ballot')
    vote_parser.add_argument('ballot_type', help='keys, minThreshold or proxy')
    vote_parser.add_argument('ballot_id', type=int)
    vote_parser.add_argument('choice', help='yes or no')

    finalize_parser = subparsers.add_parser('finalize', help='Finalize a ballot')
    finalize_parser.add_argument('ballot_type', help='keys, minThreshold or proxy')
    finalize_parser.add_argument('ballot_id', type=int)
    return parser


def main():
    args = build_parser().parse_args()

    try:
        sys.exit(asyncio.run(run_command(args)))
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
