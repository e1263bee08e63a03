#!/usr/bin/env python3
"""
POA Governance Ballot Submitter

Sends prepared ballot transactions (create, vote, finalize), waits for them
to be mined and folds the confirmed result into the local ballot cache.

Security Features:
- Keys are never stored; a local signing key is only read from the
  GOVERNANCE_VOTING_PRIVATE_KEY environment variable
- Authorization pre-checks run before any transaction is sent
- Failed or reverted transactions are reported, never retried automatically
"""

import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncWeb3, Web3

from ballot_cache import BallotCache
from ballot_contracts import Ballot, BallotContract, PreparedCall
from governance_utils import (
    DEFAULT_GAS_PRICE_GWEI, PRIVATE_KEY_ENV, RECEIPT_TIMEOUT, ZERO_ADDRESS,
    AuthorizationError, LedgerError, VoteChoice, logger
)

BALLOT_CREATED_EVENT = 'BallotCreated'

# Used when gas estimation fails: ~100k base for ballot calls plus headroom
DEFAULT_GAS_LIMIT = 1000000


class SubmissionState(Enum):
    IDLE = 'idle'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'


@dataclass
class SubmissionResult:
    """Outcome of one submitted transaction"""
    function_name: str
    state: SubmissionState = SubmissionState.IDLE
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    ballot_id: Optional[int] = None
    ballot: Optional[Ballot] = None
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state == SubmissionState.CONFIRMED


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value
    return Web3.to_hex(value)


class NodeAccountSender:
    """
    Sends transactions from an account managed by the connected node or wallet
    (eth_sendTransaction); the node does the signing.
    """

    def __init__(self, w3: AsyncWeb3, account: str,
                 gas_price_gwei: float = DEFAULT_GAS_PRICE_GWEI) -> None:
        self.w3 = w3
        self.address = account
        self.gas_price = Web3.to_wei(gas_price_gwei, 'gwei')

    async def send(self, call: PreparedCall) -> Any:
        transaction = {
            'from': call.sender or self.address,
            'to': call.contract_address,
            'data': call.data,
            'gasPrice': self.gas_price,
        }
        return await self.w3.eth.send_transaction(transaction)


class LocalAccountSender:
    """
    Signs transactions locally with eth_account and sends the raw transaction.
    """

    def __init__(self, w3: AsyncWeb3, private_key: Optional[str] = None,
                 gas_price_gwei: float = DEFAULT_GAS_PRICE_GWEI) -> None:
        if private_key is None:
            private_key = os.getenv(PRIVATE_KEY_ENV)

        if private_key is None:
            raise ValueError(
                f"Private key required. Set the {PRIVATE_KEY_ENV} environment variable"
            )

        try:
            self.account = Account.from_key(private_key)
        except Exception as e:
            raise ValueError(f"Invalid private key: {e}")

        self.w3 = w3
        self.address = self.account.address
        self.gas_price = Web3.to_wei(gas_price_gwei, 'gwei')

    async def send(self, call: PreparedCall) -> Any:
        if call.sender and call.sender.lower() != self.address.lower():
            raise AuthorizationError(
                f"Signing key {self.address} does not match voting key {call.sender}"
            )

        transaction = {
            'from': self.address,
            'to': call.contract_address,
            'data': call.data,
            'nonce': await self.w3.eth.get_transaction_count(self.address),
            'gasPrice': self.gas_price,
            'chainId': await self.w3.eth.chain_id,
        }
        try:
            # Add 20% buffer for safety
            transaction['gas'] = int(await self.w3.eth.estimate_gas(transaction) * 1.2)
        except Exception as e:
            logger.warning(f"Could not estimate gas: {e}, using default")
            transaction['gas'] = DEFAULT_GAS_LIMIT

        signed_txn = self.account.sign_transaction(transaction)
        return await self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)


class TransactionSubmissionPipeline:
    """
    IDLE -> SUBMITTED -> CONFIRMED | FAILED for every transaction it sends.

    No submission is retried and none can be cancelled once dispatched.
    Errors are returned in the SubmissionResult rather than raised.
    """

    def __init__(self, w3: AsyncWeb3, sender: Any, cache: BallotCache,
                 receipt_timeout: int = RECEIPT_TIMEOUT) -> None:
        self.w3 = w3
        self.sender = sender
        self.cache = cache
        self.receipt_timeout = receipt_timeout
        self.state = SubmissionState.IDLE

    def _transition(self, result: SubmissionResult, state: SubmissionState) -> None:
        logger.debug(f"{result.function_name}: {result.state.value} -> {state.value}")
        result.state = state
        self.state = state

    def _fail(self, result: SubmissionResult, error: Exception) -> SubmissionResult:
        self._transition(result, SubmissionState.FAILED)
        result.error = str(error)
        logger.error(f"Transaction {result.function_name} failed: {error}")
        return result

    async def _run(self, call: PreparedCall) -> SubmissionResult:
        result = SubmissionResult(function_name=call.function_name)
        self.state = SubmissionState.IDLE
        try:
            tx_hash = await self.sender.send(call)
            result.tx_hash = _hex(tx_hash)
            self._transition(result, SubmissionState.SUBMITTED)
            logger.info(f"Transaction sent: {result.tx_hash} ({call.function_name})")

            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout
            )
            result.block_number = receipt['blockNumber']
            if receipt['status'] != 1:
                raise LedgerError(f"Transaction {result.tx_hash} was reverted")
        except Exception as e:
            return self._fail(result, e)

        self._transition(result, SubmissionState.CONFIRMED)
        logger.info(f"Transaction confirmed in block {result.block_number}")
        return result

    async def check_voting_key(self, adapter: BallotContract, voting_key: Optional[str]) -> str:
        """
        Make sure the voting key belongs to a registered validator.

        Returns:
            The validator's mining key

        Raises:
            AuthorizationError: If the key is missing, malformed or unregistered
        """
        if not voting_key or not Web3.is_address(voting_key):
            raise AuthorizationError(f"The key {voting_key} is not a valid voting key")
        try:
            mining_key = await adapter.get_mining_by_voting_key(voting_key)
        except Exception as e:
            raise AuthorizationError(f"The key {voting_key} is not a valid voting key: {e}")
        if not mining_key or str(mining_key).lower() == ZERO_ADDRESS:
            raise AuthorizationError(f"The key {voting_key} is not a valid voting key")
        return mining_key

    async def submit_ballot(self, adapter: BallotContract, call: PreparedCall) -> SubmissionResult:
        """
        Send a createBallot transaction and cache the created ballot.

        After the receipt, the BallotCreated event is read from exactly the
        receipt's block to learn the new ballot id.
        """
        result = await self._run(call)
        if not result.confirmed:
            return result

        try:
            events = await adapter.get_past_events(
                BALLOT_CREATED_EVENT, result.block_number, result.block_number
            )
            event = next(
                (e for e in events if _hex(e.get('transactionHash', b'')) == result.tx_hash),
                None
            )
            if event is None:
                raise LedgerError(
                    f"No {BALLOT_CREATED_EVENT} event for {result.tx_hash} "
                    f"in block {result.block_number}"
                )
            result.ballot_id = int(event['args']['id'])
            result.ballot = await adapter.get_ballot(result.ballot_id)
        except Exception as e:
            result.error = f"Ballot created but could not be loaded: {e}"
            logger.warning(result.error)
            return result

        self.cache.append(result.ballot)
        logger.info(f"Created {adapter.ballot_type.value} ballot #{result.ballot_id}")
        return result

    async def submit_vote(self, adapter: BallotContract, ballot_id: int, choice: VoteChoice,
                          voting_key: str) -> SubmissionResult:
        """Check the vote is allowed, send it and refresh the cached ballot"""
        try:
            await self.check_voting_key(adapter, voting_key)
            if await adapter.has_already_voted(ballot_id, voting_key):
                raise AuthorizationError("You already voted on this ballot")
            if not await adapter.is_valid_vote(ballot_id, voting_key):
                raise AuthorizationError("You can't vote on this ballot")
            call = adapter.vote(ballot_id, choice, voting_key)
        except Exception as e:
            return self._fail(SubmissionResult(function_name='vote', ballot_id=ballot_id), e)

        result = await self._run(call)
        result.ballot_id = ballot_id
        if result.confirmed:
            await self._refresh_cached(adapter, result)
        return result

    async def submit_finalize(self, adapter: BallotContract, ballot_id: int,
                              voting_key: str) -> SubmissionResult:
        """Check the ballot can be finalized, send finalize and refresh the cache"""
        try:
            await self.check_voting_key(adapter, voting_key)
            if await adapter.is_finalized(ballot_id):
                raise AuthorizationError("This ballot is already finalized")
            if await adapter.is_active(ballot_id):
                raise AuthorizationError("You can't finalize this ballot while it is active")
            call = adapter.finalize(ballot_id, voting_key)
        except Exception as e:
            return self._fail(SubmissionResult(function_name='finalize', ballot_id=ballot_id), e)

        result = await self._run(call)
        result.ballot_id = ballot_id
        if result.confirmed:
            await self._refresh_cached(adapter, result)
        return result

    async def _refresh_cached(self, adapter: BallotContract, result: SubmissionResult) -> None:
        try:
            result.ballot = await adapter.get_ballot(result.ballot_id)
        except Exception as e:
            logger.warning(f"Could not refresh ballot #{result.ballot_id}: {e}")
            return
        self.cache.update(result.ballot)
