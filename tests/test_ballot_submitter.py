"""
Tests for ballot_submitter module.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from ballot_cache import BallotCache
from ballot_contracts import Ballot, MinThresholdBallotContract, PreparedCall
from ballot_submitter import (
    DEFAULT_GAS_LIMIT, LocalAccountSender, NodeAccountSender, SubmissionState,
    TransactionSubmissionPipeline
)
from governance_utils import ZERO_ADDRESS, BallotType, VoteChoice

from conftest import CONTRACT_ADDRESS, MINING_KEY, NOW, VOTING_KEY

TX_HASH = '0x' + 'ab' * 32
OTHER_TX_HASH = '0x' + 'cd' * 32


def make_ballot(ballot_id, progress=0, is_finalized=False):
    return Ballot(
        id=ballot_id, ballot_type=BallotType.MIN_THRESHOLD, creator='Jane Doe',
        creator_mining_key=MINING_KEY, start_time=NOW, end_time=NOW,
        proposed_value=3, progress=progress, total_voters=3, is_finalized=is_finalized
    )


@pytest.fixture
def mock_w3():
    w3 = MagicMock()
    w3.eth.wait_for_transaction_receipt = AsyncMock(
        return_value={'status': 1, 'blockNumber': 42, 'transactionHash': TX_HASH}
    )
    return w3


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.send = AsyncMock(return_value=TX_HASH)
    return sender


@pytest.fixture
def adapter():
    adapter = MagicMock(spec=MinThresholdBallotContract)
    adapter.ballot_type = BallotType.MIN_THRESHOLD
    adapter.get_mining_by_voting_key = AsyncMock(return_value=MINING_KEY)
    adapter.has_already_voted = AsyncMock(return_value=False)
    adapter.is_valid_vote = AsyncMock(return_value=True)
    adapter.is_finalized = AsyncMock(return_value=False)
    adapter.is_active = AsyncMock(return_value=False)
    adapter.get_ballot = AsyncMock(side_effect=lambda ballot_id: make_ballot(ballot_id))
    adapter.get_past_events = AsyncMock(return_value=[
        {'args': {'id': 7}, 'transactionHash': TX_HASH}
    ])
    adapter.vote.side_effect = lambda ballot_id, choice, key: PreparedCall(
        'vote', CONTRACT_ADDRESS, '0xvote', key
    )
    adapter.finalize.side_effect = lambda ballot_id, key: PreparedCall(
        'finalize', CONTRACT_ADDRESS, '0xfinalize', key
    )
    return adapter


@pytest.fixture
def cache():
    return BallotCache()


@pytest.fixture
def pipeline(mock_w3, sender, cache):
    return TransactionSubmissionPipeline(mock_w3, sender, cache, receipt_timeout=5)


@pytest.fixture
def create_call():
    return PreparedCall('createBallot', CONTRACT_ADDRESS, '0xcreate', VOTING_KEY)


class TestSubmitBallot:
    """createBallot submission and cache reconciliation"""

    @pytest.mark.asyncio
    async def test_confirmed_ballot_is_cached(self, pipeline, adapter, create_call, cache,
                                              mock_w3, sender):
        assert pipeline.state == SubmissionState.IDLE

        result = await pipeline.submit_ballot(adapter, create_call)

        assert result.state == SubmissionState.CONFIRMED
        assert pipeline.state == SubmissionState.CONFIRMED
        assert result.tx_hash == TX_HASH
        assert result.block_number == 42
        assert result.ballot_id == 7
        assert result.error is None
        assert len(cache) == 1
        assert cache.get(BallotType.MIN_THRESHOLD, 7) == result.ballot
        sender.send.assert_awaited_once_with(create_call)
        mock_w3.eth.wait_for_transaction_receipt.assert_awaited_once_with(TX_HASH, timeout=5)
        adapter.get_past_events.assert_awaited_once_with('BallotCreated', 42, 42)

    @pytest.mark.asyncio
    async def test_picks_event_of_own_transaction(self, pipeline, adapter, create_call):
        adapter.get_past_events.return_value = [
            {'args': {'id': 6}, 'transactionHash': OTHER_TX_HASH},
            {'args': {'id': 7}, 'transactionHash': TX_HASH},
        ]
        result = await pipeline.submit_ballot(adapter, create_call)
        assert result.ballot_id == 7

    @pytest.mark.asyncio
    async def test_other_transactions_event_is_not_cached(self, pipeline, adapter, create_call,
                                                         cache):
        adapter.get_past_events.return_value = [
            {'args': {'id': 6}, 'transactionHash': OTHER_TX_HASH},
        ]

        result = await pipeline.submit_ballot(adapter, create_call)

        assert result.state == SubmissionState.CONFIRMED
        assert result.ballot_id is None
        assert "No BallotCreated event" in result.error
        assert len(cache) == 0
        adapter.get_ballot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_error_fails(self, pipeline, adapter, create_call, cache, sender):
        sender.send.side_effect = ValueError("insufficient funds for gas")

        result = await pipeline.submit_ballot(adapter, create_call)

        assert result.state == SubmissionState.FAILED
        assert result.error == "insufficient funds for gas"
        assert result.tx_hash is None
        assert len(cache) == 0
        adapter.get_past_events.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reverted_transaction_fails(self, pipeline, adapter, create_call, cache, mock_w3):
        mock_w3.eth.wait_for_transaction_receipt.return_value = {'status': 0, 'blockNumber': 42}

        result = await pipeline.submit_ballot(adapter, create_call)

        assert result.state == SubmissionState.FAILED
        assert "reverted" in result.error
        assert result.tx_hash == TX_HASH
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_missing_event_keeps_confirmed_state(self, pipeline, adapter, create_call, cache):
        adapter.get_past_events.return_value = []

        result = await pipeline.submit_ballot(adapter, create_call)

        assert result.state == SubmissionState.CONFIRMED
        assert "could not be loaded" in result.error
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_no_retry(self, pipeline, adapter, create_call, sender):
        sender.send.side_effect = ConnectionError("node down")
        await pipeline.submit_ballot(adapter, create_call)
        assert sender.send.await_count == 1


class TestSubmitVote:
    """Vote pre-checks and submission"""

    @pytest.mark.asyncio
    async def test_vote_confirmed_updates_cache(self, pipeline, adapter, cache, sender):
        cache.append(make_ballot(3))
        adapter.get_ballot.side_effect = lambda ballot_id: make_ballot(ballot_id, progress=1)

        result = await pipeline.submit_vote(adapter, 3, VoteChoice.ACCEPT, VOTING_KEY)

        assert result.confirmed
        assert result.ballot_id == 3
        assert cache.get(BallotType.MIN_THRESHOLD, 3).progress == 1
        adapter.vote.assert_called_once_with(3, VoteChoice.ACCEPT, VOTING_KEY)
        assert sender.send.await_args.args[0].sender == VOTING_KEY

    @pytest.mark.asyncio
    async def test_invalid_voting_key(self, pipeline, adapter, sender):
        result = await pipeline.submit_vote(adapter, 3, VoteChoice.ACCEPT, 'not-a-key')

        assert result.state == SubmissionState.FAILED
        assert "not a valid voting key" in result.error
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_voting_key(self, pipeline, adapter, sender):
        result = await pipeline.submit_vote(adapter, 3, VoteChoice.ACCEPT, None)
        assert result.state == SubmissionState.FAILED
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unregistered_voting_key(self, pipeline, adapter, sender):
        adapter.get_mining_by_voting_key.return_value = ZERO_ADDRESS

        result = await pipeline.submit_vote(adapter, 3, VoteChoice.ACCEPT, VOTING_KEY)

        assert "not a valid voting key" in result.error
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_already_voted(self, pipeline, adapter, sender):
        adapter.has_already_voted.return_value = True

        result = await pipeline.submit_vote(adapter, 3, VoteChoice.ACCEPT, VOTING_KEY)

        assert result.state == SubmissionState.FAILED
        assert result.error == "You already voted on this ballot"
        adapter.has_already_voted.assert_awaited_once_with(3, VOTING_KEY)
        adapter.is_valid_vote.assert_not_awaited()
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ineligible_vote(self, pipeline, adapter, sender):
        adapter.is_valid_vote.return_value = False

        result = await pipeline.submit_vote(adapter, 3, VoteChoice.REJECT, VOTING_KEY)

        assert result.state == SubmissionState.FAILED
        assert result.error == "You can't vote on this ballot"
        sender.send.assert_not_awaited()


class TestSubmitFinalize:
    """Finalize pre-checks and submission"""

    @pytest.mark.asyncio
    async def test_finalize_confirmed(self, pipeline, adapter, cache):
        cache.append(make_ballot(2))
        adapter.get_ballot.side_effect = lambda ballot_id: make_ballot(ballot_id, is_finalized=True)

        result = await pipeline.submit_finalize(adapter, 2, VOTING_KEY)

        assert result.confirmed
        assert cache.get(BallotType.MIN_THRESHOLD, 2).is_finalized

    @pytest.mark.asyncio
    async def test_already_finalized(self, pipeline, adapter, sender):
        adapter.is_finalized.return_value = True

        result = await pipeline.submit_finalize(adapter, 2, VOTING_KEY)

        assert result.error == "This ballot is already finalized"
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_still_active(self, pipeline, adapter, sender):
        adapter.is_active.return_value = True

        result = await pipeline.submit_finalize(adapter, 2, VOTING_KEY)

        assert result.state == SubmissionState.FAILED
        assert "while it is active" in result.error
        sender.send.assert_not_awaited()


class TestSenders:
    """Transaction senders"""

    @pytest.mark.asyncio
    async def test_node_account_sender(self, mock_w3):
        mock_w3.eth.send_transaction = AsyncMock(return_value=TX_HASH)
        sender = NodeAccountSender(mock_w3, VOTING_KEY, gas_price_gwei=1)

        tx_hash = await sender.send(PreparedCall('vote', CONTRACT_ADDRESS, '0xvote'))

        assert tx_hash == TX_HASH
        mock_w3.eth.send_transaction.assert_awaited_once_with({
            'from': VOTING_KEY,
            'to': CONTRACT_ADDRESS,
            'data': '0xvote',
            'gasPrice': 1000000000,
        })

    def test_local_sender_requires_key(self, mock_w3, monkeypatch):
        monkeypatch.delenv('GOVERNANCE_VOTING_PRIVATE_KEY', raising=False)
        with pytest.raises(ValueError, match="Private key required"):
            LocalAccountSender(mock_w3)

    @patch('ballot_submitter.Account')
    def test_local_sender_invalid_key(self, mock_account_class, mock_w3):
        mock_account_class.from_key.side_effect = ValueError("bad key")
        with pytest.raises(ValueError, match="Invalid private key"):
            LocalAccountSender(mock_w3, private_key='0x1234')

    @pytest.mark.asyncio
    @patch('ballot_submitter.Account')
    async def test_local_sender_signs_and_sends(self, mock_account_class, mock_w3):
        mock_account = MagicMock()
        mock_account.address = VOTING_KEY
        mock_account.sign_transaction.return_value.raw_transaction = b'\x01\x02'
        mock_account_class.from_key.return_value = mock_account

        mock_w3.eth.get_transaction_count = AsyncMock(return_value=4)
        mock_w3.eth.estimate_gas = AsyncMock(return_value=100000)
        mock_w3.eth.send_raw_transaction = AsyncMock(return_value=TX_HASH)

        async def chain_id():
            return 99
        mock_w3.eth.chain_id = chain_id()

        sender = LocalAccountSender(mock_w3, private_key='0x' + '1' * 64)
        tx_hash = await sender.send(PreparedCall('vote', CONTRACT_ADDRESS, '0xvote', VOTING_KEY))

        assert tx_hash == TX_HASH
        transaction = mock_account.sign_transaction.call_args.args[0]
        assert transaction['nonce'] == 4
        assert transaction['chainId'] == 99
        assert transaction['gas'] == 120000
        mock_w3.eth.send_raw_transaction.assert_awaited_once_with(b'\x01\x02')

    @pytest.mark.asyncio
    @patch('ballot_submitter.Account')
    async def test_local_sender_gas_fallback(self, mock_account_class, mock_w3):
        mock_account = MagicMock()
        mock_account.address = VOTING_KEY
        mock_account_class.from_key.return_value = mock_account
        mock_w3.eth.get_transaction_count = AsyncMock(return_value=0)
        mock_w3.eth.estimate_gas = AsyncMock(side_effect=ValueError("execution reverted"))
        mock_w3.eth.send_raw_transaction = AsyncMock(return_value=TX_HASH)

        async def chain_id():
            return 77
        mock_w3.eth.chain_id = chain_id()

        sender = LocalAccountSender(mock_w3, private_key='0x' + '1' * 64)
        await sender.send(PreparedCall('finalize', CONTRACT_ADDRESS, '0xfinalize'))

        assert mock_account.sign_transaction.call_args.args[0]['gas'] == DEFAULT_GAS_LIMIT

    @pytest.mark.asyncio
    @patch('ballot_submitter.Account')
    async def test_local_sender_rejects_other_voting_key(self, mock_account_class, mock_w3):
        mock_account = MagicMock()
        mock_account.address = MINING_KEY
        mock_account_class.from_key.return_value = mock_account

        sender = LocalAccountSender(mock_w3, private_key='0x' + '1' * 64)
        with pytest.raises(Exception, match="does not match voting key"):
            await sender.send(PreparedCall('vote', CONTRACT_ADDRESS, '0xvote', VOTING_KEY))
