"""
Pytest configuration and shared fixtures for the governance client tests.
"""
import pytest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytz

VOTING_KEY = '0x1111111111111111111111111111111111111111'
MINING_KEY = '0x2222222222222222222222222222222222222222'
CONTRACT_ADDRESS = '0x3333333333333333333333333333333333333333'
PROPOSED_ADDRESS = '0x4444444444444444444444444444444444444444'

NOW = datetime(2018, 3, 21, 12, 0, 0, tzinfo=pytz.UTC)


def abi_function(name, inputs=(), outputs=()):
    return {
        'type': 'function',
        'name': name,
        'inputs': [{'name': n, 'type': 'uint256'} for n in inputs],
        'outputs': [{'name': n, 'type': 'uint256'} for n in outputs],
    }


COMMON_FUNCTIONS = [
    abi_function('nextBallotId', outputs=['']),
    abi_function('isActive', ['_id'], ['']),
    abi_function('isValidVote', ['_id', '_votingKey'], ['']),
    abi_function('hasAlreadyVoted', ['_id', '_votingKey'], ['']),
    abi_function('getMiningByVotingKey', ['_votingKey'], ['']),
    abi_function('validatorActiveBallots', ['_miningKey'], ['']),
    abi_function('getBallotLimitPerValidator', outputs=['']),
    abi_function('vote', ['_id', '_choice']),
    abi_function('finalize', ['_id']),
]

MIN_THRESHOLD_INFO_FIELDS = [
    'startTime', 'endTime', 'totalVoters', 'progress', 'isFinalized',
    'proposedValue', 'creator', 'memo', 'canBeFinalizedNow', 'alreadyVoted',
]

KEYS_STATE_FIELDS = [
    'startTime', 'endTime', 'affectedKey', 'affectedKeyType', 'miningKey',
    'totalVoters', 'progress', 'isFinalized', 'quorumState', 'ballotType',
    'index', 'minThresholdOfVoters', 'creator', 'memo',
]


@pytest.fixture
def min_threshold_abi():
    """Current VotingToChangeMinThreshold ABI surface"""
    return COMMON_FUNCTIONS + [
        abi_function('createBallot', ['_startTime', '_endTime', '_proposedValue', '_memo']),
        abi_function('getBallotInfo', ['_id', '_votingKey'], MIN_THRESHOLD_INFO_FIELDS),
        abi_function('canBeFinalizedNow', ['_id'], ['']),
    ]


@pytest.fixture
def legacy_keys_abi():
    """Older VotingToChangeKeys ABI: createVotingForKeys and votingState"""
    return COMMON_FUNCTIONS + [
        abi_function('createVotingForKeys', [
            '_startTime', '_endTime', '_affectedKey', '_affectedKeyType',
            '_miningKey', '_ballotType', '_memo'
        ]),
        abi_function('votingState', ['_id'], KEYS_STATE_FIELDS),
        abi_function('getIsFinalized', ['_id'], ['']),
        abi_function('areBallotParamsValid', [
            '_ballotType', '_affectedKey', '_affectedKeyType', '_miningKey'
        ], ['']),
        abi_function('createBallotToAddNewValidator', [
            '_startTime', '_endTime', '_affectedKey', '_newVotingKey', '_newPayoutKey', '_memo'
        ]),
    ]


@pytest.fixture
def proxy_abi():
    return COMMON_FUNCTIONS + [
        abi_function('createBallotToChangeProxyAddress', [
            '_startTime', '_endTime', '_proposedValue', '_contractType', '_memo'
        ]),
        abi_function('getBallotInfo', ['_id', '_votingKey'], [
            'startTime', 'endTime', 'totalVoters', 'progress', 'isFinalized',
            'proposedValue', 'contractType', 'creator', 'memo',
        ]),
    ]


@pytest.fixture
def set_call():
    """Make ``contract.functions.<method>(...).call()`` return or raise"""
    def _set_call(contract, method, return_value=None, side_effect=None):
        function = getattr(contract.functions, method)
        function.return_value.call = AsyncMock(return_value=return_value, side_effect=side_effect)
        return function
    return _set_call


@pytest.fixture
def mock_contract():
    """Contract double whose encode_abi echoes the function name"""
    contract = MagicMock()
    contract.encode_abi.side_effect = lambda name, args=None: f"0x{name}"
    return contract


@pytest.fixture
def min_threshold_info():
    """Raw getBallotInfo tuple for a min threshold ballot"""
    return (
        1521633600,                 # startTime 2018-03-21 12:00:00 UTC
        1521820800,                 # endTime   2018-03-23 16:00:00 UTC
        5,                          # totalVoters
        1,                          # progress
        False,                      # isFinalized
        3,                          # proposedValue
        MINING_KEY,                 # creator
        'Lower the threshold',      # memo
        False,                      # canBeFinalizedNow
        False,                      # alreadyVoted
    )


@pytest.fixture
def mock_metadata():
    metadata = MagicMock()
    metadata.get_full_name = AsyncMock(return_value='Jane Doe')
    return metadata
