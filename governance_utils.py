#!/usr/bin/env python3
"""
POA Governance Client - Shared Utilities

Common functions, constants and exceptions used across the governance client
modules: logging setup, config loading, ballot enums and time formatting.
"""

import logging
import yaml
from enum import Enum, IntEnum
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional, Any, Union
import pytz

# Set up basic logging first (before config loading)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


# Custom exception classes
class GovernanceToolError(Exception):
    """Base exception for all governance client errors"""
    pass


class NetworkError(GovernanceToolError):
    """Raised when network requests fail"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class ManifestFetchError(NetworkError):
    """Raised when a contract address manifest cannot be fetched or parsed"""
    def __init__(self, message: str, branch: str, url: str,
                 original_error: Optional[Exception] = None):
        super().__init__(message, original_error=original_error)
        self.branch = branch
        self.url = url


class MissingAddressError(GovernanceToolError):
    """Raised when a contract role has no resolved address"""
    pass


class CapabilityError(GovernanceToolError):
    """Raised when a contract exposes neither a method nor its fallback"""
    pass


class AuthorizationError(GovernanceToolError):
    """Raised when a voting key may not perform the requested action"""
    pass


class LedgerError(GovernanceToolError):
    """Raised when a transaction is rejected or reverted by the ledger"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error


class InvalidInputError(GovernanceToolError):
    """Raised when user input is invalid"""
    pass


# Configuration loading
def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file"""
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        # Return defaults if config file doesn't exist
        return {}

    try:
        with open(config_path, 'r') as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Could not load config file {config_path}: {e}")
        return {}


# Load configuration
_config = load_config()

# Reconfigure logging with config if available
_log_config = _config.get('logging', {})
if _log_config:
    log_level = getattr(logging, _log_config.get('level', 'INFO').upper(), logging.INFO)
    log_format = _log_config.get('format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    log_datefmt = _log_config.get('datefmt', '%Y-%m-%d %H:%M:%S')
    logging.basicConfig(level=log_level, format=log_format, datefmt=log_datefmt, force=True)

_governance_config = _config.get('governance', {})
_manifest_config = _config.get('manifest', {})

# Ledger connection (with config override support)
DEFAULT_RPC_URL = _governance_config.get('rpc_url', "https://core.poa.network")
DEFAULT_GAS_PRICE_GWEI = _governance_config.get('gas_price_gwei', 1)
RECEIPT_TIMEOUT = _governance_config.get('receipt_timeout', 120)

# Ballot timing rules
MIN_BALLOT_DURATION_DAYS = _governance_config.get('min_ballot_duration_days', 2)
MAX_BALLOT_DURATION_DAYS = _governance_config.get('max_ballot_duration_days', 14)
START_TIME_OFFSET_MINUTES = _governance_config.get('start_time_offset_minutes', 1)

# Address and ABI manifests
MANIFEST_ORGANIZATION = _manifest_config.get('organization', 'poanetwork')
MANIFEST_REPOSITORY = _manifest_config.get('repository', 'poa-chain-spec')
MANIFEST_ADDRESSES_FILE = _manifest_config.get('addresses_file', 'contracts.json')
MANIFEST_TIMEOUT = _manifest_config.get('timeout', 10)

PRIMARY_BRANCH = 'core'
NETWORK_BRANCHES = {
    '77': 'sokol',
    '99': PRIMARY_BRANCH,
}

ZERO_ADDRESS = '0x0000000000000000000000000000000000000000'

PRIVATE_KEY_ENV = 'GOVERNANCE_VOTING_PRIVATE_KEY'
RPC_URL_ENV = 'GOVERNANCE_RPC_URL'


class BallotType(Enum):
    """Ballot families, one voting contract each"""
    KEYS = 'keys'
    MIN_THRESHOLD = 'minThreshold'
    PROXY = 'proxy'


class KeysBallotType(IntEnum):
    ADD = 1
    REMOVE = 2
    SWAP = 3


class KeyType(IntEnum):
    MINING = 1
    VOTING = 2
    PAYOUT = 3


class VoteChoice(IntEnum):
    ACCEPT = 1
    REJECT = 2


def to_ascii(value: Union[bytes, str, None]) -> str:
    """
    Decode a fixed-size bytes field (e.g. bytes32) into text.

    Accepts raw bytes or a 0x-prefixed hex string and strips the zero padding.
    """
    if value is None:
        return ''
    if isinstance(value, str):
        if value.startswith('0x'):
            try:
                value = bytes.fromhex(value[2:])
            except ValueError:
                return value
        else:
            return value.strip('\x00').strip()
    return value.rstrip(b'\x00').decode('utf-8', errors='replace').strip()


def from_timestamp(timestamp: int) -> datetime:
    """Convert an on-chain unix timestamp into an aware UTC datetime"""
    return datetime.fromtimestamp(int(timestamp), tz=pytz.UTC)


def to_utc(dt: datetime) -> datetime:
    """Normalize a datetime to aware UTC (naive values are taken as UTC)"""
    if dt.tzinfo is None:
        return pytz.UTC.localize(dt)
    return dt.astimezone(pytz.UTC)


def utc_now() -> datetime:
    return datetime.now(tz=pytz.UTC)


def format_ballot_time(dt: datetime) -> str:
    """
    Format a ballot start/end time the way ballot cards display it.

    Args:
        dt: Datetime (naive values are taken as UTC)

    Returns:
        String like '21/03/2018 4:05:00 PM', always in UTC
    """
    dt_utc = to_utc(dt)
    hour = dt_utc.strftime('%I').lstrip('0') or '12'
    return f"{dt_utc.strftime('%d/%m/%Y')} {hour}:{dt_utc.strftime('%M:%S %p')}"
