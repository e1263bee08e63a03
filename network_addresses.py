#!/usr/bin/env python3
"""
POA Governance Client - Network Address Resolver

Fetches and caches, per deployment branch, the manifest of contract addresses
(and contract ABIs) the governance client needs for the connected network.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from governance_utils import (
    MANIFEST_ORGANIZATION, MANIFEST_REPOSITORY, MANIFEST_ADDRESSES_FILE, MANIFEST_TIMEOUT,
    NETWORK_BRANCHES, PRIMARY_BRANCH, ManifestFetchError, MissingAddressError, NetworkError,
    logger
)

# Contract roles in the address manifest
VOTING_TO_CHANGE_KEYS = 'VOTING_TO_CHANGE_KEYS_ADDRESS'
VOTING_TO_CHANGE_MIN_THRESHOLD = 'VOTING_TO_CHANGE_MIN_THRESHOLD_ADDRESS'
VOTING_TO_CHANGE_PROXY = 'VOTING_TO_CHANGE_PROXY_ADDRESS'
BALLOTS_STORAGE = 'BALLOTS_STORAGE_ADDRESS'
METADATA = 'METADATA_ADDRESS'
POA_CONSENSUS = 'POA_ADDRESS'

ADDRESS_ROLES = (
    VOTING_TO_CHANGE_KEYS,
    VOTING_TO_CHANGE_MIN_THRESHOLD,
    VOTING_TO_CHANGE_PROXY,
    BALLOTS_STORAGE,
    METADATA,
    POA_CONSENSUS,
)


@dataclass(frozen=True)
class NetworkAddressSet:
    """Contract addresses of one deployment branch; empty until fetched"""
    branch: str
    addresses: Dict[str, str] = field(default_factory=dict)

    @property
    def is_loaded(self) -> bool:
        return bool(self.addresses)

    def get(self, role: str) -> Optional[str]:
        return self.addresses.get(role) or None

    def require(self, role: str) -> str:
        """
        Return the address for a role.

        Raises:
            MissingAddressError: If the manifest was not loaded or lacks the role
        """
        address = self.get(role)
        if not address:
            state = "is missing" if self.is_loaded else "is not loaded yet"
            raise MissingAddressError(
                f"No {role} for branch '{self.branch}': address manifest {state}"
            )
        return address


def get_branch(network_id: Any) -> str:
    """Map a network identifier to its deployment branch (primary if unknown)"""
    return NETWORK_BRANCHES.get(str(network_id), PRIMARY_BRANCH)


def manifest_base_url(branch: str) -> str:
    return f"https://raw.githubusercontent.com/{MANIFEST_ORGANIZATION}/{MANIFEST_REPOSITORY}/{branch}"


def addresses_url(branch: str) -> str:
    return f"{manifest_base_url(branch)}/{MANIFEST_ADDRESSES_FILE}"


def abi_url(branch: str, contract_name: str) -> str:
    return f"{manifest_base_url(branch)}/abis/{contract_name}.abi.json"


class NetworkAddressResolver:
    """
    Resolves network identifiers to contract address sets.

    Each branch is fetched once. A failed fetch is reported to the caller that
    triggered it and is not retried: until ``refresh`` is called, ``resolve``
    keeps returning an empty (not loaded) set for that branch.
    """

    def __init__(self, timeout: Optional[int] = None) -> None:
        self.timeout: int = timeout or MANIFEST_TIMEOUT
        self._addresses: Dict[str, NetworkAddressSet] = {}
        self._failures: Dict[str, ManifestFetchError] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._abis: Dict[Tuple[str, str], List[Dict[str, Any]]] = {}

    async def resolve(self, network_id: Any) -> NetworkAddressSet:
        """
        Get the address set for a network identifier.

        Raises:
            ManifestFetchError: If this call triggered the branch fetch and it failed
        """
        branch = get_branch(network_id)
        if branch in self._addresses:
            return self._addresses[branch]
        if branch in self._failures:
            logger.warning(
                f"Address manifest for '{branch}' unavailable "
                f"({self._failures[branch]}); call refresh() to retry"
            )
            return NetworkAddressSet(branch)

        pending = self._pending.get(branch)
        if pending is None:
            pending = asyncio.ensure_future(self._load_branch(branch))
            self._pending[branch] = pending
        return await pending

    async def refresh(self, network_id: Any) -> NetworkAddressSet:
        """Drop cached state for the network's branch and fetch it again"""
        branch = get_branch(network_id)
        self._addresses.pop(branch, None)
        self._failures.pop(branch, None)
        return await self.resolve(network_id)

    def cached(self, network_id: Any) -> NetworkAddressSet:
        """Return whatever is cached for the branch without any network I/O"""
        branch = get_branch(network_id)
        return self._addresses.get(branch, NetworkAddressSet(branch))

    async def _load_branch(self, branch: str) -> NetworkAddressSet:
        url = addresses_url(branch)
        try:
            contracts = await self._fetch_json(url)
            if not isinstance(contracts, dict):
                raise ValueError(f"expected a JSON object, got {type(contracts).__name__}")
            address_set = NetworkAddressSet(
                branch, {str(role): str(address) for role, address in contracts.items()}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            error = ManifestFetchError(
                f"Could not load contract addresses from {url}: {e}",
                branch=branch, url=url, original_error=e
            )
            self._failures[branch] = error
            logger.warning(str(error))
            raise error from e
        finally:
            self._pending.pop(branch, None)

        missing = [role for role in ADDRESS_ROLES if not address_set.get(role)]
        if missing:
            logger.warning(f"Address manifest for '{branch}' lacks: {', '.join(missing)}")
        self._addresses[branch] = address_set
        logger.info(f"Loaded {len(address_set.addresses)} contract addresses for '{branch}'")
        return address_set

    async def fetch_abi(self, network_id: Any, contract_name: str) -> List[Dict[str, Any]]:
        """
        Fetch (and cache) a contract ABI published for the network's branch.

        Raises:
            NetworkError: If the ABI cannot be fetched or is not a JSON list
        """
        branch = get_branch(network_id)
        key = (branch, contract_name)
        if key in self._abis:
            return self._abis[key]

        url = abi_url(branch, contract_name)
        try:
            abi = await self._fetch_json(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise NetworkError(f"Failed to fetch {contract_name} ABI from {url}: {e}", original_error=e)
        if not isinstance(abi, list):
            raise NetworkError(f"Unexpected ABI format for {contract_name} at {url}")

        self._abis[key] = abi
        return abi

    async def _fetch_json(self, url: str) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                # raw.githubusercontent.com serves JSON as text/plain
                return await response.json(content_type=None)
