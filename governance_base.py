#!/usr/bin/env python3
"""
POA Governance Client - Contract Base Class

Base class providing the common plumbing for every on-chain contract the
governance client talks to: ABI-driven capability probing, call-data encoding,
read calls and event log queries.
"""

from abc import ABC
from typing import Any, Dict, List, Optional, Sequence, Tuple

from web3 import AsyncWeb3, Web3

from governance_utils import CapabilityError, logger


class GovernanceContract(ABC):
    """
    Base class for all governance contract adapters.

    Subclasses set ``contract_name`` (the ABI manifest name), ``address_role``
    (the key in the address manifest) and optionally ``METHOD_FALLBACKS``,
    which maps a logical operation to its method names, newest first.
    """

    contract_name: str = ''
    address_role: str = ''
    METHOD_FALLBACKS: Dict[str, Tuple[str, ...]] = {}

    def __init__(self, contract: Any, abi: List[Dict[str, Any]], address: str,
                 label: Optional[str] = None) -> None:
        """
        Initialize the adapter around an already bound contract.

        Args:
            contract: web3 contract object (or a compatible test double)
            abi: ABI the contract was bound with, used for capability probing
            address: Deployed contract address
            label: Name used in log lines (defaults to the class name)
        """
        self.contract = contract
        self.abi: List[Dict[str, Any]] = abi or []
        self.address: str = address
        self.label: str = label or self.__class__.__name__

    @classmethod
    def from_web3(cls, w3: AsyncWeb3, abi: List[Dict[str, Any]], address: str, **kwargs):
        """Bind the ABI at ``address`` on the given AsyncWeb3 connection"""
        checksum_address = Web3.to_checksum_address(address)
        contract = w3.eth.contract(address=checksum_address, abi=abi)
        logger.info(f"Loaded {cls.__name__} contract: {checksum_address}")
        return cls(contract, abi, checksum_address, **kwargs)

    def does_method_exist(self, method_name: str) -> bool:
        """Check whether the bound ABI exposes a function with this name"""
        return any(
            item.get('type') == 'function' and item.get('name') == method_name
            for item in self.abi
        )

    def resolve_method(self, operation: str) -> Optional[str]:
        """
        Pick the method name to use for a logical operation.

        Probes the ABI on every call: one client may talk to deployments of
        different versions depending on the network.

        Returns:
            The first existing method name, or None if none exist
        """
        candidates = self.METHOD_FALLBACKS.get(operation, (operation,))
        for method_name in candidates:
            if self.does_method_exist(method_name):
                return method_name
        return None

    def require_method(self, operation: str) -> str:
        method_name = self.resolve_method(operation)
        if method_name is None:
            candidates = self.METHOD_FALLBACKS.get(operation, (operation,))
            raise CapabilityError(
                f"{self.label} at {self.address} supports none of: {', '.join(candidates)}"
            )
        return method_name

    def capabilities(self) -> Dict[str, Optional[str]]:
        """Report the method currently resolved for every logical operation"""
        return {operation: self.resolve_method(operation) for operation in self.METHOD_FALLBACKS}

    def output_names(self, method_name: str) -> List[str]:
        for item in self.abi:
            if item.get('type') == 'function' and item.get('name') == method_name:
                return [output.get('name', '') for output in item.get('outputs', [])]
        return []

    async def call(self, method_name: str, *args: Any, label: Optional[str] = None) -> Any:
        """
        Execute a read-only contract call.

        Errors from the ledger client propagate unchanged.
        """
        logger.debug(f"{label or self.label}: {method_name}{args}")
        return await getattr(self.contract.functions, method_name)(*args).call()

    async def call_named(self, method_name: str, *args: Any,
                         label: Optional[str] = None) -> Dict[str, Any]:
        """
        Execute a read-only call returning several values, keyed by output name.

        web3.py returns multi-value outputs as a tuple; the ABI output names
        are used to turn it into a dict. Mapping results are returned as-is.
        """
        result = await self.call(method_name, *args, label=label)
        if isinstance(result, dict):
            return dict(result)
        names = self.output_names(method_name)
        if not isinstance(result, (list, tuple)):
            result = (result,)
        if len(names) != len(result) or not all(names):
            raise CapabilityError(
                f"{self.label}: cannot map outputs of {method_name} (ABI names: {names})"
            )
        return {name.lstrip('_'): value for name, value in zip(names, result)}

    def encode(self, method_name: str, *args: Any) -> str:
        """Encode a function call into transaction data without sending it"""
        data = self.contract.encode_abi(method_name, args=list(args))
        logger.debug(f"{self.label}: encoded {method_name} ({len(data)} hex chars)")
        return data

    async def get_past_events(self, event_name: str, from_block: int,
                              to_block: int) -> Sequence[Any]:
        """Fetch event logs emitted by this contract in a block range"""
        event = getattr(self.contract.events, event_name)
        return await event().get_logs(from_block=from_block, to_block=to_block)

    def __repr__(self) -> str:
        """String representation of the adapter"""
        return f"{self.__class__.__name__}(address={self.address})"
