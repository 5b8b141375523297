"""JSON-RPC client for chain-deployments library."""

import itertools
import logging
from typing import Any, List, Optional

import requests

from .constants import RPC_TIMEOUT
from .exceptions import NodeUnavailableError, RPCError

logger = logging.getLogger(__name__)


class RPCClient:
    """
    Minimal Ethereum JSON-RPC client.

    Talks to both upstream endpoints and the local forked node. Calls are
    never retried: a timeout or refused connection surfaces immediately as
    NodeUnavailableError.
    """

    def __init__(self, url: str, timeout: float = RPC_TIMEOUT, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Perform one JSON-RPC call.

        Args:
            method: RPC method name (e.g. "eth_blockNumber")
            params: Positional parameters

        Returns:
            The "result" member of the response

        Raises:
            NodeUnavailableError: If the endpoint can't be reached or times out
            RPCError: If the endpoint answers with an error or malformed payload
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }
        logger.debug("RPC %s -> %s %s", self.url, method, payload["params"])

        try:
            response = self.session.post(self.url, json=payload, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise NodeUnavailableError(f"RPC endpoint {self.url} unavailable: {e}") from e
        except requests.RequestException as e:
            raise RPCError(f"Network error during RPC call {method}: {e}") from e

        if response.status_code != 200:
            raise RPCError(f"RPC request {method} failed with status {response.status_code}")

        try:
            result = response.json()
        except ValueError as e:
            raise RPCError(f"RPC response to {method} is not JSON: {e}") from e

        if "error" in result:
            raise RPCError(f"RPC error in {method}: {result['error']}")
        if "result" not in result:
            raise RPCError(f"RPC response to {method} has no result")

        return result["result"]

    def snapshot(self) -> str:
        """Take an evm_snapshot and return its opaque id."""
        snapshot_id = self.call("evm_snapshot")
        if not isinstance(snapshot_id, str) or not snapshot_id:
            raise RPCError(f"evm_snapshot returned unexpected id {snapshot_id!r}")
        logger.debug("Took chain snapshot %s", snapshot_id)
        return snapshot_id

    def revert(self, snapshot_id: str) -> None:
        """
        Revert chain state to a snapshot.

        The node consumes the snapshot id on success.

        Raises:
            RPCError: If the node reports the revert did not happen
        """
        if self.call("evm_revert", [snapshot_id]) is not True:
            raise RPCError(f"evm_revert to snapshot {snapshot_id} failed")
        logger.debug("Reverted chain to snapshot %s", snapshot_id)

    def block_number(self) -> int:
        return int(self.call("eth_blockNumber"), 16)

    def chain_id(self) -> int:
        return int(self.call("eth_chainId"), 16)

    def get_code(self, address: str, block: str = "latest") -> str:
        return self.call("eth_getCode", [address, block])

    def get_balance(self, address: str, block: str = "latest") -> int:
        return int(self.call("eth_getBalance", [address, block]), 16)

    def set_code(self, address: str, code: str) -> None:
        """Overwrite the code at an address (anvil_setCode)."""
        self.call("anvil_setCode", [address, code])

    def has_code(self, address: str) -> bool:
        code = self.get_code(address)
        return bool(code) and code != "0x"

    def is_healthy(self) -> bool:
        """True if the endpoint answers eth_blockNumber."""
        try:
            self.block_number()
        except RPCError:
            return False
        return True
