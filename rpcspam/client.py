"""
JSON-RPC node client library.
Provides clean interfaces for reading chain data from a node and for
posting raw request bodies at the endpoint under load.
"""

import itertools
import requests
from dataclasses import dataclass
from typing import Optional


class RPCError(Exception):
    """Raised when the node answers with a JSON-RPC error object."""

    def __init__(self, method: str, error: dict):
        self.method = method
        self.code = error.get("code")
        super().__init__(f"{method}: {error.get('message', error)}")


@dataclass
class Block:
    """The slice of a block the state producer cares about."""
    number: int
    hash: str
    transactions: list

    @classmethod
    def from_json(cls, data: dict) -> "Block":
        return cls(
            number=int(data["number"], 16),
            hash=data["hash"],
            transactions=data.get("transactions") or [],
        )


class NodeClient:
    """Client for reading chain data from a single node."""

    def __init__(self, base_url: str, timeout: float = 10):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()
        self._ids = itertools.count(1)

    def call(self, method: str, params: Optional[list] = None):
        resp = self.session.post(
            self.base_url,
            json={
                "jsonrpc": "2.0",
                "id": next(self._ids),
                "method": method,
                "params": params or []
            },
            timeout=self.timeout
        )
        resp.raise_for_status()
        body = resp.json()
        if body.get("error"):
            raise RPCError(method, body["error"])
        return body.get("result")

    def block_number(self) -> int:
        result = self.call("eth_blockNumber")
        if not isinstance(result, str):
            raise RPCError("eth_blockNumber", {"message": f"unexpected result: {result!r}"})
        return int(result, 16)

    def latest_block(self) -> Block:
        """Fetch the chain head with full transaction objects."""
        result = self.call("eth_getBlockByNumber", ["latest", True])
        if result is None:
            raise RPCError("eth_getBlockByNumber", {"message": "latest block not found"})
        return Block.from_json(result)

    def receipt(self, tx_hash: str) -> Optional[dict]:
        return self.call("eth_getTransactionReceipt", [tx_hash])

    def logs(self, block_number: int) -> list:
        block = hex(block_number)
        return self.call("eth_getLogs", [{"fromBlock": block, "toBlock": block}]) or []

    def close(self):
        self.session.close()


class Transport:
    """Fires serialized JSON-RPC bodies at the endpoint under load."""

    def __init__(self, endpoint: str, timeout: float = 10):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = requests.Session()

    def send(self, body: bytes) -> int:
        """POST a request body and return the status code. Raises on failure."""
        resp = self.session.post(
            self.endpoint,
            data=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout
        )
        resp.raise_for_status()
        return resp.status_code

    def close(self):
        self.session.close()
