import threading
import time

import pytest

from rpcspam.client import Block


class FakeNode:
    """Stands in for NodeClient, serving canned blocks and receipts."""

    def __init__(self, blocks, receipts=None, logs=None):
        self.blocks = list(blocks)
        self.receipts = receipts or {}
        self.block_logs = logs or {}
        self.calls = 0
        self.closed = False

    def latest_block(self) -> Block:
        self.calls += 1
        block = self.blocks[min(self.calls, len(self.blocks)) - 1]
        if isinstance(block, Exception):
            raise block
        return block

    def receipt(self, tx_hash: str):
        return self.receipts.get(tx_hash)

    def logs(self, block_number: int) -> list:
        return self.block_logs.get(block_number, [])

    def block_number(self) -> int:
        return self.latest_block().number

    def close(self):
        self.closed = True


class RecordingTransport:
    """Stands in for Transport, keeping every body it is handed."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.bodies = []
        self.lock = threading.Lock()
        self.closed = False

    def send(self, body: bytes) -> int:
        with self.lock:
            self.bodies.append(body)
        if self.fail:
            raise ConnectionError("connection refused")
        return 200

    def close(self):
        self.closed = True


def tx(tx_hash, sender, to=None):
    return {"hash": tx_hash, "from": sender, "to": to}


def wait_for(condition, timeout=5.0, poll=0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(poll)
    return condition()


@pytest.fixture
def node_factory():
    return FakeNode


@pytest.fixture
def transport_factory():
    return RecordingTransport
