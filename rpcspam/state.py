"""
Chain state snapshots used to parameterize generated queries.

A StateProducer polls the node for its latest block and turns it into an
immutable ChainState. Snapshots are handed to workers through a LatestState
cell that every worker reads on every iteration.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

from rpcspam.client import NodeClient

logger = logging.getLogger(__name__)


class EmptyBlock(Exception):
    """The latest block has no transactions or addresses to build a snapshot from."""


# =============================================================================
# Request IDs
# =============================================================================

class IdAllocator:
    """Hands out unique, increasing JSON-RPC request ids."""

    def __init__(self, start: int = 0):
        self._last = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            self._last += 1
            return self._last


# =============================================================================
# Snapshot
# =============================================================================

@dataclass(frozen=True)
class ChainState:
    """Immutable bundle of recently observed chain facts."""
    block_number: int
    block_hash: str
    transactions: Tuple[str, ...] = ()
    addresses: Tuple[str, ...] = ()
    topics: Tuple[str, ...] = ()
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)
    ids: IdAllocator = field(default_factory=IdAllocator, repr=False, compare=False)

    def randrange(self, n: int) -> int:
        return self.rng.randrange(n)

    def next_id(self) -> int:
        return self.ids.next()

    def random_transaction(self) -> Optional[str]:
        if not self.transactions:
            return None
        return self.rng.choice(self.transactions)

    def random_address(self) -> Optional[str]:
        if not self.addresses:
            return None
        return self.rng.choice(self.addresses)

    def random_topic(self) -> Optional[str]:
        if not self.topics:
            return None
        return self.rng.choice(self.topics)

    def random_block(self, window: int = 100) -> int:
        """Return a block number within `window` blocks of the snapshot head."""
        low = max(0, self.block_number - window)
        return low + self.rng.randrange(self.block_number - low + 1)


def initial_state(seed: Optional[int] = None) -> ChainState:
    """An empty seed snapshot that carries the process-wide rng and ids."""
    return ChainState(block_number=0, block_hash="", rng=random.Random(seed), ids=IdAllocator())


# =============================================================================
# Producer
# =============================================================================

class StateProducer:
    """Builds fresh snapshots from a node's latest block."""

    def __init__(self, client: NodeClient, receipt_sample: int = 20):
        self.client = client
        self.receipt_sample = receipt_sample

    def refresh(self, previous: ChainState) -> ChainState:
        """
        Build a snapshot from the current chain head.

        Raises EmptyBlock when the head holds no transactions, or none with
        an address to query. Any other client failure propagates.
        """
        block = self.client.latest_block()
        if not block.transactions:
            raise EmptyBlock(f"block {block.number} has no transactions")

        tx_hashes = []
        addresses = []
        for tx in block.transactions:
            # Light clients may return hashes only
            if isinstance(tx, str):
                tx_hashes.append(tx)
                continue
            tx_hashes.append(tx["hash"])
            for key in ("from", "to"):
                if tx.get(key):
                    addresses.append(tx[key])

        for tx_hash in tx_hashes[:self.receipt_sample]:
            receipt = self.client.receipt(tx_hash)
            if receipt and receipt.get("contractAddress"):
                addresses.append(receipt["contractAddress"])

        topics = []
        for log in self.client.logs(block.number):
            if log.get("address"):
                addresses.append(log["address"])
            topics.extend(log.get("topics") or [])

        if not addresses:
            raise EmptyBlock(f"block {block.number} has no addresses to query")

        return ChainState(
            block_number=block.number,
            block_hash=block.hash,
            transactions=tuple(dict.fromkeys(tx_hashes)),
            addresses=tuple(dict.fromkeys(addresses)),
            topics=tuple(dict.fromkeys(topics)),
            rng=previous.rng,
            ids=previous.ids,
        )


class LatestState:
    """
    Holds the most recent snapshot.

    Readers never drain the cell, so every worker sees every publication.
    Replacing the reference is a single assignment and never blocks.
    """

    def __init__(self):
        self._state: Optional[ChainState] = None
        self._ready = threading.Event()

    def publish(self, state: ChainState):
        self._state = state
        self._ready.set()

    def get(self) -> Optional[ChainState]:
        return self._state

    def wait(self, stop: threading.Event, poll: float = 0.1) -> Optional[ChainState]:
        """Block until a first snapshot is published or `stop` is set."""
        while not stop.is_set():
            if self._ready.wait(poll):
                return self._state
        return None


def refresh_loop(
    producer: StateProducer, cell: LatestState, state: ChainState,
    stop: threading.Event, refresh_interval: float = 15,
    empty_block_backoff: float = 5
) -> None:
    """
    Keep `cell` fed with fresh snapshots until `stop` is set.

    Empty blocks are retried after a short backoff while the previous
    snapshot stays in use. Any other failure sets `stop` and is re-raised.
    """
    while not stop.is_set():
        try:
            state = producer.refresh(state)
        except EmptyBlock as e:
            logger.debug("%s, retrying in %ss", e, empty_block_backoff)
            stop.wait(empty_block_backoff)
            continue
        except Exception:
            if stop.is_set():
                # Cancelled mid-request
                return
            logger.exception("failed to refresh state")
            stop.set()
            raise

        cell.publish(state)
        logger.info(
            "state refreshed at block %d: %d txs, %d addresses, %d topics",
            state.block_number, len(state.transactions),
            len(state.addresses), len(state.topics)
        )
        stop.wait(refresh_interval)
