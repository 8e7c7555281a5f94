"""
Weighted random JSON-RPC query generation.

A QueryRegistry holds one generator per RPC method, each with an integer
weight, and picks among them in proportion to those weights. Generators
write a single JSON-RPC envelope built from a ChainState snapshot.
"""

import bisect
import json
from dataclasses import dataclass
from typing import IO, Callable, Dict, List

from rpcspam.state import ChainState


class NoGeneratorsRegistered(Exception):
    """Raised when a query is requested from an empty registry."""


class EndOfInput(Exception):
    """A generator has no more meaningful queries to produce."""


Generator = Callable[[IO[bytes], ChainState], None]


@dataclass(frozen=True)
class RandomQuery:
    """A query generator registered under an RPC method with a weight."""
    method: str
    weight: int
    generate: Generator


class QueryRegistry:
    """Selects query generators by proportional weighted probability."""

    def __init__(self):
        self.queries: List[RandomQuery] = []  # sorted by weight asc
        self.total_weight = 0

    def __len__(self) -> int:
        return len(self.queries)

    def methods(self) -> Dict[str, int]:
        return {q.method: q.weight for q in self.queries}

    def add(self, query: RandomQuery):
        """
        Insert a query generator keeping the weight ordering. Not thread-safe,
        should be run once during initialization.
        """
        if query.weight <= 0:
            raise ValueError(f"{query.method}: weight must be positive, got {query.weight}")
        idx = bisect.bisect_right(self.queries, query.weight, key=lambda q: q.weight)
        self.queries.insert(idx, query)
        self.total_weight += query.weight

    def query(self, out: IO[bytes], state: ChainState):
        """
        Select a generator and write its query to `out`.

        A draw in [0, total_weight) belongs to the first entry whose
        cumulative weight exceeds it, so each entry owns exactly `weight`
        of the possible draws.
        """
        if not self.queries:
            raise NoGeneratorsRegistered("no query generators available")

        draw = state.randrange(self.total_weight)

        current = 0
        for q in self.queries:
            current += q.weight
            if draw < current:
                return q.generate(out, state)

        raise RuntimeError(
            f"weighted query selection found no generator for draw {draw} of {self.total_weight}"
        )


# =============================================================================
# Query Generators
# =============================================================================

BALANCE_OF_SELECTOR = "0x70a08231"  # balanceOf(address)
LOG_RANGE = 5  # blocks spanned by generated eth_getLogs filters


def write_request(out: IO[bytes], state: ChainState, method: str, params: list):
    out.write(json.dumps({
        "jsonrpc": "2.0",
        "id": state.next_id(),
        "method": method,
        "params": params
    }).encode())


def encode_address(addr: str) -> str:
    """Encode address as 32-byte hex string."""
    addr_clean = addr[2:] if addr.startswith("0x") else addr
    return addr_clean.lower().zfill(64)


def _address(state: ChainState) -> str:
    addr = state.random_address()
    if addr is None:
        raise EndOfInput("no addresses in chain state")
    return addr


def _transaction(state: ChainState) -> str:
    tx_hash = state.random_transaction()
    if tx_hash is None:
        raise EndOfInput("no transactions in chain state")
    return tx_hash


def gen_block_number(out: IO[bytes], state: ChainState):
    write_request(out, state, "eth_blockNumber", [])


def gen_get_balance(out: IO[bytes], state: ChainState):
    write_request(out, state, "eth_getBalance", [_address(state), "latest"])


def gen_get_code(out: IO[bytes], state: ChainState):
    write_request(out, state, "eth_getCode", [_address(state), "latest"])


def gen_get_transaction_count(out: IO[bytes], state: ChainState):
    tag = "pending" if state.randrange(2) else "latest"
    write_request(out, state, "eth_getTransactionCount", [_address(state), tag])


def gen_get_transaction_by_hash(out: IO[bytes], state: ChainState):
    write_request(out, state, "eth_getTransactionByHash", [_transaction(state)])


def gen_get_transaction_receipt(out: IO[bytes], state: ChainState):
    write_request(out, state, "eth_getTransactionReceipt", [_transaction(state)])


def gen_get_block_by_number(out: IO[bytes], state: ChainState):
    full_tx = state.randrange(2) == 1
    write_request(out, state, "eth_getBlockByNumber", [hex(state.random_block()), full_tx])


def gen_get_logs(out: IO[bytes], state: ChainState):
    to_block = state.random_block()
    from_block = max(0, to_block - state.randrange(LOG_RANGE))
    log_filter = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}

    # Mix address-only, topic-only and open range filters
    kind = state.randrange(3)
    if kind == 0 and state.addresses:
        log_filter["address"] = state.random_address()
    elif kind == 1 and state.topics:
        log_filter["topics"] = [state.random_topic()]
    write_request(out, state, "eth_getLogs", [log_filter])


def gen_call(out: IO[bytes], state: ChainState):
    call = {
        "to": _address(state),
        "data": BALANCE_OF_SELECTOR + encode_address(_address(state))
    }
    write_request(out, state, "eth_call", [call, "latest"])


GENERATORS: Dict[str, Generator] = {
    "eth_blockNumber": gen_block_number,
    "eth_call": gen_call,
    "eth_getBalance": gen_get_balance,
    "eth_getBlockByNumber": gen_get_block_by_number,
    "eth_getCode": gen_get_code,
    "eth_getLogs": gen_get_logs,
    "eth_getTransactionByHash": gen_get_transaction_by_hash,
    "eth_getTransactionCount": gen_get_transaction_count,
    "eth_getTransactionReceipt": gen_get_transaction_receipt,
}

DEFAULT_METHODS: Dict[str, int] = {
    "eth_getCode": 100,
    "eth_getLogs": 250,
    "eth_getTransactionByHash": 250,
    "eth_blockNumber": 350,
    "eth_getTransactionCount": 400,
    "eth_getBlockByNumber": 400,
    "eth_getBalance": 550,
    "eth_getTransactionReceipt": 600,
    "eth_call": 2000,
}


def install_defaults(registry: QueryRegistry, methods: Dict[str, int]):
    """Register the built-in generator for each method. Weight 0 disables one."""
    for method, weight in methods.items():
        if method not in GENERATORS:
            raise ValueError(f"no query generator for method: {method}")
        if weight == 0:
            continue
        registry.add(RandomQuery(method=method, weight=weight, generate=GENERATORS[method]))
