"""
Tests for weighted query selection and the built-in query generators.
"""

import io
import json
import random
from collections import Counter

import pytest

from rpcspam.generator import (
    DEFAULT_METHODS, GENERATORS, EndOfInput, NoGeneratorsRegistered, QueryRegistry,
    RandomQuery, install_defaults,
)
from rpcspam.state import ChainState, IdAllocator

ADDRESSES = ("0x1234567890123456789012345678901234567890", "0xabcdabcdabcdabcdabcdabcdabcdabcdabcdab01")
TX_HASHES = ("0x" + "11" * 32, "0x" + "22" * 32)
TOPICS = ("0x" + "ab" * 32,)


class FixedDraw:
    """State whose random draw is pinned to a single value."""

    def __init__(self, draw: int):
        self.draw = draw
        self.draws = 0

    def randrange(self, n: int) -> int:
        self.draws += 1
        return self.draw


def recorder(picked: list, name: str):
    def generate(out, state):
        picked.append(name)
        out.write(name.encode())
    return generate


def make_state(seed=7, **kwargs) -> ChainState:
    values = dict(block_number=1000, block_hash="0x" + "00" * 32,
                  transactions=TX_HASHES, addresses=ADDRESSES, topics=TOPICS)
    values.update(kwargs)
    return ChainState(rng=random.Random(seed), ids=IdAllocator(), **values)


def test_add_keeps_weights_sorted_and_totals():
    registry = QueryRegistry()
    weights = [550, 100, 2000, 250, 400, 250, 350, 1]
    for i, w in enumerate(weights):
        registry.add(RandomQuery(method=f"m{i}", weight=w, generate=recorder([], f"m{i}")))

    assert [q.weight for q in registry.queries] == sorted(weights)
    assert registry.total_weight == sum(weights)
    assert len(registry) == len(weights)


@pytest.mark.parametrize("weight", [0, -5])
def test_add_rejects_non_positive_weight(weight):
    registry = QueryRegistry()
    with pytest.raises(ValueError):
        registry.add(RandomQuery(method="bad", weight=weight, generate=recorder([], "bad")))
    assert registry.total_weight == 0
    assert len(registry) == 0


def test_query_on_empty_registry_fails_without_side_effects():
    registry = QueryRegistry()
    state = FixedDraw(0)
    out = io.BytesIO()

    with pytest.raises(NoGeneratorsRegistered):
        registry.query(out, state)

    assert state.draws == 0
    assert out.getvalue() == b""


def test_each_entry_owns_exactly_its_weight_of_draws():
    picked = []
    registry = QueryRegistry()
    weights = {"a": 3, "b": 1, "c": 5}
    for name, w in weights.items():
        registry.add(RandomQuery(method=name, weight=w, generate=recorder(picked, name)))

    for draw in range(registry.total_weight):
        registry.query(io.BytesIO(), FixedDraw(draw))

    assert Counter(picked) == weights
    # Lowest weight owns the lowest draws
    assert picked[0] == "b"
    assert picked[-1] == "c"


def test_weighted_selection_converges_to_proportions():
    picked = []
    registry = QueryRegistry()
    registry.add(RandomQuery(method="A", weight=100, generate=recorder(picked, "A")))
    registry.add(RandomQuery(method="B", weight=300, generate=recorder(picked, "B")))
    assert registry.total_weight == 400

    state = make_state(seed=1234)
    for _ in range(10_000):
        registry.query(io.BytesIO(), state)

    counts = Counter(picked)
    assert counts["A"] + counts["B"] == 10_000
    assert 7300 <= counts["B"] <= 7700


def test_selection_invariant_violation_is_fatal():
    registry = QueryRegistry()
    registry.add(RandomQuery(method="a", weight=10, generate=recorder([], "a")))
    registry.total_weight = 20  # corrupt the running total

    with pytest.raises(RuntimeError):
        registry.query(io.BytesIO(), FixedDraw(15))


def test_end_of_input_propagates_from_generator():
    def exhausted(out, state):
        raise EndOfInput("nothing left")

    registry = QueryRegistry()
    registry.add(RandomQuery(method="done", weight=1, generate=exhausted))

    with pytest.raises(EndOfInput):
        registry.query(io.BytesIO(), make_state())


@pytest.mark.parametrize("method", sorted(GENERATORS))
def test_default_generators_write_jsonrpc_envelopes(method):
    state = make_state()
    out = io.BytesIO()
    GENERATORS[method](out, state)

    request = json.loads(out.getvalue())
    assert request["jsonrpc"] == "2.0"
    assert request["method"] == method
    assert request["id"] == 1
    assert isinstance(request["params"], list)


def test_generators_draw_arguments_from_state():
    state = make_state()
    for method in ("eth_getBalance", "eth_getCode", "eth_getTransactionCount"):
        out = io.BytesIO()
        GENERATORS[method](out, state)
        params = json.loads(out.getvalue())["params"]
        assert params[0] in ADDRESSES

    for method in ("eth_getTransactionByHash", "eth_getTransactionReceipt"):
        out = io.BytesIO()
        GENERATORS[method](out, state)
        assert json.loads(out.getvalue())["params"][0] in TX_HASHES

    out = io.BytesIO()
    GENERATORS["eth_call"](out, state)
    call, tag = json.loads(out.getvalue())["params"]
    assert call["to"] in ADDRESSES
    assert call["data"].startswith("0x70a08231")
    assert len(call["data"]) == 10 + 64
    assert tag == "latest"


def test_block_and_log_ranges_stay_near_head():
    state = make_state()
    for _ in range(200):
        out = io.BytesIO()
        GENERATORS["eth_getBlockByNumber"](out, state)
        block, full_tx = json.loads(out.getvalue())["params"]
        assert 900 <= int(block, 16) <= 1000
        assert isinstance(full_tx, bool)

        out = io.BytesIO()
        GENERATORS["eth_getLogs"](out, state)
        log_filter = json.loads(out.getvalue())["params"][0]
        assert int(log_filter["fromBlock"], 16) <= int(log_filter["toBlock"], 16) <= 1000
        assert log_filter.get("address", ADDRESSES[0]) in ADDRESSES
        assert log_filter.get("topics", [TOPICS[0]]) == [TOPICS[0]]


def test_request_ids_are_unique_across_generators():
    state = make_state()
    ids = []
    for method in sorted(GENERATORS) * 3:
        out = io.BytesIO()
        GENERATORS[method](out, state)
        ids.append(json.loads(out.getvalue())["id"])
    assert ids == list(range(1, len(ids) + 1))


@pytest.mark.parametrize("method", [
    "eth_getBalance", "eth_getCode", "eth_getTransactionCount", "eth_call",
])
def test_address_generators_end_without_addresses(method):
    with pytest.raises(EndOfInput):
        GENERATORS[method](io.BytesIO(), make_state(addresses=()))


@pytest.mark.parametrize("method", ["eth_getTransactionByHash", "eth_getTransactionReceipt"])
def test_transaction_generators_end_without_transactions(method):
    with pytest.raises(EndOfInput):
        GENERATORS[method](io.BytesIO(), make_state(transactions=()))


def test_install_defaults_registers_every_method():
    registry = QueryRegistry()
    install_defaults(registry, DEFAULT_METHODS)

    assert registry.methods() == DEFAULT_METHODS
    assert registry.total_weight == 4900


def test_install_defaults_skips_zero_weights_and_rejects_unknown():
    registry = QueryRegistry()
    install_defaults(registry, {"eth_call": 10, "eth_getLogs": 0})
    assert registry.methods() == {"eth_call": 10}

    with pytest.raises(ValueError):
        install_defaults(QueryRegistry(), {"eth_doesNotExist": 1})
