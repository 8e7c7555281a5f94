#!/usr/bin/env python3
"""
Synthetic JSON-RPC load generator.

Fires a weighted random mix of realistic RPC calls, parameterized with live
chain data, at an endpoint and reports requests per second.

Usage:
    python -m rpcspam.spam                                 # Run with config.json settings
    python -m rpcspam.spam --rpc http://localhost:8545     # Override endpoint
    python -m rpcspam.spam -m eth_call:100 -m eth_getLogs:10
"""

import argparse
import json
import logging
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, Optional

import requests

from rpcspam.client import NodeClient, RPCError, Transport
from rpcspam.dispatcher import Dispatcher, RateLimiter, RequestCounter, ThroughputReporter
from rpcspam.generator import DEFAULT_METHODS, GENERATORS, QueryRegistry, install_defaults
from rpcspam.state import LatestState, StateProducer, initial_state, refresh_loop

__version__ = "0.1.0"

DEFAULT_CONFIG_PATH = "config/config.json"

EXIT_SETUP = 1
EXIT_RUNTIME = 2

logger = logging.getLogger(__name__)


class FatalError(Exception):
    """A runtime failure that ends the whole run."""


# =============================================================================
# Configuration
# =============================================================================

@dataclass
class LoadConfig:
    """Load generator configuration loaded from config.json."""
    endpoint: str = "http://localhost:8545"
    methods: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_METHODS))
    workers: int = 250
    rate_limit: float = 0.0            # req/s across all workers, 0 = unlimited

    # State refresh settings
    refresh_interval: float = 15.0
    empty_block_backoff: float = 5.0
    receipt_sample: int = 20

    # Run settings
    report_interval: float = 1.0
    duration: float = 0.0              # seconds, 0 = until interrupted
    timeout: float = 10.0
    seed: Optional[int] = None

    def validate(self):
        """Validate configuration parameters."""
        if not isinstance(self.endpoint, str) or not self.endpoint:
            raise ValueError(f"endpoint must be a URL, got {self.endpoint!r}")
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")
        if self.rate_limit < 0:
            raise ValueError(f"rate_limit must be >= 0, got {self.rate_limit}")
        for name in ("refresh_interval", "empty_block_backoff", "report_interval", "timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")
        for method, weight in self.methods.items():
            if method not in GENERATORS:
                raise ValueError(f"unknown method: {method}")
            if weight < 0:
                raise ValueError(f"weight for {method} must be >= 0, got {weight}")
        if not any(self.methods.values()):
            raise ValueError("at least one method needs a positive weight")


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> LoadConfig:
    """Load configuration from JSON file."""
    with open(config_path, 'r') as f:
        data = json.load(f)

    seed = data.get("seed")
    config = LoadConfig(
        endpoint=data.get("endpoint", "http://localhost:8545"),
        workers=int(data.get("workers", 250)),
        rate_limit=float(data.get("rate_limit", 0.0)),
        seed=None if seed is None else int(seed),
    )
    if "methods" in data:
        config.methods = {k: int(v) for k, v in data["methods"].items()}

    # Load state settings if present
    if "state" in data:
        st = data["state"]
        config.refresh_interval = float(st.get("refresh_interval", 15.0))
        config.empty_block_backoff = float(st.get("empty_block_backoff", 5.0))
        config.receipt_sample = int(st.get("receipt_sample", 20))

    if "run" in data:
        run = data["run"]
        config.report_interval = float(run.get("report_interval", 1.0))
        config.duration = float(run.get("duration", 0.0))
        config.timeout = float(run.get("timeout", 10.0))

    return config


def parse_method(value: str) -> tuple:
    """Parse a `method:weight` flag value."""
    method, sep, weight = value.partition(":")
    if not sep or not method:
        raise argparse.ArgumentTypeError(f"expected method:weight, got {value!r}")
    try:
        return method, int(weight)
    except ValueError:
        raise argparse.ArgumentTypeError(f"weight must be an integer, got {weight!r}")


# =============================================================================
# Runner
# =============================================================================

class LoadRunner:
    """Wires the state refresher, worker pool and reporter together."""

    def __init__(self, config: LoadConfig, client: Optional[NodeClient] = None,
                 transport: Optional[Transport] = None):
        self.config = config
        self.client = client or NodeClient(config.endpoint, timeout=config.timeout)
        self.transport = transport or Transport(config.endpoint, timeout=config.timeout)
        self.registry = QueryRegistry()
        install_defaults(self.registry, config.methods)
        self.stop = threading.Event()
        self.cell = LatestState()
        self.counter = RequestCounter()
        self.reporter = ThroughputReporter(self.counter, interval=config.report_interval)
        limiter = RateLimiter(config.rate_limit) if config.rate_limit > 0 else None
        self.dispatcher = Dispatcher(
            self.registry, self.cell, self.transport.send, self.counter, self.stop,
            num_workers=config.workers, limiter=limiter
        )

    def run(self) -> dict:
        """Run until interrupted, the duration elapses or a fatal error occurs."""
        print(f"\n{'='*60}")
        print("Starting load")
        print(f"{'='*60}")
        print(f"  Endpoint: {self.config.endpoint}")
        print(f"  Workers: {self.config.workers}")
        print(f"  Rate Limit: {self.config.rate_limit or 'none'}")
        print(f"  Methods: {self.registry.methods()}")
        print()

        producer = StateProducer(self.client, receipt_sample=self.config.receipt_sample)
        refresher = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rpcspam-state")
        state_future = refresher.submit(
            refresh_loop, producer, self.cell, initial_state(self.config.seed), self.stop,
            self.config.refresh_interval, self.config.empty_block_backoff
        )
        self.dispatcher.start()

        try:
            self.reporter.run(self.stop, duration=self.config.duration,
                              alive=lambda: self.dispatcher.running() > 0)
        except KeyboardInterrupt:
            print("\nInterrupted, stopping workers...")
        finally:
            self.stop.set()
            self.dispatcher.join(timeout=self.config.timeout + 1)
            wait([state_future], timeout=self.config.timeout + 1)
            refresher.shutdown(wait=False)
            self.transport.close()
            self.client.close()

        summary = self.reporter.summary()
        print(f"\n{'='*60}")
        print("Load Results")
        print(f"{'='*60}")
        print(f"  Total Sent: {summary['total']}")
        print(f"  Req/s Mean: {summary['mean']:.1f}")
        print(f"  Req/s P50: {summary['p50']:.1f}")
        print(f"  Req/s P95: {summary['p95']:.1f}")
        print(f"  Req/s Max: {summary['max']:.1f}")

        if state_future.done() and state_future.exception() is not None:
            raise FatalError(f"failed to refresh state: {state_future.exception()}")
        if self.dispatcher.failure is not None:
            raise FatalError(f"failed to write generated query: {self.dispatcher.failure}")
        return summary


# =============================================================================
# Main
# =============================================================================

def exit_with(code: int, message: str):
    print(message, file=sys.stderr)
    sys.exit(code)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Weighted JSON-RPC load generator")
    parser.add_argument("--config", help=f"Config file path (default: {DEFAULT_CONFIG_PATH} if present)")
    parser.add_argument("--rpc", help="JSON-RPC endpoint to load")
    parser.add_argument("-m", "--method", type=parse_method, action="append",
                        help="method:weight, repeatable; replaces the default mix")
    parser.add_argument("-w", "--workers", type=int, help="Override number of workers")
    parser.add_argument("-r", "--ratelimit", type=float, help="Rate limit in req/s across workers")
    parser.add_argument("--refresh-interval", type=float, help="Override state refresh interval")
    parser.add_argument("--duration", type=float, help="Stop after this many seconds")
    parser.add_argument("--seed", type=int, help="Seed for query randomness")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--version", action="store_true", help="Print version and exit")

    args = parser.parse_args(argv)

    if args.version:
        print(__version__)
        sys.exit(0)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    # Load config
    try:
        if args.config:
            config = load_config(args.config)
        elif os.path.exists(DEFAULT_CONFIG_PATH):
            config = load_config(DEFAULT_CONFIG_PATH)
        else:
            config = LoadConfig()
    except (OSError, ValueError, TypeError, AttributeError) as e:
        exit_with(EXIT_SETUP, f"failed to load config: {e}")

    # Apply CLI overrides
    if args.rpc is not None:
        config.endpoint = args.rpc
    if args.method:
        config.methods = dict(args.method)
    if args.workers is not None:
        config.workers = args.workers
    if args.ratelimit is not None:
        config.rate_limit = args.ratelimit
    if args.refresh_interval is not None:
        config.refresh_interval = args.refresh_interval
    if args.duration is not None:
        config.duration = args.duration
    if args.seed is not None:
        config.seed = args.seed

    try:
        config.validate()
        runner = LoadRunner(config)
    except (ValueError, TypeError) as e:
        exit_with(EXIT_SETUP, f"failed to install defaults: {e}")

    try:
        head = runner.client.block_number()
    except (requests.RequestException, RPCError, ValueError, TypeError) as e:
        exit_with(EXIT_SETUP, f"failed to reach node at {config.endpoint}: {e}")
    logger.info("connected to %s at block %d", config.endpoint, head)

    try:
        runner.run()
    except FatalError as e:
        exit_with(EXIT_RUNTIME, str(e))


if __name__ == "__main__":
    main()
