"""Shared pytest fixtures for stream-conformance tests."""

from __future__ import annotations

import shlex
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from stream_conformance.clients.memory import InMemoryNetwork
from stream_conformance.config import Participants, RunConfig
from stream_conformance.core.context import RunContext
from stream_conformance.core.ledger import MessageLedger

FAKE_AGENT = '''#!/usr/bin/env python3
"""Scripted external agent for tests."""

import argparse
import hashlib
import json
import os
import sys
import time


def address(private_key):
    return "0x" + hashlib.sha256(bytes.fromhex(private_key)).hexdigest()[-40:]


def follow(path):
    """Print every line appended to path, forever."""
    partial = ""
    with open(path) as f:
        while True:
            chunk = f.readline()
            if not chunk:
                time.sleep(0.01)
                continue
            partial += chunk
            if partial.endswith("\\n"):
                print(partial.rstrip("\\n"), flush=True)
                partial = ""


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("role")
    parser.add_argument("--private-key")
    parser.add_argument("--stream")
    parser.add_argument("--publish-function", default="default")
    parser.add_argument("--interval", type=int, default=100)
    parser.add_argument("--max-messages", type=int, default=0)
    parser.add_argument("--rotation-period", type=int)
    parser.add_argument("--revocation-period", type=int)
    parser.add_argument("--resend-option")
    parser.add_argument("--group-key")
    args = parser.parse_args()

    mode = os.environ.get("FAKE_AGENT_MODE", "")
    print(f"Starting {args.role} on {args.stream}", flush=True)
    if mode == "crash":
        print("cannot connect", flush=True)
        sys.exit(3)

    if args.role == "publisher":
        count = 0
        while args.max_messages == 0 or count < args.max_messages:
            count += 1
            payload = json.dumps({"counter": count, "function": args.publish_function})
            base = os.environ.get("FAKE_AGENT_TIMESTAMPS")
            if base:
                print(f"Published: {int(base) + count}###{payload}", flush=True)
            else:
                print("Published: " + payload, flush=True)
            wire = os.environ.get("FAKE_AGENT_WIRE")
            if wire:
                with open(wire, "a") as f:
                    f.write(f"Received: {address(args.private_key)}###{payload}\\n")
            time.sleep(args.interval / 1000)
        if mode == "fail-after-publish":
            sys.exit(1)
        return

    print("resend " + str(args.resend_option), flush=True)
    feed = os.environ.get("FAKE_AGENT_FEED")
    if feed:
        with open(feed) as f:
            for line in f:
                print(line.rstrip("\\n"), flush=True)
    wire = os.environ.get("FAKE_AGENT_WIRE")
    if wire:
        follow(wire)
    while True:
        time.sleep(0.05)


if __name__ == "__main__":
    main()
'''


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests.

    Yields:
        Path to temporary directory (cleaned up after test)
    """
    temp_path = Path(tempfile.mkdtemp(prefix="stream_conformance_test_"))
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def fast_config() -> RunConfig:
    """Return a config with delays short enough for unit tests.

    Returns:
        RunConfig with one native publisher and one native subscriber
    """
    return RunConfig(
        min_interval=0.01,
        max_interval=0.02,
        max_messages=5,
        network_setup_delay=0.05,
        propagation_delay=0.2,
        poll_interval=0.01,
        resend_from_delay=0.05,
        resend_last_delay=0.1,
        stop_timeout=2.0,
        startup_grace=0.2,
        seed=42,
        participants=Participants(native_publishers=1, native_subscribers=1),
    )


@pytest.fixture
def context(fast_config: RunConfig) -> RunContext:
    """Create a run context over the fast config."""
    return RunContext.create(fast_config, "test")


@pytest.fixture
def ledger() -> MessageLedger:
    return MessageLedger()


@pytest.fixture
def network() -> InMemoryNetwork:
    return InMemoryNetwork()


@pytest.fixture
def fake_agent_command(temp_dir: Path) -> str:
    """Write the scripted external agent and return the command that runs it.

    Args:
        temp_dir: Temporary directory fixture

    Returns:
        Shell-quoted command line
    """
    script = temp_dir / "fake_agent.py"
    script.write_text(FAKE_AGENT)
    return f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
