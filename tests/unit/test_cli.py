"""Tests for the command-line interface."""

from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from stream_conformance.cli import EXIT_ERROR, EXIT_FAILED, EXIT_PASSED, cli
from stream_conformance.core.ledger import MessageLedger
from stream_conformance.runner.topologies import TOPOLOGY_NAMES


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def fast_config_file(temp_dir: Path) -> Path:
    """YAML config with delays short enough for a CLI run."""
    path = temp_dir / "fast.yaml"
    path.write_text(yaml.safe_dump({
        "network_setup_delay": 0.05,
        "propagation_delay": 0.2,
        "poll_interval": 0.01,
        "resend_from_delay": 0.05,
        "resend_last_delay": 0.1,
        "stop_timeout": 2.0,
        "participants": {"native_publishers": 1, "native_subscribers": 1},
    }))
    return path


def _run_args(config_path: Path, *extra: str) -> list[str]:
    return [
        "run",
        "--topology", "stream-cleartext-unsigned",
        "--config", str(config_path),
        "-n", "3",
        "--min-interval", "0.01",
        "--max-interval", "0.02",
        "--seed", "7",
        *extra,
    ]


class TestTopologiesCommand:
    """Tests for `topologies`."""

    def test_lists_all(self, runner):
        result = runner.invoke(cli, ["topologies"])
        assert result.exit_code == 0
        assert result.output.split() == list(TOPOLOGY_NAMES)
        assert len(TOPOLOGY_NAMES) == 6


class TestRunCommand:
    """Tests for `run`."""

    def test_passing_run(self, runner, fast_config_file):
        result = runner.invoke(cli, _run_args(fast_config_file))
        assert result.exit_code == EXIT_PASSED, result.output
        assert "PASSED" in result.output
        assert "Published: 3" in result.output

    def test_json_report(self, runner, fast_config_file, temp_dir):
        report = temp_dir / "verdict.json"
        result = runner.invoke(cli, _run_args(fast_config_file, "--json", "-o", str(report)))
        assert result.exit_code == EXIT_PASSED, result.output
        saved = json.loads(report.read_text())
        assert saved["topology"] == "stream-cleartext-unsigned"
        assert saved["total_published"] == 3

    def test_ledger_out(self, runner, fast_config_file, temp_dir):
        ledger_path = temp_dir / "ledger.json"
        result = runner.invoke(cli, _run_args(fast_config_file, "--ledger-out", str(ledger_path)))
        assert result.exit_code == EXIT_PASSED, result.output
        ledger = MessageLedger.load(ledger_path)
        assert ledger.total_sent() == 3

    def test_external_without_command(self, runner, fast_config_file):
        result = runner.invoke(cli, _run_args(fast_config_file, "--external-publishers", "1"))
        assert result.exit_code == EXIT_ERROR
        assert "external_command" in result.output

    def test_bad_client_factory(self, runner, fast_config_file):
        result = runner.invoke(cli, _run_args(fast_config_file, "--client-factory", "no_such_module:factory"))
        assert result.exit_code == EXIT_ERROR
        assert "no_such_module" in result.output

    def test_endpoints_reach_client_factory_builder(self, runner, fast_config_file, temp_dir, monkeypatch):
        """--rest-url and --ws-url are handed to a builder taking the run config."""
        (temp_dir / "endpoint_factory.py").write_text(
            "from stream_conformance.clients.memory import InMemoryNetwork\n"
            "\n"
            "SEEN = []\n"
            "\n"
            "\n"
            "def build(config):\n"
            "    SEEN.append((config.rest_url, config.websocket_url))\n"
            "    return InMemoryNetwork().client_factory\n"
        )
        monkeypatch.syspath_prepend(str(temp_dir))
        result = runner.invoke(cli, _run_args(
            fast_config_file,
            "--client-factory", "endpoint_factory:build",
            "--rest-url", "https://streams.example.com/api/v2",
            "--ws-url", "wss://streams.example.com/api/v2/ws",
        ))
        assert result.exit_code == EXIT_PASSED, result.output
        assert sys.modules["endpoint_factory"].SEEN == [
            ("https://streams.example.com/api/v2", "wss://streams.example.com/api/v2/ws")
        ]

    def test_unknown_topology_rejected(self, runner):
        result = runner.invoke(cli, ["run", "--topology", "stream-bogus"])
        assert result.exit_code == 2
        assert "stream-bogus" in result.output


class TestVerifyCommand:
    """Tests for `verify`."""

    def _ledger(self, received: list[str]) -> MessageLedger:
        ledger = MessageLedger()
        ledger.register_publisher("0xpub", "python", 3)
        ledger.register_subscriber("0xsub", "python")
        for payload in ('{"n":1}', '{"n":2}', '{"n":3}'):
            ledger.record_sent("0xpub", payload)
        for payload in received:
            ledger.record_received("0xpub", "0xsub", payload)
        ledger.close()
        return ledger

    def test_passing_ledger(self, runner, temp_dir):
        path = temp_dir / "ok.json"
        self._ledger(['{"n":1}', '{"n":2}', '{"n":3}']).dump(path)

        result = runner.invoke(cli, ["verify", str(path)])
        assert result.exit_code == EXIT_PASSED, result.output
        assert "PASSED" in result.output

    def test_failing_ledger(self, runner, temp_dir):
        path = temp_dir / "lossy.json"
        self._ledger(['{"n":1}', '{"n":3}']).dump(path)

        result = runner.invoke(cli, ["verify", str(path)])
        assert result.exit_code == EXIT_FAILED
        assert "FAILED" in result.output
        assert "position: 2" in result.output

    def test_corrupt_ledger(self, runner, temp_dir):
        path = temp_dir / "corrupt.json"
        path.write_text("{not json")

        result = runner.invoke(cli, ["verify", str(path)])
        assert result.exit_code == EXIT_ERROR
