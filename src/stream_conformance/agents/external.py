"""Agents backed by an external process.

An external agent is any program (typically a client implementation in
another runtime) that accepts the agent arguments and reports events as
lines on stdout:

    Published: <payload>
    Received: <publisherId>###<payload>
    Decryption failed: <detail>

Any other line is diagnostic output and is logged at DEBUG.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from typing import Callable

from ..core.client import now_ms
from ..core.payload import canonicalize
from ..core.protocol import AgentLine, LineKind, ResendDirective, parse_agent_line
from ..exceptions import AgentStartError, PublishError
from ..scheduling.strategies import PublishStrategy
from .base import AgentKind, PublisherAgent, SubscriberAgent

logger = logging.getLogger(__name__)


class ExternalProcess:
    """One spawned agent process and the thread pumping its stdout."""

    def __init__(
        self,
        argv: list[str],
        on_line: Callable[[AgentLine], None],
        name: str,
        on_exit: Callable[[int | None], None] | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        startup_grace: float = 0.5,
        stop_timeout: float = 5.0,
    ):
        """Initialize the process handle.

        Args:
            argv: Full argument vector
            on_line: Called with every parsed stdout line, on the reader thread
            name: Name used for the reader thread and in logs
            on_exit: Called with the return code once stdout is exhausted
            env: Environment for the process (defaults to ours)
            cwd: Working directory
            startup_grace: Seconds the process must survive to count as started
            stop_timeout: Seconds between SIGTERM and SIGKILL on stop
        """
        self.argv = argv
        self.name = name
        self._on_line = on_line
        self._on_exit = on_exit
        self.env = env
        self.cwd = cwd
        self.startup_grace = startup_grace
        self.stop_timeout = stop_timeout
        self._proc: subprocess.Popen[str] | None = None
        self._reader: threading.Thread | None = None
        self._stopping = threading.Event()
        self._start_done = threading.Event()
        self._start_failed = False
        self._recent_output: list[str] = []

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def returncode(self) -> int | None:
        return self._proc.poll() if self._proc is not None else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def start(self) -> None:
        """Spawn the process and wait out the startup grace period.

        Raises:
            AgentStartError: If the process cannot be spawned or dies
                with a non-zero code during the grace period
        """
        try:
            self._proc = subprocess.Popen(
                self.argv,
                cwd=self.cwd,
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                # New process group so stop() reaches the agent's children too
                preexec_fn=os.setsid if os.name != "nt" else None,
            )
        except OSError as e:
            raise AgentStartError(f"Cannot start {self.name}: {e}") from e

        self._reader = threading.Thread(target=self._pump, name=f"{self.name}-stdout", daemon=True)
        self._reader.start()

        try:
            deadline = time.monotonic() + self.startup_grace
            while time.monotonic() < deadline:
                code = self._proc.poll()
                if code is not None:
                    if code != 0:
                        self._start_failed = True
                        self._reader.join(1.0)
                        output = "\n".join(self._recent_output[-10:])
                        raise AgentStartError(f"{self.name} exited with code {code} during startup:\n{output}")
                    break
                time.sleep(min(0.05, self.startup_grace))
        finally:
            self._start_done.set()

    def _pump(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        for raw in iter(self._proc.stdout.readline, ""):
            line = parse_agent_line(raw)
            if line.kind == LineKind.DIAGNOSTIC:
                self._recent_output.append(line.text)
                del self._recent_output[:-50]
                logger.debug("[%s] %s", self.name, line.text)
                continue
            try:
                self._on_line(line)
            except Exception as e:
                logger.error("[%s] failed to handle line %r: %s", self.name, line.text, e)
        code = self._proc.wait()
        self._start_done.wait()
        if self._start_failed:
            return
        if not self._stopping.is_set() and code != 0:
            logger.error("%s exited unexpectedly with code %s", self.name, code)
        if self._on_exit is not None:
            self._on_exit(code)

    def stop(self) -> None:
        """Terminate the process group and wait for the reader to drain.

        A final line written while the signal is in flight is still
        delivered to on_line.
        """
        self._stopping.set()
        proc = self._proc
        if proc is None:
            return
        if proc.poll() is None:
            self._signal(proc, signal.SIGTERM)
            try:
                proc.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                logger.warning("%s ignored SIGTERM, killing", self.name)
                self._signal(proc, signal.SIGKILL)
                proc.wait()
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join(self.stop_timeout)
        if proc.stdout is not None and (self._reader is None or not self._reader.is_alive()):
            proc.stdout.close()

    @staticmethod
    def _signal(proc: subprocess.Popen[str], sig: signal.Signals) -> None:
        if os.name != "nt":
            try:
                os.killpg(os.getpgid(proc.pid), sig)
            except ProcessLookupError:
                pass  # Already dead
        elif sig == signal.SIGKILL:
            proc.kill()
        else:
            proc.terminate()


def build_agent_argv(
    command: str,
    role: str,
    private_key: str,
    stream_id: str,
    extra: list[str] | None = None,
) -> list[str]:
    """Build the argument vector of an external agent."""
    return [
        *shlex.split(command),
        role,
        "--private-key",
        private_key,
        "--stream",
        stream_id,
        *(extra or []),
    ]


class ExternalPublisher(PublisherAgent):
    """A publisher running in its own process.

    The process owns its publish timer; the harness only passes the
    interval and bound and listens for Published lines.
    """

    kind = AgentKind.EXTERNAL

    def __init__(
        self,
        command: str,
        identity: str,
        private_key: str,
        stream_id: str,
        strategy: PublishStrategy,
        interval: float,
        max_messages: int = 0,
        label: str = "external",
        group_key_hex: str | None = None,
        startup_grace: float = 0.5,
        stop_timeout: float = 5.0,
    ):
        super().__init__(identity, label, interval, max_messages)
        self.stream_id = stream_id
        self.strategy = strategy
        extra = [
            *strategy.agent_arguments(),
            "--interval",
            str(int(interval * 1000)),
            "--max-messages",
            str(max_messages),
        ]
        if group_key_hex:
            extra.extend(["--group-key", group_key_hex])
        self.process = ExternalProcess(
            build_agent_argv(command, "publisher", private_key, stream_id, extra),
            on_line=self._handle_line,
            on_exit=self._handle_exit,
            name=f"{label}-publisher-{identity[:10]}",
            startup_grace=startup_grace,
            stop_timeout=stop_timeout,
        )
        self._exited = threading.Event()

    def start(self) -> None:
        self.process.start()

    def _handle_line(self, line: AgentLine) -> None:
        if line.kind == LineKind.PUBLISHED and line.payload is not None:
            timestamp = line.timestamp if line.timestamp is not None else now_ms()
            self._emit_published(canonicalize(line.payload), timestamp)

    def _handle_exit(self, code: int | None) -> None:
        self._exited.set()
        if self.process.stopping:
            return
        bounded_done = self.max_messages > 0 and self.published_count >= self.max_messages
        if code != 0 or not bounded_done:
            self._emit_error(
                PublishError(
                    f"{self.describe()} exited with code {code} after "
                    f"{self.published_count} of {self.max_messages or 'unbounded'} messages"
                )
            )

    @property
    def is_ready(self) -> bool:
        if self.max_messages > 0 and self.published_count >= self.max_messages:
            return True
        return self._exited.is_set()

    def stop(self) -> None:
        self.process.stop()


class ExternalSubscriber(SubscriberAgent):
    """A subscriber running in its own process."""

    kind = AgentKind.EXTERNAL

    def __init__(
        self,
        command: str,
        identity: str,
        private_key: str,
        stream_id: str,
        resend: ResendDirective | None = None,
        label: str = "external",
        group_key_hex: str | None = None,
        startup_grace: float = 0.5,
        stop_timeout: float = 5.0,
    ):
        super().__init__(identity, label, resend)
        self.stream_id = stream_id
        extra = ["--resend-option", self.resend.to_json()]
        if group_key_hex:
            extra.extend(["--group-key", group_key_hex])
        self.process = ExternalProcess(
            build_agent_argv(command, "subscriber", private_key, stream_id, extra),
            on_line=self._handle_line,
            name=f"{label}-subscriber-{identity[:10]}",
            startup_grace=startup_grace,
            stop_timeout=stop_timeout,
        )

    def start(self) -> None:
        self.process.start()

    def _handle_line(self, line: AgentLine) -> None:
        if line.kind == LineKind.RECEIVED and line.publisher_id and line.payload is not None:
            self._emit_received(line.publisher_id, canonicalize(line.payload), now_ms())
        elif line.kind == LineKind.DECRYPTION_FAILED:
            logger.error("%s could not decrypt a message: %s", self.describe(), line.payload)
            self._emit_failure(line.payload or "")

    def stop(self) -> None:
        self.process.stop()
