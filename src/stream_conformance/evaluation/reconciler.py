"""Reconciler - compares what was sent with what was received.

Per (publisher, subscriber) pair, with P sent and R received payloads:

- Live subscribers must see the sent sequence from its start. The first
  min(P, R) positions are compared in order; R < P is loss.
- Resend subscribers must see a contiguous tail of the sent sequence that
  starts at or before the first message their directive promised and
  reaches the end of it.
- In both cases receiving more than was sent is over-receipt. Up to the
  tolerance it is a warning; beyond it the pair is flagged as suspected
  duplication.

Run-level checks: publish count deviation from the bound (warning),
messages from unregistered publishers (warning), decryption failures
(failure), and nothing received at all while something was published
(failure). Subscribers that never started are reported on their own and
left out of the pair checks: a failed start fails the run, a start
cancelled because the run ended first is a warning.
"""

from __future__ import annotations

import bisect
import logging
from typing import Sequence

from ..core.ledger import LedgerEntry, MessageLedger, SubscriberRecord
from ..core.protocol import ResendDirective, ResendKind
from .metrics import RunMetrics
from .verdict import Finding, FindingKind, RunVerdict, Severity

logger = logging.getLogger(__name__)


class Reconciler:
    """Turns a closed ledger into a RunVerdict."""

    def __init__(
        self,
        ledger: MessageLedger,
        over_receipt_tolerance: int = 1,
        strict_over_receipt: bool = False,
    ):
        """Initialize the reconciler.

        Args:
            ledger: Ledger to verify; should be closed so snapshots are stable
            over_receipt_tolerance: Extra messages per pair reported as a plain
                warning
            strict_over_receipt: Fail the run on suspected duplication
        """
        self.ledger = ledger
        self.over_receipt_tolerance = over_receipt_tolerance
        self.strict_over_receipt = strict_over_receipt
        self._merged: list[int] | None = None

    def reconcile(self, topology: str = "", metrics: RunMetrics | None = None) -> RunVerdict:
        """Verify every pair in the ledger.

        Args:
            topology: Name recorded in the verdict
            metrics: Run metrics to attach; derived from the ledger if omitted

        Returns:
            RunVerdict with all findings
        """
        if not self.ledger.closed:
            logger.warning("Reconciling a ledger that is still open")

        self._merged = None

        verdict = RunVerdict(
            topology=topology,
            total_published=self.ledger.total_sent(),
            total_received=self.ledger.total_received(),
        )
        registered = set(self.ledger.registered_publishers())
        not_started = self._check_not_started(verdict)

        for publisher in self.ledger.received_publishers():
            if publisher not in registered:
                count = sum(
                    len(self.ledger.snapshot_received(publisher, sub))
                    for sub in self.ledger.subscribers_of(publisher)
                )
                if count:
                    verdict.findings.append(Finding(
                        kind=FindingKind.UNREGISTERED_PUBLISHER,
                        severity=Severity.WARNING,
                        message=f"Received {count} message(s) from unregistered publisher {publisher}",
                        publisher=publisher,
                    ))

        for publisher in self.ledger.publishers():
            if publisher not in registered:
                continue
            self._check_publish_count(publisher, verdict)
            for subscriber in self.ledger.subscribers_of(publisher):
                if subscriber in not_started:
                    continue
                verdict.messages_checked += self._check_pair(publisher, subscriber, verdict)

        self._check_failures(verdict)

        started = [s for s in self.ledger.subscribers() if s not in not_started]
        if verdict.total_published > 0 and verdict.total_received == 0 and started:
            verdict.findings.insert(0, Finding(
                kind=FindingKind.NO_DELIVERY,
                severity=Severity.FAILURE,
                message=(
                    f"No messages were received by any subscriber, "
                    f"{verdict.total_published} were published"
                ),
            ))

        verdict.metrics = metrics or RunMetrics(
            publishers=len(registered),
            subscribers=len(self.ledger.subscribers()),
            published=verdict.total_published,
            received=verdict.total_received,
            late_events=self.ledger.late_events,
        )
        for finding in verdict.findings:
            log = logger.error if finding.is_failure else logger.warning
            log("%s: %s", finding.kind.value, finding.message)
        return verdict

    def _check_not_started(self, verdict: RunVerdict) -> set[str]:
        """Report subscribers that never subscribed and return their identities."""
        not_started = set()
        for subscriber in self.ledger.subscribers():
            record = self.ledger.subscriber_record(subscriber)
            if record is None or record.not_started is None:
                continue
            not_started.add(subscriber)
            verdict.findings.append(Finding(
                kind=FindingKind.SUBSCRIBER_NOT_STARTED,
                severity=Severity.FAILURE if record.start_failed else Severity.WARNING,
                message=f"Subscriber {subscriber} never started: {record.not_started}",
                subscriber=subscriber,
            ))
        return not_started

    def _check_publish_count(self, publisher: str, verdict: RunVerdict) -> None:
        record = self.ledger.publisher_record(publisher)
        if record is None or record.expected_count is None:
            return
        count = len(self.ledger.snapshot_sent(publisher))
        if count != record.expected_count:
            verdict.findings.append(Finding(
                kind=FindingKind.PUBLISH_COUNT_DEVIATION,
                severity=Severity.WARNING,
                message=(
                    f"Publisher {publisher} published {count} messages, "
                    f"expected {record.expected_count}"
                ),
                publisher=publisher,
            ))

    def _check_pair(self, publisher: str, subscriber: str, verdict: RunVerdict) -> int:
        """Check one pair, append its findings and return the messages checked."""
        entries = self.ledger.snapshot_sent_entries(publisher)
        sent = tuple(e.payload for e in entries)
        received = self.ledger.snapshot_received(publisher, subscriber)
        record = self.ledger.subscriber_record(subscriber)
        resend = record.resend if record is not None else ResendDirective.live()

        if resend.is_live:
            return self._check_from(0, sent, received, publisher, subscriber, verdict)

        if not received:
            start = self._expected_start(resend, entries, record)
            if start < len(sent):
                verdict.findings.append(self._pair_finding(
                    FindingKind.MESSAGE_LOSS,
                    f"Subscriber {subscriber} received none of the {len(sent) - start} "
                    f"message(s) from publisher {publisher} it asked for with resend "
                    f"{resend.to_json()}",
                    publisher, subscriber, sent, received,
                    position=start + 1,
                    expected=sent[start],
                ))
            return 0

        try:
            first = sent.index(received[0])
        except ValueError:
            verdict.findings.append(self._pair_finding(
                FindingKind.UNKNOWN_PAYLOAD,
                f"Subscriber {subscriber} received a payload publisher {publisher} never sent",
                publisher, subscriber, sent, received,
                position=1,
                actual=received[0],
            ))
            return 0

        start = self._expected_start(resend, entries, record)
        if first > start:
            verdict.findings.append(self._pair_finding(
                FindingKind.MESSAGE_LOSS,
                f"Subscriber {subscriber} with resend {resend.to_json()} started at "
                f"message {first + 1} of publisher {publisher}, expected at or before {start + 1}",
                publisher, subscriber, sent, received,
                position=start + 1,
                expected=sent[start],
                actual=received[0],
            ))
            return 0
        return self._check_from(first, sent, received, publisher, subscriber, verdict)

    def _expected_start(
        self,
        resend: ResendDirective,
        entries: Sequence[LedgerEntry],
        record: SubscriberRecord | None,
    ) -> int:
        """Index into one publisher's messages where the resend must start.

        "Last K" counts the whole stream, so with several publishers the
        cut-off is found on the merged timestamps of all of them and then
        mapped back onto this publisher.
        """
        timestamps = [e.timestamp for e in entries]
        joined_at = record.joined_at if record is not None else None
        if resend.kind != ResendKind.LAST or joined_at is None:
            return resend.expected_start(timestamps, joined_at)

        merged = self._stream_timestamps()
        cut = resend.expected_start(merged, joined_at)
        if cut == 0:
            return 0
        threshold = merged[cut]
        # Ties at the cut-off can belong to either publisher
        ties = bisect.bisect_right(merged, threshold) - bisect.bisect_left(merged, threshold)
        if ties == 1:
            return bisect.bisect_left(timestamps, threshold)
        return bisect.bisect_right(timestamps, threshold)

    def _stream_timestamps(self) -> list[int]:
        if self._merged is None:
            self._merged = sorted(
                entry.timestamp
                for publisher in self.ledger.registered_publishers()
                for entry in self.ledger.snapshot_sent_entries(publisher)
            )
        return self._merged

    def _check_from(
        self,
        offset: int,
        sent: Sequence[str],
        received: Sequence[str],
        publisher: str,
        subscriber: str,
        verdict: RunVerdict,
    ) -> int:
        """Compare received with sent[offset:] position by position."""
        expected = sent[offset:]
        compared = min(len(expected), len(received))
        for i in range(compared):
            if expected[i] != received[i]:
                position = offset + i + 1
                verdict.findings.append(self._pair_finding(
                    FindingKind.POSITION_MISMATCH,
                    f"Subscriber {subscriber} got the wrong message at position {position} "
                    f"from publisher {publisher}",
                    publisher, subscriber, sent, received,
                    position=position,
                    expected=expected[i],
                    actual=received[i],
                ))
                return i

        if len(received) < len(expected):
            missing = len(expected) - len(received)
            verdict.findings.append(self._pair_finding(
                FindingKind.MESSAGE_LOSS,
                f"Subscriber {subscriber} received {len(received)} of {len(expected)} "
                f"message(s) from publisher {publisher} ({missing} lost)",
                publisher, subscriber, sent, received,
                position=offset + len(received) + 1,
                expected=expected[len(received)],
            ))
        elif len(received) > len(expected):
            extra = len(received) - len(expected)
            if extra <= self.over_receipt_tolerance:
                kind, severity = FindingKind.OVER_RECEIPT, Severity.WARNING
            else:
                kind = FindingKind.SUSPECTED_DUPLICATION
                severity = Severity.FAILURE if self.strict_over_receipt else Severity.WARNING
            verdict.findings.append(Finding(
                kind=kind,
                severity=severity,
                message=(
                    f"Subscriber {subscriber} received {extra} more message(s) than "
                    f"publisher {publisher} sent"
                ),
                publisher=publisher,
                subscriber=subscriber,
                position=len(sent) + 1,
                actual=received[len(expected)],
                sent=tuple(sent),
                received=tuple(received),
            ))
        return compared

    def _check_failures(self, verdict: RunVerdict) -> None:
        failures = self.ledger.failures()
        verdict.decryption_failures = len(failures)
        by_subscriber: dict[str, list[str]] = {}
        for failure in failures:
            by_subscriber.setdefault(failure.subscriber, []).append(failure.reason)
        for subscriber, reasons in by_subscriber.items():
            verdict.findings.append(Finding(
                kind=FindingKind.DECRYPTION_FAILURE,
                severity=Severity.FAILURE,
                message=(
                    f"Subscriber {subscriber} reported {len(reasons)} decryption "
                    f"failure(s), first: {reasons[0]}"
                ),
                subscriber=subscriber,
            ))

    @staticmethod
    def _pair_finding(
        kind: FindingKind,
        message: str,
        publisher: str,
        subscriber: str,
        sent: Sequence[str],
        received: Sequence[str],
        position: int | None = None,
        expected: str | None = None,
        actual: str | None = None,
    ) -> Finding:
        return Finding(
            kind=kind,
            severity=Severity.FAILURE,
            message=message,
            publisher=publisher,
            subscriber=subscriber,
            position=position,
            expected=expected,
            actual=actual,
            sent=tuple(sent),
            received=tuple(received),
        )
