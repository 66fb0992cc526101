"""
Convergence polling.

Polls an external system until an observed state satisfies a predicate,
a fatal state is seen, or the attempt/wall-clock budget runs out. Each
observation is classified as one of four outcomes so that a service that
is still starting (unreachable), one that is up but not ready yet, and one
that can never become ready are handled differently.

The poller is single-threaded and blocking: one probe in flight at a time,
sleeping ``interval`` seconds between attempts.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Tuple

from .utils import CmdError

Snapshot = Mapping[str, Any]
Probe = Callable[[], Snapshot]
Check = Callable[[Snapshot], bool]


class Outcome(str, Enum):
    UNREACHABLE = "unreachable"
    UNREADY = "reachable-but-unready"
    READY = "ready"
    FATAL = "fatal"


class Status(str, Enum):
    CONVERGED = "converged"
    TIMED_OUT = "timed-out"
    FATAL = "fatal"


class TransientUnreachable(CmdError):
    """Raised by a probe when the target cannot be reached right now."""


class PredicateUnmet(CmdError):
    """Target reachable but its state does not satisfy the predicate yet."""


class ConvergenceFailed(CmdError):
    def __init__(self, message: str, result: "ConvergenceResult") -> None:
        super().__init__(message)
        self.result = result


class FatalCondition(ConvergenceFailed):
    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self.result.snapshot


class BudgetExhausted(ConvergenceFailed):
    pass


@dataclass(frozen=True)
class ObservationAttempt:
    sequence_number: int
    timestamp: float
    outcome: Outcome
    raw_state: Optional[Snapshot] = None
    detail: str = ""

    @property
    def when(self) -> str:
        return (
            datetime.fromtimestamp(self.timestamp, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
        )


@dataclass(frozen=True)
class ConvergenceResult:
    status: Status
    attempts: Tuple[ObservationAttempt, ...]
    elapsed: float
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.status is Status.CONVERGED

    @property
    def last_attempt(self) -> Optional[ObservationAttempt]:
        return self.attempts[-1] if self.attempts else None

    @property
    def snapshot(self) -> Optional[Snapshot]:
        """Most recent state the target actually returned."""
        for attempt in reversed(self.attempts):
            if attempt.raw_state is not None:
                return attempt.raw_state
        return None

    def describe(self, limit: int = 10) -> str:
        head = f"status={self.status.value} attempts={len(self.attempts)} elapsed={self.elapsed:.1f}s"
        if self.cancelled:
            head += " (cancelled)"
        lines = [head]
        shown = self.attempts[-limit:] if limit else self.attempts
        if len(shown) < len(self.attempts):
            lines.append(f"  ... {len(self.attempts) - len(shown)} earlier attempt(s) omitted")
        for a in shown:
            extra = f" ({a.detail})" if a.detail else ""
            lines.append(f"  #{a.sequence_number} {a.when} {a.outcome.value}{extra}")
        return "\n".join(lines)

    def raise_for_status(self, what: str = "target") -> "ConvergenceResult":
        if self.status is Status.FATAL:
            raise FatalCondition(
                f"{what} reported an unrecoverable state: {dict(self.snapshot or {})}\n"
                + self.describe(),
                self,
            )
        if self.status is Status.TIMED_OUT:
            reason = "polling was interrupted" if self.cancelled else "budget exhausted"
            raise BudgetExhausted(
                f"{what} did not converge ({reason})\n" + self.describe(), self
            )
        return self


@dataclass
class ConvergencePoller:
    """Blocking poller; ``clock`` and ``sleep`` are swappable for tests."""

    clock: Callable[[], float] = time.time
    sleep: Callable[[float], None] = time.sleep
    progress: Optional[Callable[[ObservationAttempt], None]] = None

    def poll(
        self,
        probe: Probe,
        predicate: Check,
        max_attempts: int,
        interval: float,
        fatal_check: Optional[Check] = None,
        deadline: Optional[float] = None,
    ) -> ConvergenceResult:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        if deadline is not None and deadline < 0:
            raise ValueError(f"deadline must be >= 0, got {deadline}")

        attempts: list[ObservationAttempt] = []
        start = self.clock()

        def finish(status: Status, cancelled: bool = False) -> ConvergenceResult:
            return ConvergenceResult(
                status=status,
                attempts=tuple(attempts),
                elapsed=max(0.0, self.clock() - start),
                cancelled=cancelled,
            )

        def record(outcome: Outcome, state: Optional[Snapshot], detail: str = "") -> None:
            attempt = ObservationAttempt(
                sequence_number=len(attempts),
                timestamp=self.clock(),
                outcome=outcome,
                raw_state=state,
                detail=detail,
            )
            attempts.append(attempt)
            if self.progress is not None:
                self.progress(attempt)

        while len(attempts) < max_attempts:
            if deadline is not None and attempts and self.clock() - start >= deadline:
                break
            try:
                try:
                    state = probe()
                except TransientUnreachable as e:
                    record(Outcome.UNREACHABLE, None, str(e))
                except PredicateUnmet as e:
                    record(Outcome.UNREADY, None, str(e))
                else:
                    if fatal_check is not None and fatal_check(state):
                        record(Outcome.FATAL, state)
                        return finish(Status.FATAL)
                    if predicate(state):
                        record(Outcome.READY, state)
                        return finish(Status.CONVERGED)
                    record(Outcome.UNREADY, state)

                if len(attempts) >= max_attempts:
                    break
                pause = interval
                if deadline is not None:
                    pause = min(pause, max(0.0, deadline - (self.clock() - start)))
                if pause > 0:
                    self.sleep(pause)
            except KeyboardInterrupt:
                if not attempts:
                    record(Outcome.UNREACHABLE, None, "interrupted")
                return finish(Status.TIMED_OUT, cancelled=True)

        return finish(Status.TIMED_OUT)


def poll(
    probe: Probe,
    predicate: Check,
    max_attempts: int,
    interval: float,
    fatal_check: Optional[Check] = None,
    deadline: Optional[float] = None,
    progress: Optional[Callable[[ObservationAttempt], None]] = None,
) -> ConvergenceResult:
    return ConvergencePoller(progress=progress).poll(
        probe,
        predicate,
        max_attempts=max_attempts,
        interval=interval,
        fatal_check=fatal_check,
        deadline=deadline,
    )


def print_progress(attempt: ObservationAttempt) -> None:
    """Progress line per attempt, in the console style used by the CLI."""
    extra = f" ({attempt.detail})" if attempt.detail else ""
    print(f"  attempt {attempt.sequence_number + 1}: {attempt.outcome.value}{extra}", flush=True)
