"""
Approval session state machine.

States: main -> (approving-some ->) processing -> complete. Every transition
is a pure function from one `ApprovalSession` to the next; the async driver
lives in `approval_controller`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Sequence

from .formatting import format_elapsed, pluralize
from .models.operation import Operation
from .models.status import OperationStatus


class ApprovalStateError(RuntimeError):
    pass


class ApprovalState(StrEnum):
    MAIN = "main"
    APPROVING_SOME = "approving-some"
    PROCESSING = "processing"
    COMPLETE = "complete"


class ApprovalChoice(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    APPROVE_ALL = "approve_all"
    REJECT_ALL = "reject_all"
    APPROVE_SOME = "approve_some"


class Decision(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"


class BatchKind(StrEnum):
    EXECUTE = "execute"
    REJECT = "reject"
    MIXED = "mixed"


@dataclass(frozen=True, slots=True)
class CompletionResult:
    success: int = 0
    failed: int = 0
    rejected: int = 0

    @property
    def has_errors(self) -> bool:
        return self.failed > 0

    def describe(self) -> str:
        parts: list[str] = []
        if self.success > 0:
            parts.append(f"{self.success} completed")
        if self.failed > 0:
            parts.append(f"{self.failed} failed")
        if self.rejected > 0:
            parts.append(f"{self.rejected} rejected")
        mark = "✗" if self.has_errors else "✓"
        return f"{mark} {', '.join(parts)}" if parts else mark


@dataclass(frozen=True, slots=True)
class ApprovalSession:
    state: ApprovalState
    indices: tuple[int, ...]
    cursor: int = 0
    decisions: dict[int, Decision] = field(default_factory=dict)
    batch_kind: BatchKind | None = None
    result: CompletionResult | None = None

    @property
    def single(self) -> bool:
        return len(self.indices) == 1

    @property
    def current_index(self) -> int | None:
        """Operation index under the cursor while approving one at a time."""

        if self.state is not ApprovalState.APPROVING_SOME:
            return None
        return self.indices[self.cursor]

    def options(self) -> tuple[ApprovalChoice, ...]:
        if self.state is ApprovalState.MAIN:
            if self.single:
                return (ApprovalChoice.APPROVE, ApprovalChoice.REJECT)
            return (ApprovalChoice.APPROVE_ALL, ApprovalChoice.REJECT_ALL, ApprovalChoice.APPROVE_SOME)
        if self.state is ApprovalState.APPROVING_SOME:
            return (ApprovalChoice.APPROVE, ApprovalChoice.REJECT)
        return ()

    def batch(self) -> list[tuple[int, Decision]]:
        """Final decisions in operation-list order; only meaningful once processing."""

        if self.state not in (ApprovalState.PROCESSING, ApprovalState.COMPLETE):
            raise ApprovalStateError(f"No decided batch in state {self.state.value}.")
        return [(i, self.decisions[i]) for i in self.indices]


def pending_indices(operations: Sequence[Operation]) -> tuple[int, ...]:
    return tuple(i for i, op in enumerate(operations) if op.status is OperationStatus.ANALYZED)


def start_session(operations: Sequence[Operation]) -> ApprovalSession | None:
    """Open a session over every `analyzed` operation, or None when there is nothing to decide."""

    indices = pending_indices(operations)
    if not indices:
        return None
    return ApprovalSession(state=ApprovalState.MAIN, indices=indices)


def choose(session: ApprovalSession, choice: ApprovalChoice | str) -> ApprovalSession:
    choice = ApprovalChoice(choice)
    if choice not in session.options():
        allowed = ", ".join(c.value for c in session.options()) or "∅"
        raise ApprovalStateError(
            f"Illegal approval choice in state {session.state.value}: {choice.value} (allowed: {allowed})"
        )

    if session.state is ApprovalState.MAIN:
        if choice is ApprovalChoice.APPROVE_SOME:
            return replace(session, state=ApprovalState.APPROVING_SOME, cursor=0, decisions={})
        if choice in (ApprovalChoice.APPROVE, ApprovalChoice.APPROVE_ALL):
            decision, kind = Decision.APPROVE, BatchKind.EXECUTE
        else:
            decision, kind = Decision.REJECT, BatchKind.REJECT
        return replace(
            session,
            state=ApprovalState.PROCESSING,
            decisions={i: decision for i in session.indices},
            batch_kind=kind,
        )

    # approving-some: one decision per operation, in order.
    decisions = dict(session.decisions)
    decisions[session.indices[session.cursor]] = (
        Decision.APPROVE if choice is ApprovalChoice.APPROVE else Decision.REJECT
    )
    if session.cursor + 1 < len(session.indices):
        return replace(session, cursor=session.cursor + 1, decisions=decisions)
    return replace(session, state=ApprovalState.PROCESSING, decisions=decisions, batch_kind=BatchKind.MIXED)


def finish(session: ApprovalSession, result: CompletionResult) -> ApprovalSession:
    if session.state is not ApprovalState.PROCESSING:
        raise ApprovalStateError(f"Cannot complete approval session from state {session.state.value}.")
    return replace(session, state=ApprovalState.COMPLETE, result=result)


def summarize_batch(
    kind: BatchKind,
    result: CompletionResult,
    *,
    elapsed_ms: float,
    single_type: str | None = None,
) -> str:
    """Summary line appended to the message after a batch (without the `__` markers)."""

    if kind is BatchKind.REJECT:
        return "Operation rejected" if result.rejected == 1 else f"{pluralize(result.rejected, 'operation')} rejected"
    if kind is BatchKind.EXECUTE:
        executed = result.success + result.failed
        if executed == 1 and single_type is not None:
            if result.failed:
                return f"Operation {single_type} failed after {format_elapsed(elapsed_ms)}"
            return f"Operation {single_type} executed in {format_elapsed(elapsed_ms)}"
        return f"{pluralize(executed, 'operation')} executed in {format_elapsed(elapsed_ms)}"

    parts: list[str] = []
    if result.success > 0:
        parts.append(f"{result.success} executed")
    if result.failed > 0:
        parts.append(f"{result.failed} failed")
    if result.rejected > 0:
        parts.append(f"{result.rejected} rejected")
    return f"{', '.join(parts)} in {format_elapsed(elapsed_ms)}"
