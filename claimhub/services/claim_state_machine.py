"""
Claim and Forwarding State Machines.

Provides:
- Valid status transitions for claims and payer forwards
- Transition validation
- Forward status to claim status mapping
- Payer status normalization

Forward State Diagram:
    QUEUED -> SENDING | FAILED_RETRY | FAILED | ERROR
    SENDING -> SENT | ACKNOWLEDGED | COMPLETED | REJECTED | FAILED_RETRY | FAILED | ERROR
    SENDING -> SENDING                      (stale attempt reclaimed by the sweep)
    SENT -> ACKNOWLEDGED | COMPLETED | REJECTED | FAILED_RETRY | FAILED | ERROR
    ACKNOWLEDGED -> COMPLETED | REJECTED | FAILED_RETRY | FAILED | ERROR
    FAILED_RETRY -> SENDING | FAILED_RETRY | FAILED | ERROR

Claim State Diagram:
    NEW -> PROCESSING | CANCELED
    PROCESSING -> COMPLETE | SIMULATED | REJECTED | ERROR | SUBMITTED | CANCELED
    SUBMITTED -> PENDING | COMPLETE | REJECTED | FAILED | ERROR
    PENDING -> SUBMITTED | COMPLETE | REJECTED | FAILED | ERROR
    SIMULATED | REJECTED | FAILED | ERROR | CANCELED -> PROCESSING      (resubmission)
    ERROR -> CANCELED
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

from claimhub.core.enums import ClaimStatus, ForwardStatus

logger = logging.getLogger(__name__)

S = TypeVar("S", ClaimStatus, ForwardStatus)


class TransitionEvent(str, Enum):
    """Events that trigger state transitions."""

    # Claim level
    START_PROCESSING = "start_processing"
    ADJUDICATE = "adjudicate"
    SIMULATE = "simulate"
    REJECT = "reject"
    FORWARD = "forward"
    PAYER_UPDATE = "payer_update"
    FAIL = "fail"
    ERROR = "error"
    CANCEL = "cancel"
    RESUBMIT = "resubmit"

    # Forward level
    DISPATCH = "dispatch"
    RECLAIM = "reclaim"
    SEND_SUCCEEDED = "send_succeeded"
    PAYER_ACKNOWLEDGED = "payer_acknowledged"
    PAYER_COMPLETED = "payer_completed"
    PAYER_REJECTED = "payer_rejected"
    SCHEDULE_RETRY = "schedule_retry"
    RETRIES_EXHAUSTED = "retries_exhausted"
    CONFIGURATION_ERROR = "configuration_error"


@dataclass(frozen=True)
class Transition(Generic[S]):
    """Represents a valid state transition."""

    from_status: S
    to_status: S
    event: TransitionEvent


@dataclass
class TransitionResult(Generic[S]):
    """Result of a transition check."""

    success: bool
    from_status: S
    to_status: Optional[S] = None
    error: Optional[str] = None
    transition: Optional[Transition] = None


class InvalidTransitionError(Exception):
    """Raised when a write would violate the transition table."""

    def __init__(self, from_status: Enum, to_status: Enum):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


# =============================================================================
# Valid Transitions Definition
# =============================================================================


def _fan_out(
    sources: tuple, targets: tuple, event: TransitionEvent
) -> list[Transition]:
    return [Transition(src, dst, event) for src in sources for dst in targets]


_IN_FLIGHT = (ForwardStatus.SENDING, ForwardStatus.SENT, ForwardStatus.ACKNOWLEDGED)

FORWARD_TRANSITIONS: list[Transition[ForwardStatus]] = [
    # Dispatch
    Transition(ForwardStatus.QUEUED, ForwardStatus.SENDING, TransitionEvent.DISPATCH),
    Transition(ForwardStatus.FAILED_RETRY, ForwardStatus.SENDING, TransitionEvent.DISPATCH),
    Transition(ForwardStatus.SENDING, ForwardStatus.SENDING, TransitionEvent.RECLAIM),
    # Payer accepted the submission
    Transition(ForwardStatus.SENDING, ForwardStatus.SENT, TransitionEvent.SEND_SUCCEEDED),
    *_fan_out(
        (ForwardStatus.SENDING, ForwardStatus.SENT),
        (ForwardStatus.ACKNOWLEDGED,),
        TransitionEvent.PAYER_ACKNOWLEDGED,
    ),
    *_fan_out(_IN_FLIGHT, (ForwardStatus.COMPLETED,), TransitionEvent.PAYER_COMPLETED),
    *_fan_out(_IN_FLIGHT, (ForwardStatus.REJECTED,), TransitionEvent.PAYER_REJECTED),
    # Failure handling
    *_fan_out(_IN_FLIGHT, (ForwardStatus.FAILED_RETRY,), TransitionEvent.SCHEDULE_RETRY),
    *_fan_out(_IN_FLIGHT, (ForwardStatus.FAILED,), TransitionEvent.RETRIES_EXHAUSTED),
    # Attempt failed before the payer was called
    *_fan_out(
        (ForwardStatus.QUEUED, ForwardStatus.FAILED_RETRY),
        (ForwardStatus.FAILED_RETRY,),
        TransitionEvent.SCHEDULE_RETRY,
    ),
    *_fan_out(
        (ForwardStatus.QUEUED, ForwardStatus.FAILED_RETRY),
        (ForwardStatus.FAILED,),
        TransitionEvent.RETRIES_EXHAUSTED,
    ),
    *_fan_out(
        (ForwardStatus.QUEUED, ForwardStatus.FAILED_RETRY) + _IN_FLIGHT,
        (ForwardStatus.ERROR,),
        TransitionEvent.CONFIGURATION_ERROR,
    ),
]

_RESTARTABLE = (
    ClaimStatus.SIMULATED,
    ClaimStatus.REJECTED,
    ClaimStatus.FAILED,
    ClaimStatus.ERROR,
    ClaimStatus.CANCELED,
)

CLAIM_TRANSITIONS: list[Transition[ClaimStatus]] = [
    # From NEW
    Transition(ClaimStatus.NEW, ClaimStatus.PROCESSING, TransitionEvent.START_PROCESSING),
    Transition(ClaimStatus.NEW, ClaimStatus.CANCELED, TransitionEvent.CANCEL),
    # From PROCESSING
    Transition(ClaimStatus.PROCESSING, ClaimStatus.COMPLETE, TransitionEvent.ADJUDICATE),
    Transition(ClaimStatus.PROCESSING, ClaimStatus.SIMULATED, TransitionEvent.SIMULATE),
    Transition(ClaimStatus.PROCESSING, ClaimStatus.REJECTED, TransitionEvent.REJECT),
    Transition(ClaimStatus.PROCESSING, ClaimStatus.ERROR, TransitionEvent.ERROR),
    Transition(ClaimStatus.PROCESSING, ClaimStatus.SUBMITTED, TransitionEvent.FORWARD),
    Transition(ClaimStatus.PROCESSING, ClaimStatus.CANCELED, TransitionEvent.CANCEL),
    # Payer-driven updates
    *_fan_out(
        (ClaimStatus.SUBMITTED,),
        (ClaimStatus.PENDING, ClaimStatus.COMPLETE, ClaimStatus.REJECTED),
        TransitionEvent.PAYER_UPDATE,
    ),
    *_fan_out(
        (ClaimStatus.PENDING,),
        (ClaimStatus.SUBMITTED, ClaimStatus.COMPLETE, ClaimStatus.REJECTED),
        TransitionEvent.PAYER_UPDATE,
    ),
    *_fan_out(
        (ClaimStatus.SUBMITTED, ClaimStatus.PENDING), (ClaimStatus.FAILED,), TransitionEvent.FAIL
    ),
    *_fan_out(
        (ClaimStatus.SUBMITTED, ClaimStatus.PENDING), (ClaimStatus.ERROR,), TransitionEvent.ERROR
    ),
    # Restart and cancel
    *_fan_out(_RESTARTABLE, (ClaimStatus.PROCESSING,), TransitionEvent.RESUBMIT),
    Transition(ClaimStatus.ERROR, ClaimStatus.CANCELED, TransitionEvent.CANCEL),
]


class StateMachine(Generic[S]):
    """
    State machine over one status enum.

    Forward writes in the gateway are checked against the forward table.
    Claim writes that finish internal adjudication, cancel or resubmit are
    checked against the claim table. The rules engine and the gateway only
    take PROCESSING claims; claim statuses driven by a forward follow from
    determine_claim_status.
    """

    def __init__(self, transitions: list[Transition], terminal: frozenset):
        self._terminal = terminal
        self._from_status_map: dict[S, list[Transition]] = {}
        for transition in transitions:
            self._from_status_map.setdefault(transition.from_status, []).append(transition)

    def get_valid_transitions(self, status: S) -> list[Transition]:
        """Get all valid transitions from a given status."""
        return self._from_status_map.get(status, [])

    def get_next_statuses(self, status: S) -> list[S]:
        """Get all possible next statuses from current status."""
        return [t.to_status for t in self.get_valid_transitions(status)]

    def can_transition(self, from_status: S, to_status: S) -> bool:
        """Check if transition from one status to another is valid."""
        return any(t.to_status == to_status for t in self.get_valid_transitions(from_status))

    def validate_transition(self, from_status: S, to_status: S) -> TransitionResult:
        for transition in self.get_valid_transitions(from_status):
            if transition.to_status == to_status:
                return TransitionResult(
                    success=True,
                    from_status=from_status,
                    to_status=to_status,
                    transition=transition,
                )
        return TransitionResult(
            success=False,
            from_status=from_status,
            error=f"Invalid transition: {from_status.value} -> {to_status.value}",
        )

    def ensure_transition(self, from_status: S, to_status: S) -> Transition:
        """Return the transition or raise InvalidTransitionError."""
        result = self.validate_transition(from_status, to_status)
        if not result.success:
            logger.warning(result.error)
            raise InvalidTransitionError(from_status, to_status)
        return result.transition  # type: ignore[return-value]

    def is_terminal(self, status: S) -> bool:
        return status in self._terminal


# =============================================================================
# Status Helpers
# =============================================================================


TERMINAL_FORWARD_STATUSES = frozenset(
    {
        ForwardStatus.COMPLETED,
        ForwardStatus.REJECTED,
        ForwardStatus.FAILED,
        ForwardStatus.ERROR,
    }
)

# Forward statuses the gateway may (re)dispatch
DISPATCHABLE_FORWARD_STATUSES = frozenset({ForwardStatus.QUEUED, ForwardStatus.FAILED_RETRY})

# Forward statuses awaiting a payer status check
AWAITING_PAYER_STATUSES = frozenset({ForwardStatus.SENT, ForwardStatus.ACKNOWLEDGED})

TERMINAL_CLAIM_STATUSES = frozenset(
    {
        ClaimStatus.COMPLETE,
        ClaimStatus.SIMULATED,
        ClaimStatus.REJECTED,
        ClaimStatus.FAILED,
        ClaimStatus.ERROR,
        ClaimStatus.CANCELED,
    }
)

forward_state_machine: StateMachine[ForwardStatus] = StateMachine(
    FORWARD_TRANSITIONS, TERMINAL_FORWARD_STATUSES
)
claim_state_machine: StateMachine[ClaimStatus] = StateMachine(
    CLAIM_TRANSITIONS, TERMINAL_CLAIM_STATUSES
)

_FORWARD_TO_CLAIM: dict[ForwardStatus, ClaimStatus] = {
    ForwardStatus.QUEUED: ClaimStatus.SUBMITTED,
    ForwardStatus.SENDING: ClaimStatus.SUBMITTED,
    ForwardStatus.FAILED_RETRY: ClaimStatus.SUBMITTED,
    ForwardStatus.SENT: ClaimStatus.PENDING,
    ForwardStatus.ACKNOWLEDGED: ClaimStatus.PENDING,
    ForwardStatus.COMPLETED: ClaimStatus.COMPLETE,
    ForwardStatus.REJECTED: ClaimStatus.REJECTED,
    ForwardStatus.FAILED: ClaimStatus.FAILED,
    ForwardStatus.ERROR: ClaimStatus.ERROR,
}


def determine_claim_status(forward_status: ForwardStatus) -> ClaimStatus:
    """Map a forward status to the claim-level status it implies."""
    return _FORWARD_TO_CLAIM[forward_status]


def is_terminal_forward_status(status: ForwardStatus) -> bool:
    return status in TERMINAL_FORWARD_STATUSES


def is_active_forward_status(status: ForwardStatus) -> bool:
    """Non-terminal forwards block a second submission of the same claim."""
    return status not in TERMINAL_FORWARD_STATUSES


_PAYER_STATUS_ALIASES: dict[str, ForwardStatus] = {
    "SENT": ForwardStatus.SENT,
    "SUBMITTED": ForwardStatus.SENT,
    "RECEIVED": ForwardStatus.SENT,
    "ACKNOWLEDGED": ForwardStatus.ACKNOWLEDGED,
    "ACCEPTED": ForwardStatus.ACKNOWLEDGED,
    "COMPLETED": ForwardStatus.COMPLETED,
    "COMPLETE": ForwardStatus.COMPLETED,
    "PAID": ForwardStatus.COMPLETED,
    "APPROVED": ForwardStatus.COMPLETED,
    "REJECTED": ForwardStatus.REJECTED,
    "DENIED": ForwardStatus.REJECTED,
    "FAILED": ForwardStatus.FAILED,
}


def parse_payer_status(raw: Optional[str]) -> Optional[ForwardStatus]:
    """
    Normalize a payer-reported status.

    Returns None for anything that means "still in progress" or is unknown;
    callers keep polling in that case.
    """
    if not raw:
        return None
    return _PAYER_STATUS_ALIASES.get(str(raw).strip().upper().replace("-", "_"))
