"""State machine constants and transition logic for runs and steps.

Progress is reconstructed purely from persisted Step rows, so resuming an
interrupted run only needs the ordered step statuses.
"""

from typing import Dict, FrozenSet, Optional, Sequence

# Run states
RUN_STATES = {
    "pending": "Created with the plan version lock held, not started yet",
    "running": "Executing steps in order",
    "succeeded": "All steps succeeded or were skipped",
    "failed": "A step failed permanently or exhausted its retries",
    "cancelled": "Cancelled by the user",
}

# Step states
STEP_STATES = {
    "pending": "Not started",
    "running": "Attempt in progress",
    "succeeded": "Outputs published and recorded",
    "failed": "Final failure, run halted",
    "skipped": "Outputs reused from an earlier identical step",
}

TERMINAL_RUN_STATES: FrozenSet[str] = frozenset({"succeeded", "failed", "cancelled"})
ACTIVE_RUN_STATES: FrozenSet[str] = frozenset({"pending", "running"})
DONE_STEP_STATES: FrozenSet[str] = frozenset({"succeeded", "skipped"})

RUN_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"running", "cancelled"}),
    "running": frozenset({"succeeded", "failed", "cancelled"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

# running -> pending only happens when a crashed attempt is recovered on resume;
# pending -> failed when a step is refused before its adapter is called
STEP_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"running", "skipped", "failed"}),
    "running": frozenset({"succeeded", "failed", "pending"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "skipped": frozenset(),
}


def is_terminal(status: str) -> bool:
    return status in TERMINAL_RUN_STATES


def can_transition_run(current: str, target: str) -> bool:
    return target in RUN_TRANSITIONS.get(current, frozenset())


def can_transition_step(current: str, target: str) -> bool:
    return target in STEP_TRANSITIONS.get(current, frozenset())


def first_pending_index(statuses: Sequence[str]) -> Optional[int]:
    """Index of the first step that is neither succeeded nor skipped.

    Returns None when every step is done.

    Examples:
        >>> first_pending_index(["succeeded", "skipped", "pending", "pending"])
        2
        >>> first_pending_index(["succeeded", "succeeded"]) is None
        True
    """
    for i, status in enumerate(statuses):
        if status not in DONE_STEP_STATES:
            return i
    return None


def is_consistent(statuses: Sequence[str], position: int) -> bool:
    """True if everything before position is done and nothing after it started."""
    before = all(s in DONE_STEP_STATES for s in statuses[:position])
    after = all(s == "pending" for s in statuses[position + 1:])
    return before and after and statuses[position] in ("pending", "running")
