"""
Stack status classification for the stack reconciler.

CloudFormation reports a large and growing set of raw status strings
(CREATE_COMPLETE, UPDATE_ROLLBACK_FAILED, ...). The reconciler only needs to
know which category a status falls into to pick the next lifecycle action,
so every string match lives in this module.
"""

from enum import Enum
from typing import Optional


NOT_EXISTS = "NOT_EXISTS"


class StackStatus(Enum):
    """Status categories used for lifecycle dispatch."""
    ABSENT = "Absent"
    STABLE = "Stable"
    IN_PROGRESS = "InProgress"
    ROLLBACK_IN_PROGRESS = "RollbackInProgress"
    FAILED = "Failed"
    UPDATE_FAILED = "UpdateFailed"
    ROLLBACK_FAILED = "RollbackFailed"


class UnknownStackStatusError(ValueError):
    """Raised when a raw status string matches no known category."""
    pass


ROLLBACK_ELIGIBLE = frozenset({
    StackStatus.FAILED,
    StackStatus.UPDATE_FAILED,
    StackStatus.ROLLBACK_FAILED,
})


def classify(raw_status: Optional[str]) -> StackStatus:
    """
    Map a raw provider status string to a StackStatus category.

    Matching is by substring so compound states (for example the
    *_CLEANUP_IN_PROGRESS and IMPORT_* variants) land in the right category.

    Args:
        raw_status: Status reported by the provider, or None / NOT_EXISTS
            when no stack exists under the name

    Returns:
        The StackStatus category

    Raises:
        UnknownStackStatusError: If the status matches no category
    """
    if raw_status is None:
        return StackStatus.ABSENT

    status = raw_status.strip()
    if not status or status == NOT_EXISTS:
        return StackStatus.ABSENT

    if "ROLLBACK_IN_PROGRESS" in status:
        return StackStatus.ROLLBACK_IN_PROGRESS

    if "COMPLETE" in status and "ROLLBACK" not in status and "DELETE" not in status:
        return StackStatus.STABLE

    if "IN_PROGRESS" in status:
        return StackStatus.IN_PROGRESS

    if "FAILED" in status:
        if "UPDATE_ROLLBACK_FAILED" in status or "IMPORT_ROLLBACK_FAILED" in status:
            return StackStatus.ROLLBACK_FAILED
        if "UPDATE_FAILED" in status:
            return StackStatus.UPDATE_FAILED
        # CREATE_FAILED, create-path ROLLBACK_FAILED and DELETE_FAILED can
        # only be resolved by deleting the stack
        return StackStatus.FAILED

    if "COMPLETE" in status:
        if "DELETE_COMPLETE" in status:
            return StackStatus.ABSENT
        if "UPDATE_ROLLBACK_COMPLETE" in status or "IMPORT_ROLLBACK_COMPLETE" in status:
            return StackStatus.STABLE
        # ROLLBACK_COMPLETE: the initial create was rolled back
        return StackStatus.FAILED

    raise UnknownStackStatusError(f"Unrecognized stack status: {raw_status}")


def is_rollback_eligible(raw_status: Optional[str]) -> bool:
    """Return True if the stack is in a failed state the rollback pass can act on."""
    try:
        return classify(raw_status) in ROLLBACK_ELIGIBLE
    except UnknownStackStatusError:
        return False


def is_terminal(raw_status: Optional[str]) -> bool:
    """Return True if no operation is currently executing on the stack."""
    if raw_status is None:
        return True
    return "IN_PROGRESS" not in raw_status
