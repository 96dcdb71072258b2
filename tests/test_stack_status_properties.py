"""
Property-based tests for stack status classification.

These tests verify that every raw CloudFormation status lands in the
category the reconciler dispatches on.
"""

import pytest
from hypothesis import given, strategies as st, settings

from stack_status import (
    NOT_EXISTS,
    StackStatus,
    UnknownStackStatusError,
    classify,
    is_rollback_eligible,
    is_terminal,
)


CLOUDFORMATION_STATUSES = {
    'CREATE_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'CREATE_FAILED': StackStatus.FAILED,
    'CREATE_COMPLETE': StackStatus.STABLE,
    'ROLLBACK_IN_PROGRESS': StackStatus.ROLLBACK_IN_PROGRESS,
    'ROLLBACK_FAILED': StackStatus.FAILED,
    'ROLLBACK_COMPLETE': StackStatus.FAILED,
    'DELETE_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'DELETE_FAILED': StackStatus.FAILED,
    'DELETE_COMPLETE': StackStatus.ABSENT,
    'UPDATE_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'UPDATE_COMPLETE_CLEANUP_IN_PROGRESS': StackStatus.STABLE,
    'UPDATE_COMPLETE': StackStatus.STABLE,
    'UPDATE_FAILED': StackStatus.UPDATE_FAILED,
    'UPDATE_ROLLBACK_IN_PROGRESS': StackStatus.ROLLBACK_IN_PROGRESS,
    'UPDATE_ROLLBACK_FAILED': StackStatus.ROLLBACK_FAILED,
    'UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'UPDATE_ROLLBACK_COMPLETE': StackStatus.STABLE,
    'REVIEW_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'IMPORT_IN_PROGRESS': StackStatus.IN_PROGRESS,
    'IMPORT_COMPLETE': StackStatus.STABLE,
    'IMPORT_ROLLBACK_IN_PROGRESS': StackStatus.ROLLBACK_IN_PROGRESS,
    'IMPORT_ROLLBACK_FAILED': StackStatus.ROLLBACK_FAILED,
    'IMPORT_ROLLBACK_COMPLETE': StackStatus.STABLE,
}


status_word = st.text(alphabet='ABCDEFGHIJKLMNOPQRSTUVWXYZ_', min_size=0, max_size=12)


@pytest.mark.parametrize('raw_status,expected', sorted(CLOUDFORMATION_STATUSES.items()))
def test_every_cloudformation_status_is_classified(raw_status, expected):
    assert classify(raw_status) is expected


@pytest.mark.parametrize('raw_status', [None, '', '   ', NOT_EXISTS])
def test_missing_stack_is_absent(raw_status):
    assert classify(raw_status) is StackStatus.ABSENT


# Feature: stack-reconciler, Property: rollback-in-progress wins over every other marker
@settings(max_examples=100)
@given(prefix=status_word, suffix=status_word)
def test_rollback_in_progress_substring_always_classifies_as_rollback_in_progress(prefix, suffix):
    """
    Any status containing ROLLBACK_IN_PROGRESS is a rollback in progress,
    whatever else it contains.
    """
    assert classify(f"{prefix}ROLLBACK_IN_PROGRESS{suffix}") is StackStatus.ROLLBACK_IN_PROGRESS


# Feature: stack-reconciler, Property: plain completion is stable
@settings(max_examples=100)
@given(prefix=st.sampled_from(['CREATE', 'UPDATE', 'IMPORT', 'REVIEW', 'CUSTOM']))
def test_complete_without_rollback_or_delete_is_stable(prefix):
    assert classify(f"{prefix}_COMPLETE") is StackStatus.STABLE


# Feature: stack-reconciler, Property: classification never guesses
@settings(max_examples=100)
@given(raw_status=st.text(alphabet='ABCDEFGHIJKLMNOPQRSTUVWXYZ_', min_size=1, max_size=30))
def test_status_without_known_marker_raises(raw_status):
    """
    A non-empty status with none of the known markers is rejected rather than
    mapped to a default category.
    """
    markers = ('COMPLETE', 'IN_PROGRESS', 'FAILED')
    if raw_status == NOT_EXISTS or any(marker in raw_status for marker in markers):
        assert isinstance(classify(raw_status), StackStatus)
    else:
        with pytest.raises(UnknownStackStatusError):
            classify(raw_status)


# Feature: stack-reconciler, Property: classification is total over known statuses
@settings(max_examples=100)
@given(raw_status=st.sampled_from(sorted(CLOUDFORMATION_STATUSES)))
def test_classification_is_deterministic(raw_status):
    assert classify(raw_status) is classify(raw_status)
    assert classify(f"  {raw_status}  ") is classify(raw_status)


def test_rollback_eligible_statuses():
    eligible = {raw for raw in CLOUDFORMATION_STATUSES if is_rollback_eligible(raw)}
    assert eligible == {
        'CREATE_FAILED',
        'ROLLBACK_FAILED',
        'ROLLBACK_COMPLETE',
        'DELETE_FAILED',
        'UPDATE_FAILED',
        'UPDATE_ROLLBACK_FAILED',
        'IMPORT_ROLLBACK_FAILED',
    }


def test_unknown_status_is_not_rollback_eligible():
    assert is_rollback_eligible('SOMETHING_NEW') is False
    assert is_rollback_eligible(None) is False


@pytest.mark.parametrize('raw_status,terminal', [
    ('CREATE_COMPLETE', True),
    ('UPDATE_ROLLBACK_FAILED', True),
    ('CREATE_IN_PROGRESS', False),
    ('UPDATE_COMPLETE_CLEANUP_IN_PROGRESS', False),
    ('ROLLBACK_IN_PROGRESS', False),
    (None, True),
])
def test_is_terminal(raw_status, terminal):
    assert is_terminal(raw_status) is terminal
