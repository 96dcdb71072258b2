"""
Tests for the rollback stage.
"""

import pytest

from config_parser import parse_config
from rollback_stage import RollbackError, RollbackStage, select_stack_names
from stack_provider import ProviderUnreachableError
from stack_reconciler import FailureReason, OutcomeKind, ReconcileOptions


@pytest.fixture
def topology(topology_path):
    return parse_config(str(topology_path))


def test_select_stack_names(topology):
    assert select_stack_names(topology, stack='iam') == ['demo-test-iam']
    assert select_stack_names(topology, stack='demo-test-iam') == ['demo-test-iam']
    assert select_stack_names(topology, stage='1') == ['demo-test-kms', 'demo-test-logs']
    assert select_stack_names(topology) == ['demo-test-kms', 'demo-test-logs', 'demo-test-iam']
    with pytest.raises(RollbackError):
        select_stack_names(topology, stage='monitoring')


def test_only_failed_stacks_are_candidates(reconciler, fake_cfn, topology):
    fake_cfn.stacks.update({
        'demo-test-kms': 'UPDATE_COMPLETE',
        'demo-test-logs': 'UPDATE_ROLLBACK_FAILED',
        'demo-test-iam': 'UPDATE_ROLLBACK_IN_PROGRESS',
    })
    stage = RollbackStage(reconciler, topology.stack_names())

    result = stage.find_candidates()

    assert [c.stack_name for c in result.candidates] == ['demo-test-logs', 'demo-test-iam']
    assert fake_cfn.mutations() == []


def test_rollback_pass_remediates_candidates(reconciler, fake_cfn, topology):
    fake_cfn.stacks.update({
        'demo-test-kms': 'CREATE_COMPLETE',
        'demo-test-logs': 'UPDATE_ROLLBACK_FAILED',
        'demo-test-iam': 'UPDATE_ROLLBACK_IN_PROGRESS',
    })

    result = RollbackStage(reconciler, topology.stack_names()).run()

    assert result.succeeded
    assert [o.kind for o in result.outcomes] == [OutcomeKind.ROLLED_BACK, OutcomeKind.ROLLED_BACK]
    assert fake_cfn.mutations() == [('continue_rollback', 'demo-test-logs')]
    assert fake_cfn.stacks['demo-test-kms'] == 'CREATE_COMPLETE'


def test_failed_creation_needs_force(reconciler, fake_cfn):
    fake_cfn.stacks['demo-test-kms'] = 'CREATE_FAILED'

    refused = RollbackStage(reconciler, ['demo-test-kms']).run()
    forced = RollbackStage(
        reconciler, ['demo-test-kms'], ReconcileOptions(force_delete_on_failure=True)
    ).run()

    assert not refused.succeeded
    assert refused.outcomes[0].reason is FailureReason.REQUIRES_MANUAL_INTERVENTION
    assert forced.succeeded
    assert forced.outcomes[0].kind is OutcomeKind.DELETED
    assert 'demo-test-kms' not in fake_cfn.stacks


def test_nothing_to_roll_back(reconciler, fake_cfn, topology):
    result = RollbackStage(reconciler, topology.stack_names()).run()

    assert result.candidates == []
    assert result.succeeded


def test_unreadable_stack_fails_the_pass(reconciler, fake_cfn):
    fake_cfn.fail('get_status', *[ProviderUnreachableError('Throttling')] * 3)

    result = RollbackStage(reconciler, ['demo-test-kms']).run()

    assert result.unreadable == ['demo-test-kms']
    assert not result.succeeded
