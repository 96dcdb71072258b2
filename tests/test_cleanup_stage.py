"""
Tests for the cleanup stage.

Stack deletion runs against the in-memory CloudFormation fake; bucket and
repository emptying runs against moto.
"""

import boto3
import pytest
from moto import mock_aws

from cleanup_stage import CleanupStage
from config_parser import parse_config
from stack_provider import WaitResult, WaitState
from stack_reconciler import FailureReason, OutcomeKind, ReconcileOptions


REGION = 'us-east-1'


@pytest.fixture
def topology(topology_path):
    return parse_config(str(topology_path))


def deployed(fake_cfn, names):
    for name in names:
        fake_cfn.stacks[name] = 'CREATE_COMPLETE'


def test_teardown_order_is_reversed(reconciler, topology):
    stage = CleanupStage(topology, reconciler)

    assert stage.teardown_order() == ['demo-test-iam', 'demo-test-logs', 'demo-test-kms']


def test_unconfirmed_cleanup_only_lists(reconciler, fake_cfn, topology):
    deployed(fake_cfn, ['demo-test-kms', 'demo-test-iam'])

    result = CleanupStage(topology, reconciler).run()

    assert result.existing_stacks == ['demo-test-iam', 'demo-test-kms']
    assert result.outcomes == []
    assert fake_cfn.mutations() == []


def test_confirmed_cleanup_deletes_in_reverse_order(reconciler, fake_cfn, topology):
    deployed(fake_cfn, ['demo-test-kms', 'demo-test-logs', 'demo-test-iam'])

    result = CleanupStage(topology, reconciler, ReconcileOptions(confirmed=True)).run()

    assert result.succeeded
    assert fake_cfn.mutations() == [
        ('delete', 'demo-test-iam'),
        ('delete', 'demo-test-logs'),
        ('delete', 'demo-test-kms'),
    ]
    assert all(outcome.kind is OutcomeKind.DELETED for outcome in result.outcomes)
    assert fake_cfn.stacks == {}


def test_failed_deletion_is_reported_and_cleanup_continues(reconciler, fake_cfn, topology):
    deployed(fake_cfn, ['demo-test-kms', 'demo-test-iam'])
    fake_cfn.wait_results.append(WaitResult(state=WaitState.REACHED, status='DELETE_FAILED'))

    result = CleanupStage(topology, reconciler, ReconcileOptions(confirmed=True)).run()

    assert not result.succeeded
    assert result.outcomes[0].stack_name == 'demo-test-iam'
    assert result.outcomes[0].reason is FailureReason.OPERATION_FAILED
    assert result.outcomes[1].kind is OutcomeKind.DELETED
    assert fake_cfn.stacks == {'demo-test-iam': 'DELETE_FAILED'}


@mock_aws
def test_matching_buckets_and_repositories_are_emptied(reconciler, fake_cfn, topology):
    s3 = boto3.client('s3', region_name=REGION)
    ecr = boto3.client('ecr', region_name=REGION)
    s3.create_bucket(Bucket='demo-test-artifacts')
    s3.create_bucket(Bucket='unrelated-bucket')
    s3.put_object(Bucket='demo-test-artifacts', Key='build/app.zip', Body=b'data')
    s3.put_object(Bucket='unrelated-bucket', Key='keep.txt', Body=b'data')
    ecr.create_repository(repositoryName='demo-test-app')
    ecr.put_image(
        repositoryName='demo-test-app',
        imageManifest='{"schemaVersion": 2, "layers": []}',
        imageTag='latest'
    )
    deployed(fake_cfn, ['demo-test-kms'])

    stage = CleanupStage(
        topology, reconciler, ReconcileOptions(confirmed=True),
        empty_resources=True, s3_client=s3, ecr_client=ecr
    )
    result = stage.run()

    assert result.emptied_buckets == ['demo-test-artifacts']
    assert result.emptied_repositories == ['demo-test-app']
    assert s3.list_objects_v2(Bucket='demo-test-artifacts').get('KeyCount') == 0
    assert s3.list_objects_v2(Bucket='unrelated-bucket').get('KeyCount') == 1
    assert ecr.list_images(repositoryName='demo-test-app')['imageIds'] == []
    assert result.succeeded


@mock_aws
def test_resources_are_untouched_without_confirmation(reconciler, fake_cfn, topology):
    s3 = boto3.client('s3', region_name=REGION)
    s3.create_bucket(Bucket='demo-test-artifacts')
    s3.put_object(Bucket='demo-test-artifacts', Key='build/app.zip', Body=b'data')
    deployed(fake_cfn, ['demo-test-kms'])

    result = CleanupStage(topology, reconciler, empty_resources=True, s3_client=s3).run()

    assert result.emptied_buckets == []
    assert s3.list_objects_v2(Bucket='demo-test-artifacts').get('KeyCount') == 1
