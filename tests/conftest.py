"""Shared fixtures for the stack reconciler tests."""

import json
from pathlib import Path

import pytest
import yaml

from fakes import FakeCloudFormation
from stack_reconciler import StackReconciler, StackSpec


SNS_TEMPLATE = """AWSTemplateFormatVersion: '2010-09-09'
Parameters:
  TopicName:
    Type: String
    Default: demo-topic
Resources:
  Topic:
    Type: AWS::SNS::Topic
    Properties:
      TopicName: !Ref TopicName
Outputs:
  TopicArn:
    Value: !Ref Topic
"""


@pytest.fixture
def fake_cfn():
    return FakeCloudFormation()


@pytest.fixture
def sleeps():
    """Delays requested by the reconciler between read retries."""
    return []


@pytest.fixture
def reconciler(fake_cfn, sleeps):
    return StackReconciler(
        fake_cfn,
        project='demo',
        environment='test',
        deployed_by='pytest',
        sleep=sleeps.append
    )


@pytest.fixture
def app_spec():
    return StackSpec(
        name='demo-test-app',
        template_body=SNS_TEMPLATE,
        parameters={'TopicName': 'demo-topic'},
        tags={'Team': 'platform'}
    )


@pytest.fixture
def topology_dir(tmp_path):
    """A topology with two stages and three stacks written to disk."""
    templates = tmp_path / 'templates'
    templates.mkdir()
    for name in ('kms', 'logs', 'iam'):
        (templates / f'{name}.yaml').write_text(SNS_TEMPLATE)

    parameters = tmp_path / 'parameters'
    parameters.mkdir()
    (parameters / 'iam-prod.json').write_text(json.dumps([
        {'ParameterKey': 'TopicName', 'ParameterValue': 'iam-topic'}
    ]))

    config = {
        'version': '1.0',
        'project': 'demo',
        'environment': 'test',
        'region': 'us-east-1',
        'tags': {'CostCenter': '42'},
        'stages': [
            {
                'name': 'foundation',
                'parallel': True,
                'stacks': [
                    {'name': 'kms', 'template': 'templates/kms.yaml'},
                    {'name': 'logs', 'template': 'templates/logs.yaml'},
                ]
            },
            {
                'name': 'security',
                'stacks': [
                    {
                        'name': 'iam',
                        'template': 'templates/iam.yaml',
                        'parameters': 'parameters/iam-{environment}.json',
                        'parameters_fallback': 'parameters/iam-prod.json',
                        'capabilities': ['CAPABILITY_NAMED_IAM'],
                    },
                ]
            },
        ]
    }
    with open(tmp_path / 'stack-topology.yaml', 'w') as f:
        yaml.dump(config, f)
    return tmp_path


@pytest.fixture
def topology_path(topology_dir) -> Path:
    return topology_dir / 'stack-topology.yaml'


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep CLI defaults independent of the caller's shell."""
    for variable in ('PROJECT_NAME', 'ENVIRONMENT', 'AWS_REGION', 'STACK_TOPOLOGY'):
        monkeypatch.delenv(variable, raising=False)
