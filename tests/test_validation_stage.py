"""
Tests for the validation stage command-line entry point.

These tests invoke main() with patched arguments and check the exit code
and the printed summary.
"""

import sys
from unittest.mock import patch

import pytest
import yaml

from fakes import FakeCloudFormation
from validation_stage import main, select_templates
from config_parser import parse_config
from validation import ValidationError


def run_validation(args):
    with patch.object(sys, 'argv', ['validation_stage.py'] + args), \
            patch('validation_stage.CloudFormationProvider', return_value=FakeCloudFormation()):
        with pytest.raises(SystemExit) as exc_info:
            main()
    return exc_info.value.code


def test_validation_stage_succeeds_with_valid_topology(topology_path, capsys):
    code = run_validation(['--config', str(topology_path), '--skip-aws-validation', '--verbose'])

    out = capsys.readouterr().out
    assert code == 0
    assert 'All validations PASSED' in out
    assert '3/3 template(s) valid' in out


def test_validation_stage_fails_with_invalid_template(topology_dir, topology_path, capsys):
    (topology_dir / 'templates' / 'logs.yaml').write_text('INVALID')

    code = run_validation(['--config', str(topology_path), '--skip-aws-validation', '--parallel'])

    out = capsys.readouterr().out
    assert code == 1
    assert 'Validation FAILED with 1 error(s)' in out
    assert 'logs.yaml' in out


def test_validation_stage_fails_with_invalid_config(tmp_path, capsys):
    config_path = tmp_path / 'stack-topology.yaml'
    config_path.write_text(yaml.dump({'version': '1.0', 'project': 'demo'}))

    code = run_validation(['--config', str(config_path), '--skip-aws-validation'])

    assert code == 1
    assert 'Configuration validation failed' in capsys.readouterr().err


def test_validation_stage_fails_with_missing_config(tmp_path):
    code = run_validation(['--config', str(tmp_path / 'missing.yaml'), '--skip-aws-validation'])

    assert code == 1


def test_validation_stage_single_stage(topology_path, capsys):
    code = run_validation(['--config', str(topology_path), '--skip-aws-validation', '--stage', 'security'])

    assert code == 0
    assert '1/1 template(s) valid' in capsys.readouterr().out


def test_validation_stage_unknown_stage(topology_path, capsys):
    code = run_validation(['--config', str(topology_path), '--skip-aws-validation', '--stage', 'compute'])

    assert code == 1
    assert 'Unknown stage' in capsys.readouterr().out


def test_validation_stage_fails_without_credentials(topology_path, capsys):
    with patch('validation_stage.validate_aws_credentials', side_effect=ValidationError('no creds')):
        code = run_validation(['--config', str(topology_path)])

    assert code == 1
    assert 'AWS credential validation failed' in capsys.readouterr().out


def test_select_templates_deduplicates(topology_dir, topology_path):
    topology = parse_config(str(topology_path))
    for stack in topology.stages[0].stacks:
        stack.template = 'templates/kms.yaml'

    paths = select_templates(topology)

    assert paths == [topology_dir.resolve() / 'templates/kms.yaml', topology_dir.resolve() / 'templates/iam.yaml']
