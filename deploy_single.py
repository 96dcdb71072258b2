#!/usr/bin/env python3
"""
Deploy or update a single CloudFormation stack.

The stack is named <project>-<environment>-<stack> and reconciled with the
same policy as a full rollout. Outputs are printed on success.
"""

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional

from cloudformation_provider import CloudFormationProvider
from config_parser import ConfigError, load_parameters_file, read_template
from monitoring import print_outcome
from rollout_stage import add_reconcile_arguments, options_from_args
from stack_provider import StackProviderError
from stack_reconciler import (
    OutcomeKind,
    ReconcileOptions,
    ReconciliationOutcome,
    StackReconciler,
    StackSpec,
)


DEFAULT_PROJECT = 'aqua-sample-app'
DEFAULT_ENVIRONMENT = 'production'
DEFAULT_REGION = 'ap-southeast-1'


def build_single_spec(
    project: str,
    environment: str,
    stack: str,
    template_path: str,
    parameters_path: Optional[str] = None,
    capabilities: Optional[List[str]] = None
) -> StackSpec:
    """
    Build the StackSpec for one ad-hoc stack.

    Raises:
        ConfigError: If the template or parameter file cannot be loaded
    """
    template_body = read_template(Path(template_path))
    parameters = load_parameters_file(parameters_path) if parameters_path else {}
    return StackSpec(
        name=f"{project}-{environment}-{stack}",
        template_body=template_body,
        parameters=parameters,
        capabilities=tuple(capabilities or ())
    )


def deploy_single(
    reconciler: StackReconciler,
    provider: CloudFormationProvider,
    spec: StackSpec,
    options: ReconcileOptions
) -> ReconciliationOutcome:
    """Reconcile one stack and print its outputs when it is in place."""
    outcome = reconciler.reconcile(spec, options)
    print_outcome(outcome, sys.stdout if outcome.succeeded else sys.stderr)

    if outcome.kind in (OutcomeKind.CREATED, OutcomeKind.UPDATED, OutcomeKind.UNCHANGED):
        try:
            outputs = provider.get_outputs(spec.name)
        except StackProviderError as e:
            print(f"Warning: Failed to capture outputs for stack {spec.name}: {str(e)}", file=sys.stderr)
            outputs = []
        if outputs:
            print("\nStack outputs:")
            for output in outputs:
                print(f"  {output.output_key}: {output.output_value}")

    return outcome


def main():
    """Main entry point for single stack deployment."""
    parser = argparse.ArgumentParser(description='Deploy or update a single CloudFormation stack')
    parser.add_argument('--stack', type=str, required=True, help='Stack suffix, e.g. vpc-endpoints')
    parser.add_argument('--template', type=str, required=True, help='Path to the template file')
    parser.add_argument('--parameters', type=str, help='Path to a JSON parameters file')
    parser.add_argument(
        '--capabilities',
        type=str,
        nargs='*',
        default=[],
        help='Capabilities to acknowledge, e.g. CAPABILITY_NAMED_IAM'
    )
    parser.add_argument(
        '--project',
        type=str,
        default=os.environ.get('PROJECT_NAME', DEFAULT_PROJECT),
        help=f'Project name (default: {DEFAULT_PROJECT})'
    )
    parser.add_argument(
        '--environment',
        type=str,
        default=os.environ.get('ENVIRONMENT', DEFAULT_ENVIRONMENT),
        help=f'Environment name (default: {DEFAULT_ENVIRONMENT})'
    )
    parser.add_argument(
        '--region',
        type=str,
        default=os.environ.get('AWS_REGION', DEFAULT_REGION),
        help=f'AWS region (default: {DEFAULT_REGION})'
    )
    add_reconcile_arguments(parser)

    args = parser.parse_args()

    try:
        spec = build_single_spec(
            args.project, args.environment, args.stack,
            args.template, args.parameters, args.capabilities
        )
    except ConfigError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)

    provider = CloudFormationProvider(region=args.region)
    reconciler = StackReconciler(
        provider,
        project=args.project,
        environment=args.environment,
        deployed_by='deploy-single'
    )

    try:
        outcome = deploy_single(reconciler, provider, spec, options_from_args(args))
    except KeyboardInterrupt:
        print("\nInterrupted; the stack operation continues in CloudFormation", file=sys.stderr)
        sys.exit(130)

    sys.exit(0 if outcome.succeeded else 1)


if __name__ == "__main__":
    main()
