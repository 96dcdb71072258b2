#!/usr/bin/env python3
"""
Validation stage for the stack reconciler.

This script performs all validation checks before any stack is deployed:
- Topology configuration schema validation
- AWS credential validation
- CloudFormation template validation (all, one stage, or one template)

If any validation fails, the script exits with a non-zero status code and
provides clear error messages.
"""

import sys
import argparse
from pathlib import Path
from typing import List, Optional

from cloudformation_provider import CloudFormationProvider
from config_parser import TopologyConfig
from rollout_stage import add_topology_arguments, load_topology
from validation import (
    TemplateCheck,
    ValidationError,
    validate_aws_credentials,
    validate_templates,
)


def select_templates(
    topology: TopologyConfig,
    stage: Optional[str] = None,
    template: Optional[str] = None
) -> List[Path]:
    """
    Template paths to validate, in dependency order and without duplicates.

    Raises:
        KeyError: If the stage is unknown
    """
    if template:
        return [Path(template)]

    stages = [topology.stage(stage)] if stage else topology.stages
    paths: List[Path] = []
    for selected in stages:
        for stack in selected.stacks:
            path = topology.base_dir / stack.template
            if path not in paths:
                paths.append(path)
    return paths


def main():
    """Main entry point for validation stage."""
    parser = argparse.ArgumentParser(
        description='Validate the stack topology, AWS credentials and CloudFormation templates'
    )
    add_topology_arguments(parser)
    target = parser.add_mutually_exclusive_group()
    target.add_argument('--stage', type=str, help='Validate only this stage (name or number)')
    target.add_argument('--template', type=str, help='Validate only this template file')
    parser.add_argument(
        '--parallel',
        action='store_true',
        help='Validate templates concurrently'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=8,
        help='Worker threads for --parallel (default: 8)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='List every template checked'
    )
    parser.add_argument(
        '--skip-aws-validation',
        action='store_true',
        help='Skip AWS credential validation (useful for local testing)'
    )

    args = parser.parse_args()

    errors = []

    print("=" * 80)
    print("Stack Reconciler Validation Stage")
    print("=" * 80)
    print()

    # 1. Validate configuration schema
    print("1. Validating configuration schema...")
    topology = load_topology(args)
    print(f"   ✓ Configuration is valid")
    print(f"   - Version: {topology.version}")
    print(f"   - Stack prefix: {topology.base_name}")
    print(f"   - Region: {topology.region}")
    print(f"   - Stages: {len(topology.stages)}")
    for stage in topology.stages:
        mode = "parallel" if stage.parallel else "sequential"
        print(f"     - {stage.name}: {len(stage.stacks)} stacks ({mode})")

    print()

    # 2. Validate AWS credentials
    if not args.skip_aws_validation:
        print("2. Validating AWS credentials...")
        try:
            account = validate_aws_credentials(region=topology.region)
            print(f"   ✓ Credentials valid for account {account}")
        except ValidationError as e:
            error_msg = f"AWS credential validation failed: {str(e)}"
            print(f"   ✗ {error_msg}")
            errors.append(error_msg)
            # Templates cannot be validated without credentials
            print()
            print_summary(errors)
            sys.exit(1)
    else:
        print("2. Skipping AWS credential validation (--skip-aws-validation)")

    print()

    # 3. Validate templates
    try:
        paths = select_templates(topology, stage=args.stage, template=args.template)
    except KeyError as e:
        errors.append(str(e))
        print_summary(errors)
        sys.exit(1)

    mode = "in parallel" if args.parallel else "sequentially"
    print(f"3. Validating {len(paths)} template(s) {mode}...")
    provider = CloudFormationProvider(region=topology.region)
    checks = validate_templates(provider, paths, parallel=args.parallel, max_workers=args.max_workers)
    report_checks(checks, args.verbose)
    errors.extend(f"{check.path}: {check.error}" for check in checks if not check.valid)

    print()

    # Print summary and exit
    print_summary(errors)

    if errors:
        sys.exit(1)
    else:
        sys.exit(0)


def report_checks(checks: List[TemplateCheck], verbose: bool = False):
    """Print one line per template check."""
    valid = sum(1 for check in checks if check.valid)
    for check in checks:
        if check.valid:
            if verbose:
                print(f"   ✓ {check.path}")
        else:
            print(f"   ✗ {check.path}")
            print(f"     {check.error}")
    print(f"   {valid}/{len(checks)} template(s) valid")


def print_summary(errors: List[str]):
    """Print validation summary."""
    print("=" * 80)
    print("Validation Summary")
    print("=" * 80)

    if errors:
        print(f"✗ Validation FAILED with {len(errors)} error(s):")
        print()
        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}")
        print()
        print("Please fix the errors above before deploying.")
    else:
        print("✓ All validations PASSED")
        print()
        print("The topology is ready to deploy.")

    print("=" * 80)


if __name__ == '__main__':
    main()
