#!/usr/bin/env python3
"""
Rollout stage script for the stack reconciler.

This module provides functionality to roll out a whole stack topology:
- Parse and validate the topology configuration
- Build stack specs from templates and parameter files
- Reconcile stages in dependency order, optionally in parallel within a stage
- Halt downstream stages after a failed or cancelled stack
- Capture stack outputs and save error details
"""

import argparse
import json
import os
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from cloudformation_provider import CloudFormationProvider, StackOutput
from config_parser import (
    DEFAULT_SCHEMA_PATH,
    ConfigError,
    StageConfig,
    TopologyConfig,
    build_stack_spec,
    parse_config,
)
from monitoring import CloudWatchMetricsEmitter, print_outcome, print_summary
from stack_provider import StackProviderError
from stack_reconciler import (
    DEFAULT_WAIT_TIMEOUT,
    OutcomeKind,
    ReconcileOptions,
    ReconciliationOutcome,
    StackReconciler,
    StackSpec,
)


OUTPUT_KINDS = frozenset({OutcomeKind.CREATED, OutcomeKind.UPDATED, OutcomeKind.UNCHANGED})


class RolloutError(Exception):
    """Exception raised when the rollout cannot be carried out."""
    pass


@dataclass
class StackRolloutResult:
    """Result of reconciling a single stack during a rollout."""
    stage_name: str
    outcome: ReconciliationOutcome
    outputs: List[StackOutput] = field(default_factory=list)

    @property
    def stack_name(self) -> str:
        return self.outcome.stack_name


@dataclass
class RolloutResult:
    """Result of rolling out a topology."""
    project: str
    environment: str
    region: str
    stack_results: List[StackRolloutResult]
    status: str  # "success" or "failed"
    not_attempted: List[str] = field(default_factory=list)

    @property
    def outcomes(self) -> List[ReconciliationOutcome]:
        return [result.outcome for result in self.stack_results]


class RolloutStage:
    """Handles rolling out every stage of a stack topology."""

    def __init__(
        self,
        topology: TopologyConfig,
        reconciler: StackReconciler,
        provider: Optional[CloudFormationProvider] = None,
        options: Optional[ReconcileOptions] = None,
        only_stages: Optional[List[str]] = None,
        skip_stages: Optional[List[str]] = None,
        max_workers: int = 1,
        metrics_emitter: Optional[CloudWatchMetricsEmitter] = None,
        outputs_file: Optional[str] = "/tmp/stack-outputs.json",
        error_file: Optional[str] = "/tmp/deployment-error.json"
    ):
        """
        Initialize the rollout stage.

        Args:
            topology: Parsed topology configuration
            reconciler: Reconciler used for every stack
            provider: Provider used to capture stack outputs (outputs skipped if None)
            options: Reconcile options applied to every stack
            only_stages: Stage names or 1-based positions to deploy exclusively
            skip_stages: Stage names or 1-based positions to skip
            max_workers: Worker threads for stages marked parallel
            metrics_emitter: Optional CloudWatch metrics emitter
            outputs_file: Where to save captured outputs (not saved if None)
            error_file: Where to save error details on failure (not saved if None)
        """
        self.topology = topology
        self.reconciler = reconciler
        self.provider = provider
        self.cancel_event = threading.Event()
        options = options or ReconcileOptions()
        if options.cancel_event is None:
            options = replace(options, cancel_event=self.cancel_event)
        else:
            self.cancel_event = options.cancel_event
        self.options = options
        self.only_stages = only_stages or []
        self.skip_stages = skip_stages or []
        self.max_workers = max(1, max_workers)
        self.metrics_emitter = metrics_emitter
        self.outputs_file = outputs_file
        self.error_file = error_file
        self.stack_results: List[StackRolloutResult] = []

    def selected_stages(self) -> List[StageConfig]:
        """
        Stages to deploy, in dependency order.

        Raises:
            RolloutError: If a stage selector matches no stage
        """
        try:
            only = [self.topology.stage(s).name for s in self.only_stages]
            skip = {self.topology.stage(s).name for s in self.skip_stages}
        except KeyError as e:
            raise RolloutError(str(e)) from e

        stages = []
        for stage in self.topology.stages:
            if only and stage.name not in only:
                continue
            if stage.name in skip:
                print(f"Skipping stage {stage.name}")
                continue
            stages.append(stage)
        return stages

    def build_specs(self, stage: StageConfig) -> List[StackSpec]:
        """
        Build stack specs for every stack in a stage.

        Raises:
            RolloutError: If a template or parameter file cannot be loaded
        """
        try:
            return [build_stack_spec(self.topology, stack) for stack in stage.stacks]
        except ConfigError as e:
            raise RolloutError(f"Stage {stage.name}: {str(e)}") from e

    def reconcile_stack(self, stage_name: str, spec: StackSpec) -> StackRolloutResult:
        """Reconcile one stack, emit its metric and capture its outputs."""
        outcome = self.reconciler.reconcile(spec, self.options)

        if self.metrics_emitter:
            try:
                self.metrics_emitter.emit_outcome_metric(outcome, environment=self.topology.environment)
            except (ClientError, BotoCoreError) as e:
                print(f"Warning: Failed to emit metrics for {spec.name}: {str(e)}", file=sys.stderr)

        outputs: List[StackOutput] = []
        if self.provider and outcome.kind in OUTPUT_KINDS:
            outputs = self.capture_stack_outputs(spec.name)

        return StackRolloutResult(stage_name=stage_name, outcome=outcome, outputs=outputs)

    def capture_stack_outputs(self, stack_name: str) -> List[StackOutput]:
        """
        Query CloudFormation for stack outputs and capture them.

        Args:
            stack_name: Name of the CloudFormation stack

        Returns:
            List of StackOutput objects
        """
        try:
            outputs = self.provider.get_outputs(stack_name)
        except StackProviderError as e:
            print(f"Warning: Failed to capture outputs for stack {stack_name}: {str(e)}", file=sys.stderr)
            return []

        for output in outputs:
            print(f"  {output.output_key}: {output.output_value}")
        return outputs

    def deploy_stage(self, stage: StageConfig) -> List[StackRolloutResult]:
        """
        Reconcile every stack in a stage.

        Sequential stages stop at the first halting outcome. Parallel stages
        reconcile all stacks concurrently and return once every one finished.

        Returns:
            List of StackRolloutResult in configured order
        """
        specs = self.build_specs(stage)

        if stage.parallel and self.max_workers > 1 and len(specs) > 1:
            workers = min(self.max_workers, len(specs))
            print(f"Reconciling {len(specs)} stack(s) with {workers} worker(s)")
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self.reconcile_stack, stage.name, spec) for spec in specs]
                try:
                    return [future.result() for future in futures]
                except KeyboardInterrupt:
                    print("Interrupted - cancelling waits", file=sys.stderr)
                    self.cancel_event.set()
                    return [future.result() for future in futures]

        results = []
        for i, spec in enumerate(specs, 1):
            print(f"\n[{i}/{len(specs)}] Reconciling {spec.name}...")
            result = self.reconcile_stack(stage.name, spec)
            results.append(result)
            if result.outcome.halts_rollout:
                break
        return results

    def save_outputs_to_file(self, output_file: str) -> None:
        """
        Save all captured stack outputs to a JSON file.

        Args:
            output_file: Path to output file
        """
        try:
            all_outputs = {}
            for result in self.stack_results:
                if not result.outputs:
                    continue
                all_outputs[result.stack_name] = {
                    output.output_key: {
                        'value': output.output_value,
                        'description': output.description,
                        'export_name': output.export_name
                    }
                    for output in result.outputs
                }

            output_path = Path(output_file)
            output_path.parent.mkdir(parents=True, exist_ok=True)

            with open(output_path, 'w') as f:
                json.dump(all_outputs, f, indent=2)

            print(f"\nStack outputs saved to {output_file}")

        except OSError as e:
            print(f"Warning: Failed to save outputs to file: {str(e)}", file=sys.stderr)

    def save_error_details(self, outcome: ReconciliationOutcome, error_file: str) -> None:
        """
        Save error details of a failed stack to a file for debugging.

        Args:
            outcome: Failed outcome
            error_file: Path to error file
        """
        try:
            error_details: Dict[str, Any] = {
                'project': self.topology.project,
                'environment': self.topology.environment,
                'region': self.topology.region,
                'stack_name': outcome.stack_name,
                'outcome': outcome.kind.value,
                'reason': outcome.reason.value if outcome.reason else None,
                'status': outcome.status,
                'error_message': outcome.message,
                'cloudformation_events': [
                    {
                        'timestamp': event.timestamp,
                        'logical_resource_id': event.resource_id,
                        'resource_type': event.resource_type,
                        'resource_status': event.status,
                        'resource_status_reason': event.reason
                    }
                    for event in outcome.events
                ]
            }

            error_path = Path(error_file)
            error_path.parent.mkdir(parents=True, exist_ok=True)

            with open(error_path, 'w') as f:
                json.dump(error_details, f, indent=2)

            print(f"Error details saved to {error_file}", file=sys.stderr)

        except OSError as e:
            print(f"Warning: Failed to save error details: {str(e)}", file=sys.stderr)

    def run(self) -> RolloutResult:
        """
        Execute the complete rollout.

        Returns:
            RolloutResult with per-stack outcomes

        Raises:
            RolloutError: If stage selection or spec building fails
        """
        print(f"\n{'='*80}")
        print(f"Stack Rollout: {self.topology.base_name}")
        print(f"Region: {self.topology.region}")
        print(f"Dry Run: {self.options.dry_run}")
        print(f"{'='*80}\n")

        stages = self.selected_stages()
        self.stack_results = []
        not_attempted: List[str] = []
        halted = False

        for i, stage in enumerate(stages, 1):
            if halted:
                not_attempted.extend(self.topology.stack_name(stack) for stack in stage.stacks)
                continue

            print(f"\n=== [{i}/{len(stages)}] Stage {stage.name}: {len(stage.stacks)} stack(s) ===")
            results = self.deploy_stage(stage)
            self.stack_results.extend(results)

            attempted = {result.stack_name for result in results}
            not_attempted.extend(
                name for name in (self.topology.stack_name(stack) for stack in stage.stacks)
                if name not in attempted
            )

            failed = [result.outcome for result in results if result.outcome.halts_rollout]
            if failed:
                for outcome in failed:
                    print_outcome(outcome, sys.stderr)
                print(f"Stage {stage.name} failed. Halting rollout.", file=sys.stderr)
                halted = True

        if self.outputs_file and not self.options.dry_run:
            self.save_outputs_to_file(self.outputs_file)

        print()
        print_summary(f"Rollout Summary: {self.topology.base_name}", self.outcomes())
        if not_attempted:
            print(f"Not attempted: {', '.join(not_attempted)}")

        status = "failed" if halted else "success"
        if halted and self.error_file:
            first_failure = next(r.outcome for r in self.stack_results if r.outcome.halts_rollout)
            self.save_error_details(first_failure, self.error_file)

        return RolloutResult(
            project=self.topology.project,
            environment=self.topology.environment,
            region=self.topology.region,
            stack_results=self.stack_results,
            status=status,
            not_attempted=not_attempted
        )

    def outcomes(self) -> List[ReconciliationOutcome]:
        return [result.outcome for result in self.stack_results]


def add_topology_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by every script that reads the topology file."""
    parser.add_argument(
        '--config',
        type=str,
        default=os.environ.get('STACK_TOPOLOGY', 'stack-topology.yaml'),
        help='Path to stack-topology.yaml (default: stack-topology.yaml)'
    )
    parser.add_argument(
        '--schema',
        type=str,
        default=DEFAULT_SCHEMA_PATH,
        help='Path to the topology JSON schema'
    )
    parser.add_argument(
        '--project',
        type=str,
        default=os.environ.get('PROJECT_NAME'),
        help='Override the configured project name'
    )
    parser.add_argument(
        '--environment',
        type=str,
        default=os.environ.get('ENVIRONMENT'),
        help='Override the configured environment'
    )
    parser.add_argument(
        '--region',
        type=str,
        default=os.environ.get('AWS_REGION'),
        help='Override the configured AWS region'
    )


def add_reconcile_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments that map onto ReconcileOptions."""
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate templates only, do not modify stacks'
    )
    parser.add_argument(
        '--wait-timeout',
        type=float,
        default=DEFAULT_WAIT_TIMEOUT,
        help=f'Seconds to wait for each stack (default: {DEFAULT_WAIT_TIMEOUT:g})'
    )
    parser.add_argument(
        '--wait-for-in-progress',
        action='store_true',
        help='Wait for in-progress operations instead of failing'
    )
    parser.add_argument(
        '--force-delete-on-failure',
        action='store_true',
        help='Delete and recreate stacks whose creation failed'
    )


def options_from_args(args: argparse.Namespace) -> ReconcileOptions:
    return ReconcileOptions(
        dry_run=args.dry_run,
        wait_timeout=args.wait_timeout,
        force_delete_on_failure=args.force_delete_on_failure,
        wait_for_in_progress=args.wait_for_in_progress
    )


def load_topology(args: argparse.Namespace) -> TopologyConfig:
    """Parse the topology named on the command line, exiting on error."""
    try:
        return parse_config(
            args.config,
            args.schema,
            environment=args.environment,
            region=args.region,
            project=args.project
        )
    except FileNotFoundError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"Error: Configuration validation failed: {str(e)}", file=sys.stderr)
        sys.exit(1)


def main():
    """Main entry point for the rollout stage script."""
    parser = argparse.ArgumentParser(
        description='Deploy every stage of a stack topology in dependency order'
    )
    add_topology_arguments(parser)
    add_reconcile_arguments(parser)
    parser.add_argument(
        '--only-stage',
        action='append',
        default=[],
        help='Deploy only this stage (name or number, may be repeated)'
    )
    parser.add_argument(
        '--skip-stage',
        action='append',
        default=[],
        help='Skip this stage (name or number, may be repeated)'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=4,
        help='Worker threads for stages marked parallel (default: 4)'
    )
    parser.add_argument(
        '--outputs-file',
        type=str,
        default='/tmp/stack-outputs.json',
        help='Where to save captured stack outputs'
    )
    parser.add_argument(
        '--error-file',
        type=str,
        default='/tmp/deployment-error.json',
        help='Where to save error details on failure'
    )
    parser.add_argument(
        '--emit-metrics',
        action='store_true',
        help='Emit CloudWatch metrics for every stack outcome'
    )

    args = parser.parse_args()
    topology = load_topology(args)

    provider = CloudFormationProvider(region=topology.region)
    reconciler = StackReconciler(
        provider,
        project=topology.project,
        environment=topology.environment,
        deployed_by='rollout-stage'
    )
    metrics_emitter = CloudWatchMetricsEmitter(region=topology.region) if args.emit_metrics else None

    stage = RolloutStage(
        topology=topology,
        reconciler=reconciler,
        provider=provider,
        options=options_from_args(args),
        only_stages=args.only_stage,
        skip_stages=args.skip_stage,
        max_workers=args.max_workers,
        metrics_emitter=metrics_emitter,
        outputs_file=args.outputs_file,
        error_file=args.error_file
    )

    try:
        result = stage.run()
    except RolloutError as e:
        print(f"\nRollout failed: {str(e)}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        stage.cancel_event.set()
        print("\nRollout interrupted; in-flight stack operations continue in CloudFormation", file=sys.stderr)
        sys.exit(130)

    if result.status == "success":
        print(f"\nRollout successful for {topology.base_name}")
        sys.exit(0)
    else:
        print(f"\nRollout failed for {topology.base_name}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
