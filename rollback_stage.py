#!/usr/bin/env python3
"""
Rollback stage script for the stack reconciler.

This module finds stacks left in a failed state and remediates them:
- UPDATE_FAILED / UPDATE_ROLLBACK_FAILED stacks get a continue-rollback
- Stacks still rolling back are waited on
- Stacks whose creation failed are deleted only with --force
"""

import argparse
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from cloudformation_provider import CloudFormationProvider
from config_parser import TopologyConfig
from monitoring import print_outcome, print_summary
from rollout_stage import add_topology_arguments, load_topology
from stack_provider import ProviderUnreachableError
from stack_reconciler import (
    DEFAULT_WAIT_TIMEOUT,
    ReconcileOptions,
    ReconciliationOutcome,
    StackReconciler,
)
from stack_status import is_rollback_eligible


class RollbackError(Exception):
    """Exception raised when the rollback scan cannot be carried out."""
    pass


@dataclass
class RollbackCandidate:
    """A stack found in a state that needs remediation."""
    stack_name: str
    status: str


@dataclass
class RollbackResult:
    """Result of a rollback pass."""
    candidates: List[RollbackCandidate]
    outcomes: List[ReconciliationOutcome] = field(default_factory=list)
    unreadable: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.unreadable and all(outcome.succeeded for outcome in self.outcomes)


class RollbackStage:
    """Scans stacks for failed states and rolls them back."""

    def __init__(
        self,
        reconciler: StackReconciler,
        stack_names: List[str],
        options: Optional[ReconcileOptions] = None
    ):
        """
        Initialize the rollback stage.

        Args:
            reconciler: Reconciler used for status reads and remediation
            stack_names: Stacks to inspect
            options: Force, dry-run and timeout policy
        """
        self.reconciler = reconciler
        self.stack_names = stack_names
        self.options = options or ReconcileOptions()

    def find_candidates(self) -> RollbackResult:
        """
        Inspect every stack and collect those needing remediation.

        Stacks still rolling back are included so the pass waits for them.
        """
        result = RollbackResult(candidates=[])
        for name in self.stack_names:
            try:
                raw = self.reconciler.fetch_status(name)
            except ProviderUnreachableError as e:
                print(f"  ✗ {name}: unable to read status: {str(e)}", file=sys.stderr)
                result.unreadable.append(name)
                continue

            if raw is None:
                continue
            if is_rollback_eligible(raw) or "ROLLBACK_IN_PROGRESS" in raw:
                print(f"  {name}: {raw}")
                result.candidates.append(RollbackCandidate(stack_name=name, status=raw))
        return result

    def run(self) -> RollbackResult:
        """
        Execute the rollback pass.

        Returns:
            RollbackResult with one outcome per candidate
        """
        print(f"\n{'='*80}")
        print("Stack Rollback")
        print(f"Stacks inspected: {len(self.stack_names)}")
        print(f"Force delete of failed creations: {self.options.force_delete_on_failure}")
        print(f"{'='*80}\n")

        print("Scanning for stacks in a failed state...")
        result = self.find_candidates()

        if not result.candidates:
            print("No stacks require rollback")
            return result

        for i, candidate in enumerate(result.candidates, 1):
            print(f"\n[{i}/{len(result.candidates)}] Rolling back {candidate.stack_name} ({candidate.status})...")
            outcome = self.reconciler.rollback(candidate.stack_name, self.options)
            print_outcome(outcome, sys.stdout if outcome.succeeded else sys.stderr)
            result.outcomes.append(outcome)

        print()
        print_summary("Rollback Summary", result.outcomes)
        return result


def select_stack_names(
    topology: TopologyConfig,
    stack: Optional[str] = None,
    stage: Optional[str] = None
) -> List[str]:
    """
    Resolve the stacks a rollback pass inspects.

    Args:
        topology: Parsed topology
        stack: Single stack suffix or full name
        stage: Stage name or 1-based position

    Returns:
        Full stack names; every stack in the topology when neither is given

    Raises:
        RollbackError: If the stage is unknown
    """
    if stack:
        if stack.startswith(f"{topology.base_name}-"):
            return [stack]
        return [f"{topology.base_name}-{stack}"]
    if stage:
        try:
            selected = topology.stage(stage)
        except KeyError as e:
            raise RollbackError(str(e)) from e
        return [topology.stack_name(s) for s in selected.stacks]
    return topology.stack_names()


def main():
    """Main entry point for the rollback stage script."""
    parser = argparse.ArgumentParser(description='Roll back stacks left in a failed state')
    add_topology_arguments(parser)
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument('--stack', type=str, help='Stack suffix or full stack name')
    target.add_argument('--stage', type=str, help='Stage name or number')
    target.add_argument('--all', action='store_true', help='Inspect every stack in the topology')
    parser.add_argument(
        '--force',
        action='store_true',
        help='Delete stacks whose creation failed (they cannot be rolled back)'
    )
    parser.add_argument('--dry-run', action='store_true', help='Report what would be done')
    parser.add_argument(
        '--wait-timeout',
        type=float,
        default=DEFAULT_WAIT_TIMEOUT,
        help=f'Seconds to wait for each stack (default: {DEFAULT_WAIT_TIMEOUT:g})'
    )

    args = parser.parse_args()
    topology = load_topology(args)

    try:
        stack_names = select_stack_names(topology, stack=args.stack, stage=args.stage)
    except RollbackError as e:
        print(f"Error: {str(e)}", file=sys.stderr)
        sys.exit(1)

    provider = CloudFormationProvider(region=topology.region)
    reconciler = StackReconciler(
        provider,
        project=topology.project,
        environment=topology.environment,
        deployed_by='rollback-stage'
    )
    options = ReconcileOptions(
        dry_run=args.dry_run,
        wait_timeout=args.wait_timeout,
        force_delete_on_failure=args.force
    )

    try:
        result = RollbackStage(reconciler, stack_names, options).run()
    except KeyboardInterrupt:
        print("\nInterrupted; stack operations continue in CloudFormation", file=sys.stderr)
        sys.exit(130)

    sys.exit(0 if result.succeeded else 1)


if __name__ == "__main__":
    main()
