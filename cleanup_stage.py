#!/usr/bin/env python3
"""
Cleanup stage script for the stack reconciler.

This module tears down every stack of a topology:
- Lists the stacks that currently exist, in reverse dependency order
- Refuses to delete anything unless the teardown is confirmed
- Optionally empties S3 buckets and ECR repositories named after the
  project environment so their stacks can be deleted
- Deletes stacks one at a time, reporting failures and carrying on
"""

import argparse
import sys
from dataclasses import dataclass, field
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

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


S3_DELETE_BATCH_SIZE = 1000
ECR_DELETE_BATCH_SIZE = 100


class CleanupError(Exception):
    """Exception raised when emptying a bucket or repository fails."""
    pass


@dataclass
class CleanupResult:
    """Result of a cleanup pass."""
    existing_stacks: List[str]
    outcomes: List[ReconciliationOutcome] = field(default_factory=list)
    emptied_buckets: List[str] = field(default_factory=list)
    emptied_repositories: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    confirmed: bool = False

    @property
    def succeeded(self) -> bool:
        return not self.errors and all(outcome.succeeded for outcome in self.outcomes)


class CleanupStage:
    """Handles confirmed teardown of a topology."""

    def __init__(
        self,
        topology: TopologyConfig,
        reconciler: StackReconciler,
        options: Optional[ReconcileOptions] = None,
        empty_resources: bool = False,
        s3_client=None,
        ecr_client=None
    ):
        """
        Initialize the cleanup stage.

        Args:
            topology: Parsed topology (stack names and resource prefix)
            reconciler: Reconciler used for status reads and deletion
            options: Confirmation, dry-run and timeout policy
            empty_resources: Empty matching S3 buckets and ECR repositories first
            s3_client: Optional boto3 S3 client for testing
            ecr_client: Optional boto3 ECR client for testing
        """
        self.topology = topology
        self.reconciler = reconciler
        self.options = options or ReconcileOptions()
        self.empty_resources = empty_resources
        self._s3_client = s3_client
        self._ecr_client = ecr_client

    @property
    def s3_client(self):
        if self._s3_client is None:
            self._s3_client = boto3.client('s3', region_name=self.topology.region)
        return self._s3_client

    @property
    def ecr_client(self):
        if self._ecr_client is None:
            self._ecr_client = boto3.client('ecr', region_name=self.topology.region)
        return self._ecr_client

    def teardown_order(self) -> List[str]:
        """All stack names in reverse dependency order."""
        return list(reversed(self.topology.stack_names()))

    def list_existing_stacks(self, errors: List[str]) -> List[str]:
        """
        Stack names that currently exist, in teardown order.

        Stacks whose status cannot be read are reported in errors.
        """
        existing = []
        for name in self.teardown_order():
            try:
                raw = self.reconciler.fetch_status(name)
            except ProviderUnreachableError as e:
                errors.append(f"Unable to read status of {name}: {str(e)}")
                continue
            if raw is not None:
                print(f"  - {name} ({raw})")
                existing.append(name)
        return existing

    def empty_buckets(self) -> List[str]:
        """
        Delete every object version in buckets whose name contains the base name.

        Returns:
            Names of the buckets emptied

        Raises:
            CleanupError: If listing or deleting objects fails
        """
        base_name = self.topology.base_name
        emptied = []
        try:
            buckets = self.s3_client.list_buckets().get('Buckets', [])
            for bucket in buckets:
                name = bucket['Name']
                if base_name not in name:
                    continue
                print(f"Emptying bucket: {name}")
                self._delete_bucket_contents(name)
                emptied.append(name)
        except (ClientError, BotoCoreError) as e:
            raise CleanupError(f"Failed to empty S3 buckets: {str(e)}") from e
        return emptied

    def _delete_bucket_contents(self, bucket: str) -> None:
        keys = []
        paginator = self.s3_client.get_paginator('list_object_versions')
        for page in paginator.paginate(Bucket=bucket):
            for entry in page.get('Versions', []) + page.get('DeleteMarkers', []):
                version_id = entry.get('VersionId')
                if version_id in (None, 'null'):
                    # unversioned object
                    keys.append({'Key': entry['Key']})
                else:
                    keys.append({'Key': entry['Key'], 'VersionId': version_id})

        for start in range(0, len(keys), S3_DELETE_BATCH_SIZE):
            self.s3_client.delete_objects(
                Bucket=bucket,
                Delete={'Objects': keys[start:start + S3_DELETE_BATCH_SIZE], 'Quiet': True}
            )

    def empty_repositories(self) -> List[str]:
        """
        Delete every image in ECR repositories whose name contains the base name.

        Returns:
            Names of the repositories emptied

        Raises:
            CleanupError: If listing or deleting images fails
        """
        base_name = self.topology.base_name
        emptied = []
        try:
            paginator = self.ecr_client.get_paginator('describe_repositories')
            for page in paginator.paginate():
                for repository in page.get('repositories', []):
                    name = repository['repositoryName']
                    if base_name not in name:
                        continue
                    print(f"Deleting images from: {name}")
                    self._delete_repository_images(name)
                    emptied.append(name)
        except (ClientError, BotoCoreError) as e:
            raise CleanupError(f"Failed to empty ECR repositories: {str(e)}") from e
        return emptied

    def _delete_repository_images(self, repository: str) -> None:
        image_ids = []
        paginator = self.ecr_client.get_paginator('list_images')
        for page in paginator.paginate(repositoryName=repository):
            image_ids.extend(page.get('imageIds', []))

        for start in range(0, len(image_ids), ECR_DELETE_BATCH_SIZE):
            self.ecr_client.batch_delete_image(
                repositoryName=repository,
                imageIds=image_ids[start:start + ECR_DELETE_BATCH_SIZE]
            )

    def run(self) -> CleanupResult:
        """
        Execute the cleanup.

        Nothing is modified unless options.confirmed is set.

        Returns:
            CleanupResult with one outcome per deleted stack
        """
        print(f"\n{'='*80}")
        print(f"Stack Cleanup: {self.topology.base_name}")
        print(f"Region: {self.topology.region}")
        print(f"{'='*80}\n")

        errors: List[str] = []
        print("The following stacks will be deleted:")
        existing = self.list_existing_stacks(errors)
        result = CleanupResult(existing_stacks=existing, errors=errors, confirmed=self.options.confirmed)

        if not existing:
            print("No stacks found")
            return result

        if not self.options.confirmed:
            print("\nCleanup not confirmed. Re-run with --confirm to delete these stacks.", file=sys.stderr)
            return result

        if self.empty_resources and not self.options.dry_run:
            print("\nStep 1: Emptying S3 buckets...")
            try:
                result.emptied_buckets = self.empty_buckets()
            except CleanupError as e:
                print(f"Warning: {str(e)}", file=sys.stderr)
                errors.append(str(e))

            print("\nStep 2: Deleting ECR images...")
            try:
                result.emptied_repositories = self.empty_repositories()
            except CleanupError as e:
                print(f"Warning: {str(e)}", file=sys.stderr)
                errors.append(str(e))

        print("\nDeleting stacks in reverse dependency order...")
        for i, name in enumerate(existing, 1):
            print(f"\n[{i}/{len(existing)}] Deleting {name}...")
            outcome = self.reconciler.delete(name, self.options)
            if not outcome.succeeded:
                print_outcome(outcome, sys.stderr)
            result.outcomes.append(outcome)

        print()
        print_summary(f"Cleanup Summary: {self.topology.base_name}", result.outcomes)
        for error in errors:
            print(f"✗ {error}", file=sys.stderr)
        return result


def main():
    """Main entry point for the cleanup stage script."""
    parser = argparse.ArgumentParser(
        description='Delete every stack of a topology in reverse dependency order'
    )
    add_topology_arguments(parser)
    parser.add_argument(
        '--confirm',
        action='store_true',
        help='Confirm deletion; without it the stacks are only listed'
    )
    parser.add_argument(
        '--empty-resources',
        action='store_true',
        help='Empty matching S3 buckets and ECR repositories before deleting stacks'
    )
    parser.add_argument('--dry-run', action='store_true', help='Report what would be deleted')
    parser.add_argument(
        '--wait-for-in-progress',
        action='store_true',
        help='Wait for in-progress operations instead of failing'
    )
    parser.add_argument(
        '--wait-timeout',
        type=float,
        default=DEFAULT_WAIT_TIMEOUT,
        help=f'Seconds to wait for each stack (default: {DEFAULT_WAIT_TIMEOUT:g})'
    )

    args = parser.parse_args()
    topology = load_topology(args)

    provider = CloudFormationProvider(region=topology.region)
    reconciler = StackReconciler(
        provider,
        project=topology.project,
        environment=topology.environment,
        deployed_by='cleanup-stage'
    )
    options = ReconcileOptions(
        dry_run=args.dry_run,
        wait_timeout=args.wait_timeout,
        wait_for_in_progress=args.wait_for_in_progress,
        confirmed=args.confirm
    )

    try:
        result = CleanupStage(topology, reconciler, options, empty_resources=args.empty_resources).run()
    except KeyboardInterrupt:
        print("\nInterrupted; stack deletions continue in CloudFormation", file=sys.stderr)
        sys.exit(130)

    if not result.confirmed and result.existing_stacks:
        sys.exit(1)
    sys.exit(0 if result.succeeded else 1)


if __name__ == "__main__":
    main()
