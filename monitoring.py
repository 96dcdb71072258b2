"""
Monitoring and reporting functionality for the stack reconciler scripts.

This module provides CloudWatch metrics emission for reconciliation outcomes
and the console rendering of outcome summaries and diagnostic events.
"""

import sys
from datetime import datetime, timezone
from typing import Iterable, List, Optional, TextIO
import boto3

from stack_provider import StackEvent
from stack_reconciler import ReconciliationOutcome


class CloudWatchMetricsEmitter:
    """Emits CloudWatch metrics for stack reconciliation outcomes."""

    def __init__(self, namespace: str = "StackReconciler", cloudwatch_client=None, region: Optional[str] = None):
        """
        Initialize the metrics emitter.

        Args:
            namespace: CloudWatch namespace for metrics
            cloudwatch_client: Optional boto3 CloudWatch client for testing
            region: AWS region for the client created when none is given
        """
        self.namespace = namespace
        self.cloudwatch_client = cloudwatch_client or boto3.client('cloudwatch', region_name=region)

    def emit_outcome_metric(
        self,
        outcome: ReconciliationOutcome,
        environment: Optional[str] = None
    ) -> None:
        """
        Emit CloudWatch metrics for one reconciliation outcome.

        Args:
            outcome: Outcome returned by the reconciler
            environment: Optional environment name
        """
        timestamp = datetime.now(timezone.utc)

        dimensions = [
            {'Name': 'StackName', 'Value': outcome.stack_name},
            {'Name': 'Outcome', 'Value': outcome.kind.value}
        ]

        if environment:
            dimensions.append({'Name': 'Environment', 'Value': environment})

        metric_data = [
            {
                'MetricName': 'ReconcileCount',
                'Value': 1.0,
                'Unit': 'Count',
                'Dimensions': dimensions,
                'Timestamp': timestamp
            },
            {
                'MetricName': 'ReconcileDuration',
                'Value': float(outcome.duration_seconds),
                'Unit': 'Seconds',
                'Dimensions': [d for d in dimensions if d['Name'] != 'Outcome'],
                'Timestamp': timestamp
            }
        ]

        self.cloudwatch_client.put_metric_data(
            Namespace=self.namespace,
            MetricData=metric_data
        )


def format_events(events: Iterable[StackEvent]) -> List[str]:
    """Render stack events one per line, in the order given."""
    lines = []
    for event in events:
        line = f"  {event.timestamp}  {event.status:<28} {event.resource_id}"
        if event.resource_type:
            line += f" ({event.resource_type})"
        if event.reason:
            line += f": {event.reason}"
        lines.append(line)
    return lines


def print_outcome(outcome: ReconciliationOutcome, stream: TextIO = sys.stdout) -> None:
    """Print one outcome, including its diagnostic events when it failed."""
    line = f"{outcome.stack_name}: {outcome.kind.value.upper()}"
    if outcome.status:
        line += f" [{outcome.status}]"
    line += f" ({outcome.duration_seconds:.1f}s)"
    print(line, file=stream)

    if outcome.reason:
        print(f"  Reason: {outcome.reason.value}", file=stream)
    if outcome.message:
        print(f"  {outcome.message}", file=stream)
    if outcome.events:
        print(f"  Recent events (last {len(outcome.events)}):", file=stream)
        for event_line in format_events(outcome.events):
            print(event_line, file=stream)


def print_summary(title: str, outcomes: List[ReconciliationOutcome], stream: TextIO = sys.stdout) -> None:
    """Print an outcome summary table."""
    print("=" * 80, file=stream)
    print(title, file=stream)
    print("=" * 80, file=stream)

    if not outcomes:
        print("No stacks processed", file=stream)
    for outcome in outcomes:
        marker = "✓" if outcome.succeeded else "✗"
        print(f"{marker} ", end="", file=stream)
        print_outcome(outcome, stream)

    succeeded = sum(1 for outcome in outcomes if outcome.succeeded)
    print("-" * 80, file=stream)
    print(f"Total: {len(outcomes)}  Succeeded: {succeeded}  Failed: {len(outcomes) - succeeded}", file=stream)
    print("=" * 80, file=stream)
