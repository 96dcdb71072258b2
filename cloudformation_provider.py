"""
CloudFormation-backed stack provider.

This module implements every collaborator the stack reconciler consumes on
top of the boto3 CloudFormation client:
- Status lookup and stack mutations (create, update, delete, continue-rollback)
- A polling wait that can be cancelled and is bounded by a deadline
- Recent stack events for diagnostics
- Template validation
- Stack output capture
"""

import sys
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from stack_provider import (
    NoChangeError,
    NothingToRollBackError,
    ProviderUnreachableError,
    StackBusyError,
    StackEvent,
    StackNotFoundError,
    StackOperationError,
    TemplateValidationError,
    WaitResult,
    WaitState,
)
from stack_status import is_terminal


DEFAULT_POLL_INTERVAL = 5.0

NO_UPDATES_MESSAGE = "No updates are to be performed"

TRANSIENT_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'ServiceUnavailable',
    'InternalFailure',
    'RequestExpired',
    'ExpiredToken',
    'ExpiredTokenException',
})


@dataclass
class StackOutput:
    """Represents a CloudFormation stack output."""
    output_key: str
    output_value: str
    description: Optional[str] = None
    export_name: Optional[str] = None


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', '')


def _error_message(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Message', '')


def _is_not_found(e: ClientError) -> bool:
    return _error_code(e) == 'ValidationError' and 'does not exist' in _error_message(e)


class CloudFormationProvider:
    """Stack provider for a single AWS region."""

    def __init__(
        self,
        region: str,
        cloudformation_client=None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the provider.

        Args:
            region: AWS region the stacks live in
            cloudformation_client: Optional boto3 CloudFormation client for testing.
                If None, creates a new client for the region.
            poll_interval: Seconds between status polls while waiting
            clock: Monotonic clock used for wait deadlines
        """
        self.region = region
        self.cfn_client = cloudformation_client or boto3.client('cloudformation', region_name=region)
        self.poll_interval = poll_interval
        self._clock = clock

    def get_status(self, name: str) -> str:
        """
        Get the raw status of a stack.

        Raises:
            StackNotFoundError: If the stack does not exist
            ProviderUnreachableError: If the query fails for any other reason
        """
        try:
            response = self.cfn_client.describe_stacks(StackName=name)
        except ClientError as e:
            if _is_not_found(e):
                raise StackNotFoundError(f"Stack {name} does not exist") from e
            raise ProviderUnreachableError(
                f"Failed to describe stack {name}: {_error_code(e)} - {_error_message(e)}"
            ) from e
        except BotoCoreError as e:
            raise ProviderUnreachableError(f"Failed to describe stack {name}: {str(e)}") from e

        stacks = response.get('Stacks', [])
        if not stacks:
            raise StackNotFoundError(f"Stack {name} does not exist")
        return stacks[0]['StackStatus']

    def create(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        capabilities: Sequence[str],
        tags: Dict[str, str]
    ) -> str:
        """Issue create_stack and return the new stack ID."""
        kwargs = self._stack_arguments(name, template_body, parameters, capabilities, tags)
        response = self._mutate('create', name, lambda: self.cfn_client.create_stack(**kwargs))
        return response.get('StackId', name)

    def update(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        capabilities: Sequence[str],
        tags: Dict[str, str]
    ) -> str:
        """
        Issue update_stack and return the stack ID.

        Raises:
            NoChangeError: If CloudFormation reports there is nothing to update
        """
        kwargs = self._stack_arguments(name, template_body, parameters, capabilities, tags)
        response = self._mutate('update', name, lambda: self.cfn_client.update_stack(**kwargs))
        return response.get('StackId', name)

    def delete(self, name: str) -> None:
        self._mutate('delete', name, lambda: self.cfn_client.delete_stack(StackName=name))

    def continue_rollback(self, name: str) -> None:
        """
        Roll a failed update back to the last stable state.

        UPDATE_FAILED (an update run with rollback disabled) needs rollback_stack;
        a stuck UPDATE_ROLLBACK_FAILED needs continue_update_rollback.

        Raises:
            NothingToRollBackError: If the stack is not in a state that can be rolled back
            StackBusyError: If another operation is running on the stack
        """
        if self.get_status(name) == 'UPDATE_FAILED':
            rollback = self.cfn_client.rollback_stack
        else:
            rollback = self.cfn_client.continue_update_rollback

        try:
            self._mutate('continue rollback', name, lambda: rollback(StackName=name))
        except NoChangeError as e:
            raise NothingToRollBackError(str(e)) from e
        except StackBusyError:
            raise
        except (TemplateValidationError, StackOperationError) as e:
            message = str(e)
            if 'ROLLBACK_COMPLETE' in message:
                raise NothingToRollBackError(message) from e
            raise StackOperationError(message) from e

    def wait_for(
        self,
        name: str,
        target_statuses: Set[str],
        timeout: float,
        cancel_event: Optional[threading.Event] = None
    ) -> WaitResult:
        """
        Poll the stack until no operation is in progress.

        The wait ends at the first terminal status (returned whether or not it
        is in target_statuses), when the deadline passes, or as soon as
        cancel_event is set. Cancelling only abandons the wait; the operation
        keeps running in CloudFormation.

        Args:
            name: Stack name
            target_statuses: Statuses that mean success (used for logging only)
            timeout: Seconds to wait before giving up
            cancel_event: Optional event that aborts the wait when set

        Returns:
            WaitResult with the terminal status, TIMED_OUT or CANCELLED
        """
        cancel_event = cancel_event or threading.Event()
        deadline = self._clock() + timeout
        last_status: Optional[str] = None

        while True:
            if cancel_event.is_set():
                return WaitResult(state=WaitState.CANCELLED, status=last_status)

            try:
                last_status = self.get_status(name)
            except StackNotFoundError:
                return WaitResult(state=WaitState.REACHED, status='DELETE_COMPLETE')
            except ProviderUnreachableError as e:
                print(f"Warning: status poll for {name} failed: {str(e)}", file=sys.stderr)

            if last_status is not None and is_terminal(last_status):
                if target_statuses and last_status not in target_statuses:
                    print(f"Stack {name} reached {last_status}, expected one of "
                          f"{', '.join(sorted(target_statuses))}", file=sys.stderr)
                return WaitResult(state=WaitState.REACHED, status=last_status)

            remaining = deadline - self._clock()
            if remaining <= 0:
                return WaitResult(state=WaitState.TIMED_OUT, status=last_status)

            print(f"  {name}: {last_status or 'UNKNOWN'}")
            if cancel_event.wait(min(self.poll_interval, remaining)):
                return WaitResult(state=WaitState.CANCELLED, status=last_status)

    def recent_events(self, name: str, count: int) -> List[StackEvent]:
        """
        Get the most recent stack events, newest first.

        Raises:
            StackNotFoundError: If the stack does not exist
            ProviderUnreachableError: If the query fails
        """
        events: List[StackEvent] = []
        try:
            paginator = self.cfn_client.get_paginator('describe_stack_events')
            for page in paginator.paginate(StackName=name):
                for event in page['StackEvents']:
                    timestamp = event.get('Timestamp')
                    events.append(StackEvent(
                        timestamp=timestamp.isoformat() if hasattr(timestamp, 'isoformat') else str(timestamp),
                        resource_id=event.get('LogicalResourceId', ''),
                        status=event.get('ResourceStatus', ''),
                        reason=event.get('ResourceStatusReason'),
                        resource_type=event.get('ResourceType')
                    ))
                    if len(events) >= count:
                        return events
        except ClientError as e:
            if _is_not_found(e):
                raise StackNotFoundError(f"Stack {name} does not exist") from e
            raise ProviderUnreachableError(
                f"Failed to describe events for {name}: {_error_code(e)} - {_error_message(e)}"
            ) from e
        except BotoCoreError as e:
            raise ProviderUnreachableError(f"Failed to describe events for {name}: {str(e)}") from e

        return events

    def validate_template(self, template_body: str) -> None:
        """
        Validate a template body with CloudFormation.

        Raises:
            TemplateValidationError: If the template is rejected
            ProviderUnreachableError: If the validation call fails
        """
        try:
            self.cfn_client.validate_template(TemplateBody=template_body)
        except ClientError as e:
            if _error_code(e) == 'ValidationError':
                raise TemplateValidationError(
                    f"Template validation failed: {_error_message(e)}",
                    details=_error_message(e)
                ) from e
            raise ProviderUnreachableError(
                f"Template validation call failed: {_error_code(e)} - {_error_message(e)}"
            ) from e
        except BotoCoreError as e:
            raise ProviderUnreachableError(f"Template validation call failed: {str(e)}") from e

    def get_outputs(self, name: str) -> List[StackOutput]:
        """
        Query CloudFormation for stack outputs.

        Args:
            name: Name of the CloudFormation stack

        Returns:
            List of StackOutput objects (empty if the stack has none or does not exist)
        """
        try:
            response = self.cfn_client.describe_stacks(StackName=name)
        except ClientError as e:
            if _is_not_found(e):
                return []
            raise ProviderUnreachableError(
                f"Failed to describe stack {name}: {_error_code(e)} - {_error_message(e)}"
            ) from e

        if not response.get('Stacks'):
            return []

        return [
            StackOutput(
                output_key=output['OutputKey'],
                output_value=output['OutputValue'],
                description=output.get('Description'),
                export_name=output.get('ExportName')
            )
            for output in response['Stacks'][0].get('Outputs', [])
        ]

    @staticmethod
    def _stack_arguments(
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        capabilities: Sequence[str],
        tags: Dict[str, str]
    ) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'StackName': name,
            'TemplateBody': template_body,
            'Parameters': [
                {'ParameterKey': key, 'ParameterValue': value}
                for key, value in parameters.items()
            ],
            'Tags': [{'Key': key, 'Value': value} for key, value in tags.items()],
        }
        if capabilities:
            kwargs['Capabilities'] = list(capabilities)
        return kwargs

    @staticmethod
    def _mutate(operation: str, name: str, call: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        """Run a mutating call and translate boto errors to provider errors."""
        try:
            return call() or {}
        except ClientError as e:
            code = _error_code(e)
            message = _error_message(e)
            if code == 'ValidationError':
                if NO_UPDATES_MESSAGE in message:
                    raise NoChangeError(message) from e
                if 'does not exist' in message:
                    raise StackNotFoundError(message) from e
                if 'state and can not be' in message:
                    if 'IN_PROGRESS' in message:
                        raise StackBusyError(message) from e
                    raise StackOperationError(message) from e
                raise TemplateValidationError(message, details=message) from e
            if code in TRANSIENT_ERROR_CODES:
                raise ProviderUnreachableError(
                    f"Failed to {operation} stack {name}: {code} - {message}"
                ) from e
            raise StackOperationError(
                f"Failed to {operation} stack {name}: {code} - {message}"
            ) from e
        except BotoCoreError as e:
            raise ProviderUnreachableError(f"Failed to {operation} stack {name}: {str(e)}") from e
