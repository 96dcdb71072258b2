"""
Stack lifecycle reconciliation.

This module provides the engine every deployment script shares:
- Fetch the current stack status fresh from the provider
- Decide the lifecycle action (create, update, continue-rollback, delete,
  wait, or refuse) from the status category
- Drive the action to a terminal state with a bounded, cancellable wait
- Report a typed outcome with diagnostic events attached on failure
"""

import sys
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, TypeVar

from stack_provider import (
    NoChangeError,
    NothingToRollBackError,
    ProviderUnreachableError,
    StackBusyError,
    StackEvent,
    StackNotFoundError,
    StackProvider,
    StackProviderError,
    TemplateValidationError,
    WaitResult,
    WaitState,
)
from stack_status import (
    NOT_EXISTS,
    StackStatus,
    UnknownStackStatusError,
    classify,
    is_terminal,
)


T = TypeVar('T')

MANAGED_BY = "stack-reconciler"

DEFAULT_WAIT_TIMEOUT = 3600.0
DEFAULT_READ_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 2.0
DEFAULT_MAX_DISPATCHES = 4
DEFAULT_EVENT_COUNT = 10

CREATE_TARGETS = frozenset({"CREATE_COMPLETE"})
UPDATE_TARGETS = frozenset({"UPDATE_COMPLETE"})
DELETE_TARGETS = frozenset({"DELETE_COMPLETE", NOT_EXISTS})
ROLLBACK_TARGETS = frozenset({"UPDATE_ROLLBACK_COMPLETE", "IMPORT_ROLLBACK_COMPLETE"})


class OutcomeKind(Enum):
    """Result of one reconciliation attempt."""
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FailureReason(Enum):
    """Why a reconciliation attempt failed."""
    PROVIDER_UNREACHABLE = "ProviderUnreachable"
    CONCURRENT_OPERATION = "ConcurrentOperation"
    VALIDATION_FAILED = "ValidationFailed"
    OPERATION_FAILED = "OperationFailed"
    REQUIRES_MANUAL_INTERVENTION = "RequiresManualIntervention"


SUCCESSFUL_KINDS = frozenset({
    OutcomeKind.CREATED,
    OutcomeKind.UPDATED,
    OutcomeKind.UNCHANGED,
    OutcomeKind.DELETED,
    OutcomeKind.ROLLED_BACK,
    OutcomeKind.SKIPPED,
})


@dataclass(frozen=True)
class StackSpec:
    """Immutable description of a deployable stack."""
    name: str
    template_body: str
    parameters: Dict[str, str] = field(default_factory=dict)
    capabilities: Tuple[str, ...] = ()
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconcileOptions:
    """Caller-supplied policy for a single reconcile, delete or rollback call."""
    dry_run: bool = False
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT  # seconds, across the whole call
    force_delete_on_failure: bool = False
    wait_for_in_progress: bool = False
    confirmed: bool = False
    cancel_event: Optional[threading.Event] = None


@dataclass
class ReconciliationOutcome:
    """Outcome of reconciling, deleting or rolling back one stack."""
    stack_name: str
    kind: OutcomeKind
    status: Optional[str] = None  # last observed raw status
    duration_seconds: float = 0.0
    reason: Optional[FailureReason] = None
    message: Optional[str] = None
    events: List[StackEvent] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.kind in SUCCESSFUL_KINDS

    @property
    def halts_rollout(self) -> bool:
        """True if dependent stacks must not be deployed after this outcome."""
        return self.kind in (OutcomeKind.FAILED, OutcomeKind.CANCELLED)


class InFlightRegistry:
    """Process-level set of stack names with a reconciliation in flight."""

    def __init__(self):
        self._lock = threading.Lock()
        self._names: Set[str] = set()

    def acquire(self, name: str) -> bool:
        with self._lock:
            if name in self._names:
                return False
            self._names.add(name)
            return True

    def release(self, name: str) -> None:
        with self._lock:
            self._names.discard(name)

    def is_in_flight(self, name: str) -> bool:
        with self._lock:
            return name in self._names


class StackReconciler:
    """Drives stacks to the desired state through a StackProvider."""

    def __init__(
        self,
        provider: StackProvider,
        project: str,
        environment: str,
        deployed_by: str = MANAGED_BY,
        read_attempts: int = DEFAULT_READ_ATTEMPTS,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_dispatches: int = DEFAULT_MAX_DISPATCHES,
        event_count: int = DEFAULT_EVENT_COUNT,
        registry: Optional[InFlightRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the reconciler.

        Args:
            provider: Status, mutation, wait, diagnostics and validation provider
            project: Project name attached to every created or updated stack
            environment: Environment name attached to every created or updated stack
            deployed_by: Name of the calling script, recorded in the DeployedBy tag
            read_attempts: Attempts for read operations before giving up
            retry_base_delay: First backoff delay in seconds, doubled per attempt
            max_dispatches: Upper bound on status re-fetch and re-dispatch cycles
            event_count: Number of recent events attached to failed outcomes
            registry: Shared in-flight registry (a private one is created if None)
            sleep: Sleep function used between read retries
            clock: Monotonic clock used for deadlines and durations
        """
        if read_attempts < 1:
            raise ValueError("read_attempts must be at least 1")
        if max_dispatches < 1:
            raise ValueError("max_dispatches must be at least 1")

        self.provider = provider
        self.project = project
        self.environment = environment
        self.deployed_by = deployed_by
        self.read_attempts = read_attempts
        self.retry_base_delay = retry_base_delay
        self.max_dispatches = max_dispatches
        self.event_count = event_count
        self.registry = registry or InFlightRegistry()
        self._sleep = sleep
        self._clock = clock

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def reconcile(
        self,
        spec: StackSpec,
        options: Optional[ReconcileOptions] = None
    ) -> ReconciliationOutcome:
        """
        Bring a stack to the state described by spec.

        The status is fetched fresh, the action is chosen from its category
        and the resulting operation is waited on until it reaches a terminal
        state, times out or is cancelled.

        Args:
            spec: Desired stack
            options: Dry-run, timeout, failure and cancellation policy

        Returns:
            ReconciliationOutcome describing what happened
        """
        options = options or ReconcileOptions()
        return self._exclusive(spec.name, lambda started: self._reconcile(spec, options, started))

    def delete(
        self,
        name: str,
        options: Optional[ReconcileOptions] = None
    ) -> ReconciliationOutcome:
        """
        Delete a stack and wait until it is gone.

        Deletion requires options.confirmed. Failures are reported with
        diagnostic events and are never retried.

        Args:
            name: Stack name
            options: Confirmation, dry-run, timeout and cancellation policy

        Returns:
            ReconciliationOutcome (DELETED, UNCHANGED if absent, SKIPPED if
            unconfirmed or dry run, FAILED or CANCELLED otherwise)
        """
        options = options or ReconcileOptions()
        return self._exclusive(name, lambda started: self._delete(name, options, started))

    def rollback(
        self,
        name: str,
        options: Optional[ReconcileOptions] = None
    ) -> ReconciliationOutcome:
        """
        Return a failed stack to a stable state.

        Stacks whose update or update-rollback failed get a continue-rollback.
        Stacks already rolling back are waited on. Stacks whose creation failed
        can only be deleted, which happens when options.force_delete_on_failure
        is set. Any other state is left alone.

        Args:
            name: Stack name
            options: Force, dry-run, timeout and cancellation policy

        Returns:
            ReconciliationOutcome (ROLLED_BACK, DELETED, UNCHANGED, SKIPPED,
            FAILED or CANCELLED)
        """
        options = options or ReconcileOptions()
        return self._exclusive(name, lambda started: self._rollback(name, options, started))

    def fetch_status(self, name: str) -> Optional[str]:
        """
        Fetch the raw status of a stack, retrying transient failures.

        Args:
            name: Stack name

        Returns:
            Raw status string, or None if the stack does not exist

        Raises:
            ProviderUnreachableError: If every attempt failed
        """
        def read() -> Optional[str]:
            try:
                return self.provider.get_status(name)
            except StackNotFoundError:
                return None

        return self._read_with_retry(read, f"status of stack {name}")

    def provenance_tags(self, spec: StackSpec) -> Dict[str, str]:
        """Tags applied on every mutation; provenance keys override the StackSpec tags."""
        tags = dict(spec.tags)
        tags.update({
            'Project': self.project,
            'Environment': self.environment,
            'ManagedBy': MANAGED_BY,
            'DeployedBy': self.deployed_by,
        })
        return tags

    @staticmethod
    def classify(raw_status: Optional[str]) -> StackStatus:
        return classify(raw_status)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _exclusive(
        self,
        name: str,
        action: Callable[[float], ReconciliationOutcome]
    ) -> ReconciliationOutcome:
        started = self._clock()
        if not self.registry.acquire(name):
            return self._failure(
                name, started, FailureReason.CONCURRENT_OPERATION,
                "Another operation on this stack is already in flight in this process"
            )
        try:
            return action(started)
        finally:
            self.registry.release(name)

    def _observe(
        self,
        name: str,
        started: float
    ) -> Tuple[Optional[str], Optional[StackStatus], Optional[ReconciliationOutcome]]:
        """Fetch and classify; on error return a failed outcome instead."""
        try:
            raw = self.fetch_status(name)
        except ProviderUnreachableError as e:
            return None, None, self._failure(
                name, started, FailureReason.PROVIDER_UNREACHABLE,
                f"Unable to fetch stack status: {str(e)}"
            )

        try:
            status = classify(raw)
        except UnknownStackStatusError as e:
            return raw, None, self._failure(
                name, started, FailureReason.OPERATION_FAILED, str(e),
                status=raw, diagnose=True
            )

        print(f"Stack {name}: {raw or NOT_EXISTS} ({status.value})")
        return raw, status, None

    def _reconcile(
        self,
        spec: StackSpec,
        options: ReconcileOptions,
        started: float
    ) -> ReconciliationOutcome:
        name = spec.name
        # create (True) or update (False) whose request may have reached the
        # provider before a transient error was raised
        issued: Optional[bool] = None

        for _ in range(self.max_dispatches):
            raw, status, failed = self._observe(name, started)
            if failed:
                return failed

            if issued is not None and status is StackStatus.IN_PROGRESS:
                operation = "create" if issued else "update"
                print(f"Stack {name} is in {raw}; waiting for the issued {operation} to complete...")
                return self._await_mutation(name, options, started, create=issued)

            if issued and raw in CREATE_TARGETS:
                # the issued create completed before the re-fetch
                return self._outcome(name, started, OutcomeKind.CREATED, status=raw)

            if status is StackStatus.ABSENT:
                outcome = self._apply(spec, options, started, raw, create=True)
                if outcome is None:
                    issued = True

            elif status is StackStatus.STABLE and not is_terminal(raw) and not options.dry_run:
                print(f"Stack {name} is in {raw}, waiting for it to settle before updating...")
                outcome = self._wait_then_redispatch(name, options, started)

            elif status is StackStatus.STABLE:
                outcome = self._apply(spec, options, started, raw, create=False)
                if outcome is None:
                    issued = False

            elif status is StackStatus.IN_PROGRESS:
                if not options.wait_for_in_progress:
                    return self._failure(
                        name, started, FailureReason.CONCURRENT_OPERATION,
                        f"Stack is currently being modified ({raw}); wait for the "
                        f"current operation to complete", status=raw
                    )
                print(f"Waiting for in-progress operation on {name} to finish...")
                outcome = self._wait_then_redispatch(name, options, started)

            elif status is StackStatus.ROLLBACK_IN_PROGRESS:
                print(f"Rollback in progress on {name}, waiting for it to finish...")
                outcome = self._wait_then_redispatch(name, options, started)

            elif status in (StackStatus.UPDATE_FAILED, StackStatus.ROLLBACK_FAILED):
                outcome = self._continue_rollback(name, spec, options, started, raw)
                if outcome and outcome.kind is OutcomeKind.ROLLED_BACK:
                    # the stack is usable again but the requested template was not applied
                    outcome.kind = OutcomeKind.FAILED
                    outcome.reason = FailureReason.OPERATION_FAILED
                    outcome.message = (
                        f"Previous update failed and was rolled back to the last stable "
                        f"state ({outcome.status}); the requested template was not applied"
                    )
                    outcome.events = self._recent_events(name)

            else:
                if not options.force_delete_on_failure:
                    return self._failure(
                        name, started, FailureReason.REQUIRES_MANUAL_INTERVENTION,
                        f"Stack is in {raw} and requires manual deletion",
                        status=raw, diagnose=True
                    )
                if options.dry_run:
                    return self._dry_run(name, spec, started, raw, "delete and recreate")
                print(f"Stack {name} is in {raw}; deleting before recreating")
                outcome = self._delete_and_wait(name, options, started)
                if outcome.kind is OutcomeKind.DELETED:
                    outcome = None

            if outcome is not None:
                return outcome

        return self._failure(
            name, started, FailureReason.OPERATION_FAILED,
            f"Stack did not converge after {self.max_dispatches} attempt(s)",
            diagnose=True
        )

    def _delete(
        self,
        name: str,
        options: ReconcileOptions,
        started: float
    ) -> ReconciliationOutcome:
        for _ in range(self.max_dispatches):
            raw, status, failed = self._observe(name, started)
            if failed:
                return failed

            if status is StackStatus.ABSENT:
                return self._outcome(
                    name, started, OutcomeKind.UNCHANGED, status=NOT_EXISTS,
                    message="Stack does not exist"
                )

            if not options.confirmed:
                return self._outcome(
                    name, started, OutcomeKind.SKIPPED, status=raw,
                    message="Deletion not confirmed"
                )

            if status in (StackStatus.IN_PROGRESS, StackStatus.ROLLBACK_IN_PROGRESS):
                if not options.wait_for_in_progress:
                    return self._failure(
                        name, started, FailureReason.CONCURRENT_OPERATION,
                        f"Stack is currently being modified ({raw})", status=raw
                    )
                outcome = self._wait_then_redispatch(name, options, started)
                if outcome is not None:
                    return outcome
                continue

            if options.dry_run:
                return self._dry_run(name, None, started, raw, "delete")

            return self._delete_and_wait(name, options, started)

        return self._failure(
            name, started, FailureReason.OPERATION_FAILED,
            f"Stack did not settle after {self.max_dispatches} attempt(s)",
            diagnose=True
        )

    def _rollback(
        self,
        name: str,
        options: ReconcileOptions,
        started: float
    ) -> ReconciliationOutcome:
        for _ in range(self.max_dispatches):
            raw, status, failed = self._observe(name, started)
            if failed:
                return failed

            if status is StackStatus.ROLLBACK_IN_PROGRESS:
                print(f"Rollback already in progress on {name}, waiting...")
                result = self._wait(name, set(ROLLBACK_TARGETS), options, started)
                outcome = self._unfinished_wait(name, started, result, "rollback")
                if outcome:
                    return outcome
                if classify(result.status) is StackStatus.STABLE:
                    return self._outcome(
                        name, started, OutcomeKind.ROLLED_BACK, status=result.status,
                        message="Rollback completed"
                    )
                # ended in another failed state; dispatch on it
                continue

            if status in (StackStatus.UPDATE_FAILED, StackStatus.ROLLBACK_FAILED):
                outcome = self._continue_rollback(name, None, options, started, raw)
                if outcome is not None:
                    return outcome
                continue

            if status is StackStatus.FAILED:
                if not options.force_delete_on_failure:
                    return self._failure(
                        name, started, FailureReason.REQUIRES_MANUAL_INTERVENTION,
                        f"Stack is in {raw}; delete and recreate it",
                        status=raw, diagnose=True
                    )
                if options.dry_run:
                    return self._dry_run(name, None, started, raw, "delete")
                print(f"Force mode: deleting failed stack {name}")
                return self._delete_and_wait(name, options, started)

            return self._outcome(
                name, started, OutcomeKind.SKIPPED, status=raw or NOT_EXISTS,
                message=f"Stack is not in a rollback-eligible state ({raw or NOT_EXISTS})"
            )

        return self._failure(
            name, started, FailureReason.OPERATION_FAILED,
            f"Stack did not settle after {self.max_dispatches} attempt(s)",
            diagnose=True
        )

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _apply(
        self,
        spec: StackSpec,
        options: ReconcileOptions,
        started: float,
        raw: Optional[str],
        create: bool
    ) -> Optional[ReconciliationOutcome]:
        """Create or update; None means the status must be re-fetched."""
        operation = "create" if create else "update"
        name = spec.name

        if options.dry_run:
            return self._dry_run(name, spec, started, raw, operation)
        if self._is_cancelled(options):
            return self._cancelled(name, started, raw)

        tags = self.provenance_tags(spec)
        print(f"{'Creating' if create else 'Updating'} stack {name}...")
        try:
            if create:
                self.provider.create(
                    name, spec.template_body, dict(spec.parameters),
                    list(spec.capabilities), tags
                )
            else:
                self.provider.update(
                    name, spec.template_body, dict(spec.parameters),
                    list(spec.capabilities), tags
                )
        except NoChangeError:
            print(f"No changes detected - stack {name} is up to date")
            return self._outcome(name, started, OutcomeKind.UNCHANGED, status=raw)
        except TemplateValidationError as e:
            return self._failure(
                name, started, FailureReason.VALIDATION_FAILED,
                f"Stack {operation} rejected: {e.details}", status=raw or NOT_EXISTS
            )
        except ProviderUnreachableError as e:
            print(
                f"Warning: {operation} request for {name} failed ({str(e)}); "
                f"re-checking stack status",
                file=sys.stderr
            )
            return None
        except StackBusyError as e:
            return self._busy(name, started, raw, e)
        except StackProviderError as e:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Failed to {operation} stack: {str(e)}",
                status=raw or NOT_EXISTS, diagnose=True
            )

        return self._await_mutation(name, options, started, create)

    def _await_mutation(
        self,
        name: str,
        options: ReconcileOptions,
        started: float,
        create: bool
    ) -> ReconciliationOutcome:
        operation = "create" if create else "update"
        print(f"Waiting for {operation} of {name} to complete...")
        targets = CREATE_TARGETS if create else UPDATE_TARGETS
        result = self._wait(name, set(targets), options, started)
        outcome = self._unfinished_wait(name, started, result, operation)
        if outcome:
            return outcome
        if result.status not in targets:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Stack {operation} failed, stack ended in {result.status}",
                status=result.status, diagnose=True
            )

        print(f"Stack {name} {operation}d successfully")
        kind = OutcomeKind.CREATED if create else OutcomeKind.UPDATED
        return self._outcome(name, started, kind, status=result.status)

    def _continue_rollback(
        self,
        name: str,
        spec: Optional[StackSpec],
        options: ReconcileOptions,
        started: float,
        raw: Optional[str]
    ) -> Optional[ReconciliationOutcome]:
        """Continue a stuck rollback; None means the status must be re-fetched."""
        if options.dry_run:
            return self._dry_run(name, spec, started, raw, "continue rollback")
        if self._is_cancelled(options):
            return self._cancelled(name, started, raw)

        print(f"Stack {name} is in {raw}; continuing rollback...")
        try:
            self.provider.continue_rollback(name)
        except NothingToRollBackError:
            print(f"Stack {name} has nothing to roll back")
            return self._outcome(
                name, started, OutcomeKind.UNCHANGED, status=raw,
                message="Nothing to roll back"
            )
        except ProviderUnreachableError as e:
            print(
                f"Warning: continue-rollback request for {name} failed ({str(e)}); "
                f"re-checking stack status",
                file=sys.stderr
            )
            return None
        except StackBusyError as e:
            return self._busy(name, started, raw, e)
        except StackProviderError as e:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Failed to continue rollback: {str(e)}", status=raw, diagnose=True
            )

        result = self._wait(name, set(ROLLBACK_TARGETS), options, started)
        outcome = self._unfinished_wait(name, started, result, "rollback")
        if outcome:
            return outcome

        if result.status in ROLLBACK_TARGETS:
            print(f"Rollback of {name} completed")
            return self._outcome(
                name, started, OutcomeKind.ROLLED_BACK, status=result.status,
                message="Rollback completed"
            )

        reason = FailureReason.OPERATION_FAILED
        if classify(result.status) is StackStatus.ROLLBACK_FAILED:
            reason = FailureReason.REQUIRES_MANUAL_INTERVENTION
        return self._failure(
            name, started, reason,
            f"Rollback did not complete, stack ended in {result.status}",
            status=result.status, diagnose=True
        )

    def _delete_and_wait(
        self,
        name: str,
        options: ReconcileOptions,
        started: float
    ) -> ReconciliationOutcome:
        if self._is_cancelled(options):
            return self._cancelled(name, started, None)

        print(f"Deleting stack {name}...")
        try:
            self.provider.delete(name)
        except StackNotFoundError:
            return self._outcome(name, started, OutcomeKind.DELETED, status=NOT_EXISTS)
        except ProviderUnreachableError as e:
            return self._failure(
                name, started, FailureReason.PROVIDER_UNREACHABLE,
                f"Failed to request stack deletion: {str(e)}"
            )
        except StackBusyError as e:
            return self._busy(name, started, None, e)
        except StackProviderError as e:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Failed to delete stack: {str(e)}", diagnose=True
            )

        print(f"Waiting for deletion of {name} to complete...")
        result = self._wait(name, set(DELETE_TARGETS), options, started)
        outcome = self._unfinished_wait(name, started, result, "delete")
        if outcome:
            return outcome
        if result.status not in DELETE_TARGETS:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Stack deletion failed, stack ended in {result.status}; inspect "
                f"resources that may block deletion",
                status=result.status, diagnose=True
            )

        print(f"Stack {name} deleted successfully")
        return self._outcome(name, started, OutcomeKind.DELETED, status=NOT_EXISTS)

    def _dry_run(
        self,
        name: str,
        spec: Optional[StackSpec],
        started: float,
        raw: Optional[str],
        action: str
    ) -> ReconciliationOutcome:
        if spec is not None:
            print(f"[DRY RUN] Validating template for {name}")
            try:
                self._read_with_retry(
                    lambda: self.provider.validate_template(spec.template_body),
                    f"template validation for {name}"
                )
            except TemplateValidationError as e:
                return self._failure(
                    name, started, FailureReason.VALIDATION_FAILED,
                    f"Template validation failed: {e.details}", status=raw or NOT_EXISTS
                )
            except ProviderUnreachableError as e:
                return self._failure(
                    name, started, FailureReason.PROVIDER_UNREACHABLE,
                    f"Unable to validate template: {str(e)}", status=raw or NOT_EXISTS
                )

        print(f"[DRY RUN] Would {action} stack {name}")
        return self._outcome(
            name, started, OutcomeKind.SKIPPED, status=raw or NOT_EXISTS,
            message=f"Dry run: would {action}"
        )

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    def _wait(
        self,
        name: str,
        targets: Set[str],
        options: ReconcileOptions,
        started: float
    ) -> WaitResult:
        remaining = options.wait_timeout - (self._clock() - started)
        if remaining <= 0:
            return WaitResult(state=WaitState.TIMED_OUT)
        return self.provider.wait_for(name, targets, remaining, options.cancel_event)

    def _unfinished_wait(
        self,
        name: str,
        started: float,
        result: WaitResult,
        operation: str
    ) -> Optional[ReconciliationOutcome]:
        """Outcome for a cancelled or timed-out wait, None if a terminal status was reached."""
        if result.state is WaitState.CANCELLED:
            return self._cancelled(name, started, result.status)
        if result.state is WaitState.TIMED_OUT:
            return self._failure(
                name, started, FailureReason.OPERATION_FAILED,
                f"Timed out waiting for {operation} to complete",
                status=result.status, diagnose=True
            )
        return None

    def _wait_then_redispatch(
        self,
        name: str,
        options: ReconcileOptions,
        started: float
    ) -> Optional[ReconciliationOutcome]:
        result = self._wait(name, set(), options, started)
        return self._unfinished_wait(name, started, result, "in-progress operation")

    @staticmethod
    def _is_cancelled(options: ReconcileOptions) -> bool:
        return options.cancel_event is not None and options.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Reads and outcomes
    # ------------------------------------------------------------------

    def _read_with_retry(self, read: Callable[[], T], description: str) -> T:
        for attempt in range(1, self.read_attempts + 1):
            try:
                return read()
            except ProviderUnreachableError as e:
                if attempt == self.read_attempts:
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                print(
                    f"Warning: failed to read {description} "
                    f"(attempt {attempt}/{self.read_attempts}): {str(e)}. "
                    f"Retrying in {delay:g}s",
                    file=sys.stderr
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    def _recent_events(self, name: str) -> List[StackEvent]:
        try:
            return list(self._read_with_retry(
                lambda: self.provider.recent_events(name, self.event_count),
                f"events of stack {name}"
            ))
        except StackNotFoundError:
            return []
        except StackProviderError as e:
            print(f"Warning: could not retrieve events for {name}: {str(e)}", file=sys.stderr)
            return []

    def _latest_status(self, name: str, fallback: Optional[str]) -> Optional[str]:
        try:
            raw = self.fetch_status(name)
        except ProviderUnreachableError as e:
            print(f"Warning: could not refresh status for {name}: {str(e)}", file=sys.stderr)
            return fallback
        return raw or NOT_EXISTS

    def _outcome(
        self,
        name: str,
        started: float,
        kind: OutcomeKind,
        status: Optional[str] = None,
        reason: Optional[FailureReason] = None,
        message: Optional[str] = None,
        events: Optional[List[StackEvent]] = None
    ) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            stack_name=name,
            kind=kind,
            status=status,
            duration_seconds=round(self._clock() - started, 3),
            reason=reason,
            message=message,
            events=events or []
        )

    def _failure(
        self,
        name: str,
        started: float,
        reason: FailureReason,
        message: str,
        status: Optional[str] = None,
        diagnose: bool = False
    ) -> ReconciliationOutcome:
        events: List[StackEvent] = []
        if diagnose:
            status = self._latest_status(name, status)
            events = self._recent_events(name)
        print(f"Error: stack {name}: {message}", file=sys.stderr)
        return self._outcome(
            name, started, OutcomeKind.FAILED, status=status,
            reason=reason, message=message, events=events
        )

    def _busy(
        self,
        name: str,
        started: float,
        status: Optional[str],
        error: StackBusyError
    ) -> ReconciliationOutcome:
        return self._failure(
            name, started, FailureReason.CONCURRENT_OPERATION,
            f"Another operation started on the stack: {str(error)}",
            status=self._latest_status(name, status)
        )

    def _cancelled(
        self,
        name: str,
        started: float,
        status: Optional[str]
    ) -> ReconciliationOutcome:
        print(
            f"Wait for stack {name} cancelled; any provider-side operation continues",
            file=sys.stderr
        )
        return self._outcome(
            name, started, OutcomeKind.CANCELLED, status=status,
            message="Cancelled by caller"
        )
