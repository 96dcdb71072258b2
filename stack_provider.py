"""
Collaborator interfaces consumed by the stack reconciler.

The reconciler never talks to CloudFormation directly. It calls objects that
satisfy the protocols below; cloudformation_provider.CloudFormationProvider is
the boto3-backed implementation and the test suite uses an in-memory fake.
A provider is bound to a single region when it is constructed.
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Protocol, Sequence, Set


class StackProviderError(Exception):
    """Base class for errors raised by stack providers."""
    pass


class StackNotFoundError(StackProviderError):
    """Raised when no stack exists under the requested name."""
    pass


class ProviderUnreachableError(StackProviderError):
    """Raised for transient failures (network, throttling, credentials)."""
    pass


class NoChangeError(StackProviderError):
    """Raised by update when the computed change set is empty."""
    pass


class NothingToRollBackError(StackProviderError):
    """Raised by continue_rollback when the stack has nothing left to roll back."""
    pass


class TemplateValidationError(StackProviderError):
    """Raised when a template or its parameters are rejected."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.details = details or message


class StackOperationError(StackProviderError):
    """Raised when the provider rejects a mutation for any other reason."""
    pass


class StackBusyError(StackOperationError):
    """Raised when a mutation is rejected because another operation is running on the stack."""
    pass


@dataclass
class StackEvent:
    """A single stack event reported by the provider."""
    timestamp: str  # ISO format datetime string
    resource_id: str
    status: str
    reason: Optional[str] = None
    resource_type: Optional[str] = None


class WaitState(Enum):
    """How a wait ended."""
    REACHED = "reached"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class WaitResult:
    """Result of waiting for a stack operation to finish."""
    state: WaitState
    status: Optional[str] = None


class StatusProvider(Protocol):
    def get_status(self, name: str) -> str:
        ...


class StackMutator(Protocol):
    def create(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        capabilities: Sequence[str],
        tags: Dict[str, str]
    ) -> str:
        ...

    def update(
        self,
        name: str,
        template_body: str,
        parameters: Dict[str, str],
        capabilities: Sequence[str],
        tags: Dict[str, str]
    ) -> str:
        ...

    def delete(self, name: str) -> None:
        ...

    def continue_rollback(self, name: str) -> None:
        ...


class StackWaiter(Protocol):
    def wait_for(
        self,
        name: str,
        target_statuses: Set[str],
        timeout: float,
        cancel_event: Optional[threading.Event] = None
    ) -> WaitResult:
        ...


class DiagnosticsProvider(Protocol):
    def recent_events(self, name: str, count: int) -> List[StackEvent]:
        ...


class TemplateValidator(Protocol):
    def validate_template(self, template_body: str) -> None:
        ...


class StackProvider(
    StatusProvider,
    StackMutator,
    StackWaiter,
    DiagnosticsProvider,
    TemplateValidator,
    Protocol
):
    """Everything the reconciler needs from a single provider object."""
    pass
