"""
Unified error system for TaskGrid.

Every error raised by the scheduling engine derives from ``TaskGridException``
and carries an ``ErrorContext``:
- a category and severity for routing and logging
- an HTTP status used by the API layer
- a user-facing message and recovery suggestions

Each subclass declares its defaults as class attributes; anything left unset
falls back to the policy of its category.  Plain exceptions coming from
collaborators (agent pools, dispatch sinks) are converted with
``create_error_context`` before they are reported.
"""

import sys
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple


# ============================================================================
# Enums & Policy
# ============================================================================

class ErrorSeverity(Enum):
    CRITICAL = "critical"      # Scheduler cannot continue
    ERROR = "error"            # Operation failed, task or agent impacted
    WARNING = "warning"        # Caller mistake or expected rejection
    INFO = "info"


class ErrorCategory(Enum):
    VALIDATION = "validation"           # Task config failed structural checks
    STATE = "state"                     # Illegal lifecycle transition
    DEPENDENCY = "dependency"           # Missing or cyclic dependencies
    NOT_FOUND = "not_found"             # Unknown task or agent id
    DISPATCH = "dispatch"               # Agent refused or failed the hand-off
    TIMEOUT = "timeout"
    RESOURCE = "resource"               # No agent capacity
    INTERNAL = "internal"


class CategoryPolicy(NamedTuple):
    http_status: int
    severity: ErrorSeverity
    user_message: str
    suggestions: Tuple[str, ...] = ()


CATEGORY_POLICY: Dict[ErrorCategory, CategoryPolicy] = {
    ErrorCategory.VALIDATION: CategoryPolicy(
        400, ErrorSeverity.WARNING,
        "The task configuration is invalid. Please check and try again.",
        ("Check the task title and description", "Review error details"),
    ),
    ErrorCategory.STATE: CategoryPolicy(
        409, ErrorSeverity.WARNING,
        "The task cannot move to that state right now.",
        ("Fetch the task to see its current status",),
    ),
    ErrorCategory.DEPENDENCY: CategoryPolicy(
        409, ErrorSeverity.WARNING,
        "The task dependencies cannot be satisfied.",
        ("Create the missing dependency tasks", "Remove the dependency that closes the cycle"),
    ),
    ErrorCategory.NOT_FOUND: CategoryPolicy(
        404, ErrorSeverity.WARNING,
        "The requested task or agent does not exist.",
    ),
    ErrorCategory.DISPATCH: CategoryPolicy(
        502, ErrorSeverity.ERROR,
        "The agent did not accept the task. It has been requeued.",
        ("Check agent status", "Retry the assignment"),
    ),
    ErrorCategory.TIMEOUT: CategoryPolicy(
        504, ErrorSeverity.ERROR,
        "The operation took too long. Please try again.",
    ),
    ErrorCategory.RESOURCE: CategoryPolicy(
        507, ErrorSeverity.ERROR,
        "No agent has spare capacity right now.",
        ("Wait for an agent to become idle", "Register another agent"),
    ),
    ErrorCategory.INTERNAL: CategoryPolicy(
        500, ErrorSeverity.ERROR,
        "An error occurred. Please try again.",
        ("Please try again",),
    ),
}

# Builtin exception families, checked in order
_BUILTIN_CATEGORIES: Tuple[Tuple[Any, ErrorCategory], ...] = (
    (TimeoutError, ErrorCategory.TIMEOUT),
    (ConnectionError, ErrorCategory.DISPATCH),
    (LookupError, ErrorCategory.NOT_FOUND),
    ((ValueError, TypeError), ErrorCategory.VALIDATION),
    (MemoryError, ErrorCategory.RESOURCE),
    (RuntimeError, ErrorCategory.DISPATCH),
)


# ============================================================================
# Error context
# ============================================================================

@dataclass
class ErrorContext:
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    user_message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    http_status: int = 500
    recovery_suggestions: List[str] = field(default_factory=list)

    @classmethod
    def for_category(cls, category: ErrorCategory, message: str, **overrides: Any) -> "ErrorContext":
        """Build a context from *category*'s policy, then apply *overrides*."""
        policy = CATEGORY_POLICY[category]
        values: Dict[str, Any] = {
            "category": category,
            "message": message,
            "severity": policy.severity,
            "http_status": policy.http_status,
            "user_message": policy.user_message,
            "recovery_suggestions": list(policy.suggestions),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_api_response(self) -> Dict[str, Any]:
        """JSON-safe view for HTTP responses; never includes the stack trace."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
            "recovery_suggestions": list(self.recovery_suggestions),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_api_response()
        data["stack_trace"] = self.stack_trace
        return data


# ============================================================================
# Base exception
# ============================================================================

class TaskGridException(Exception):
    """Base exception for all TaskGrid errors.

    Subclasses override the class attributes below; ``None`` means "use the
    category policy".
    """

    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: Optional[ErrorSeverity] = None
    http_status: Optional[int] = None
    is_recoverable: bool = True

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        *,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        http_status: Optional[int] = None,
        is_recoverable: Optional[bool] = None,
        user_message: Optional[str] = None,
        recovery_suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})
        self.context = ErrorContext.for_category(
            category or self.category,
            message,
            severity=severity or self.severity,
            http_status=http_status or self.http_status,
            is_recoverable=self.is_recoverable if is_recoverable is None else is_recoverable,
            user_message=user_message,
            recovery_suggestions=recovery_suggestions,
            details=self.details,
            stack_trace=_active_traceback(),
        )
        # Instance attributes mirror the resolved context
        self.category = self.context.category
        self.severity = self.context.severity
        self.http_status = self.context.http_status
        self.is_recoverable = self.context.is_recoverable

    @property
    def user_message(self) -> str:
        return self.context.user_message

    @property
    def recovery_suggestions(self) -> List[str]:
        return self.context.recovery_suggestions

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return self.context.to_dict()

    def to_api_response(self) -> Dict[str, Any]:
        return self.context.to_api_response()


# ============================================================================
# Validation
# ============================================================================

class ValidationError(TaskGridException):
    category = ErrorCategory.VALIDATION


class TaskValidationError(ValidationError):
    """A task configuration failed structural validation.

    ``issues`` holds the individual ``ValidationIssue`` records so callers can
    render them field by field.
    """

    def __init__(self, message: str, issues: Optional[List[Any]] = None, **kwargs: Any):
        self.issues = list(issues or [])
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("issues", [_issue_to_dict(i) for i in self.issues])
        super().__init__(message, details, **kwargs)


# ============================================================================
# Tasks
# ============================================================================

class TaskError(TaskGridException):
    pass


class TaskNotFoundError(TaskError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, task_id: str, **kwargs: Any):
        self.task_id = task_id
        super().__init__(f"Task {task_id!r} not found", {"task_id": task_id}, **kwargs)


class InvalidTransitionError(TaskError):
    """A lifecycle change was rejected (state machine or API guard)."""

    category = ErrorCategory.STATE

    def __init__(self, message: str, issues: Optional[List[Any]] = None, **kwargs: Any):
        self.issues = list(issues or [])
        details = dict(kwargs.pop("details", None) or {})
        details.setdefault("issues", [_issue_to_dict(i) for i in self.issues])
        super().__init__(message, details, **kwargs)


# ============================================================================
# Agents
# ============================================================================

class AgentError(TaskGridException):
    pass


class AgentNotFoundError(AgentError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, agent_id: str, **kwargs: Any):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id!r} not found", {"agent_id": agent_id}, **kwargs)


class DispatchError(AgentError):
    """The agent pool refused or failed to accept a task hand-off."""

    category = ErrorCategory.DISPATCH


# ============================================================================
# Scheduling
# ============================================================================

class SchedulerError(TaskGridException):
    pass


class DependencyResolutionError(SchedulerError):
    category = ErrorCategory.DEPENDENCY


class CycleDetectedError(DependencyResolutionError):
    """Adding an edge would close a dependency cycle."""

    def __init__(self, cycle: List[str], **kwargs: Any):
        self.cycle = list(cycle)
        super().__init__(
            "Dependency cycle detected: " + " -> ".join(self.cycle),
            {"cycle": list(self.cycle)},
            **kwargs,
        )


# ============================================================================
# Utility Functions
# ============================================================================

def _active_traceback() -> Optional[str]:
    """Traceback of the exception currently being handled, if any."""
    if sys.exc_info()[0] is None:
        return None
    return traceback.format_exc()


def _format_traceback(error: BaseException) -> Optional[str]:
    if error.__traceback__ is None:
        return None
    return "".join(traceback.format_exception(type(error), error, error.__traceback__))


def _issue_to_dict(issue: Any) -> Any:
    to_dict = getattr(issue, "to_dict", None)
    return to_dict() if callable(to_dict) else issue


def categorize(error: BaseException) -> ErrorCategory:
    """Category for an arbitrary exception."""
    if isinstance(error, TaskGridException):
        return error.category
    for types, category in _BUILTIN_CATEGORIES:
        if isinstance(error, types):
            return category
    return ErrorCategory.INTERNAL


def create_error_context(
    error: BaseException,
    category: Optional[ErrorCategory] = None,
    severity: Optional[ErrorSeverity] = None,
    is_recoverable: bool = True,
    http_status: Optional[int] = None,
) -> ErrorContext:
    """Context for *error*; TaskGrid errors already carry one."""
    if isinstance(error, TaskGridException):
        return error.context
    return ErrorContext.for_category(
        category or categorize(error),
        str(error),
        severity=severity,
        http_status=http_status,
        is_recoverable=is_recoverable,
        stack_trace=_format_traceback(error),
    )


def get_exception_hierarchy() -> Dict[str, List[str]]:
    """Direct TaskGrid subclasses keyed by parent class name."""
    hierarchy: Dict[str, List[str]] = {}
    for name, obj in vars(sys.modules[__name__]).items():
        if not (isinstance(obj, type) and issubclass(obj, TaskGridException)):
            continue
        for base in obj.__bases__:
            if issubclass(base, TaskGridException):
                hierarchy.setdefault(base.__name__, []).append(name)
    return hierarchy


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "CategoryPolicy",
    "CATEGORY_POLICY",
    "ErrorContext",
    "TaskGridException",
    "ValidationError",
    "TaskValidationError",
    "TaskError",
    "TaskNotFoundError",
    "InvalidTransitionError",
    "AgentError",
    "AgentNotFoundError",
    "DispatchError",
    "SchedulerError",
    "DependencyResolutionError",
    "CycleDetectedError",
    "categorize",
    "create_error_context",
    "get_exception_hierarchy",
]
