"""
Typed Exception Hierarchy for the Workflow Kernel.

Every error has a TYPED exception class (catch by type, not message), a
class-level ``code`` attribute (machine-readable), and carries its
context as structured attributes.

    WorkflowKernelError (base)
    |
    +-- ConfigurationError
    |   +-- WorkflowConfigurationError
    |   +-- InvalidStateNodeError
    |   +-- UnknownWorkflowTypeError
    |   +-- DuplicateWorkflowError
    |   +-- WorkflowDefinitionError
    |
    +-- TransitionError
    |   +-- InvalidTransitionError
    |       +-- UnknownStateError
    |
    +-- PermissionDeniedError
    |
    +-- ConcurrencyError
    |   +-- WorkflowLockedError
    |
    +-- HookExecutionError
    |
    +-- EngineError
        +-- EngineNotRunningError
        +-- WorkflowNotFoundError
        +-- WorkflowValidationError

Category        | Code                      | When Raised
----------------|---------------------------|-----------------------------------------
Configuration   | WORKFLOW_CONFIGURATION    | Bad workflow class / missing initial state
                | INVALID_STATE_NODE        | add_state() given something else
                | UNKNOWN_WORKFLOW_TYPE     | Engine asked for an unregistered type
                | DUPLICATE_WORKFLOW        | Engine already holds that workflow ID
                | WORKFLOW_DEFINITION       | Declarative definition is invalid
----------------|---------------------------|-----------------------------------------
Transition      | INVALID_TRANSITION        | No passing edge from current to target
                | UNKNOWN_STATE             | Target state is not registered
----------------|---------------------------|-----------------------------------------
Permission      | PERMISSION_DENIED         | User may not act in the target state
----------------|---------------------------|-----------------------------------------
Concurrency     | WORKFLOW_LOCKED           | Another user holds an unexpired lease
----------------|---------------------------|-----------------------------------------
Hooks           | HOOK_EXECUTION_FAILED     | on_enter/on_exit raised; state rolled back
----------------|---------------------------|-----------------------------------------
Engine          | ENGINE_NOT_RUNNING        | create_workflow() before start()
                | WORKFLOW_NOT_FOUND        | Unknown workflow ID
                | WORKFLOW_VALIDATION_FAILED| Current state validators reported errors

Handling patterns:

    try:
        await workflow.transition_with_permission_check("done", user, org)
    except WorkflowLockedError as e:
        schedule_retry(after=e.retry_after_seconds)
    except PermissionDeniedError as e:
        show_forbidden(e.state_name)

Transition, permission and lock errors leave the workflow unchanged. No
error is retried by the kernel; retry is the caller's decision.
"""


class WorkflowKernelError(Exception):
    """
    Base exception for all workflow kernel errors.

    All subclasses must have a ``code`` class attribute for
    machine-readable error identification.
    """

    code: str = "WORKFLOW_KERNEL_ERROR"


# Configuration errors


class ConfigurationError(WorkflowKernelError):
    """Base exception for setup-time errors. Not recoverable at runtime."""

    code: str = "CONFIGURATION_ERROR"


class WorkflowConfigurationError(ConfigurationError):
    """Workflow class or instance is not usable as configured."""

    code: str = "WORKFLOW_CONFIGURATION"

    def __init__(self, workflow_type: str, reason: str):
        self.workflow_type = workflow_type
        self.reason = reason
        super().__init__(f"Invalid workflow configuration for {workflow_type}: {reason}")


class InvalidStateNodeError(ConfigurationError):
    """add_state() was given an object that is not a StateNode."""

    code: str = "INVALID_STATE_NODE"

    def __init__(self, state_name: str, received_type: str):
        self.state_name = state_name
        self.received_type = received_type
        super().__init__(
            f"State '{state_name}' must be an instance of StateNode, got {received_type}"
        )


class UnknownWorkflowTypeError(ConfigurationError):
    """No workflow class registered under this name."""

    code: str = "UNKNOWN_WORKFLOW_TYPE"

    def __init__(self, workflow_type: str):
        self.workflow_type = workflow_type
        super().__init__(f"Unknown workflow type: {workflow_type}")


class DuplicateWorkflowError(ConfigurationError):
    """A workflow with this ID is already registered with the engine."""

    code: str = "DUPLICATE_WORKFLOW"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow with ID {workflow_id} already exists")


class WorkflowDefinitionError(ConfigurationError):
    """A declarative workflow definition could not be parsed or compiled."""

    code: str = "WORKFLOW_DEFINITION"

    def __init__(self, definition_name: str, errors: list[str]):
        self.definition_name = definition_name
        self.errors = list(errors)
        super().__init__(
            f"Invalid workflow definition '{definition_name}': {'; '.join(self.errors)}"
        )


# Transition errors


class TransitionError(WorkflowKernelError):
    """Base exception for rejected transitions."""

    code: str = "TRANSITION_ERROR"


class InvalidTransitionError(TransitionError):
    """No registered, guard-passing transition leads to the target."""

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        workflow_id: str,
        from_state: str | None,
        to_state: str,
        message: str | None = None,
    ):
        self.workflow_id = workflow_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            message or f"Invalid transition from '{from_state}' to '{to_state}'"
        )


class UnknownStateError(InvalidTransitionError):
    """The target state is not registered on the workflow."""

    code: str = "UNKNOWN_STATE"

    def __init__(self, workflow_id: str, from_state: str | None, to_state: str):
        super().__init__(
            workflow_id, from_state, to_state, f"State '{to_state}' not found"
        )


# Permission errors


class PermissionDeniedError(WorkflowKernelError):
    """
    The user may not act in the requested state.

    The message names only the state; it does not say whether an actor
    or a permission condition was missing.
    """

    code: str = "PERMISSION_DENIED"

    def __init__(self, workflow_id: str, state_name: str, user_id: str):
        self.workflow_id = workflow_id
        self.state_name = state_name
        self.user_id = user_id
        super().__init__(f"User does not have permission to access state '{state_name}'")


# Concurrency errors


class ConcurrencyError(WorkflowKernelError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class WorkflowLockedError(ConcurrencyError):
    """Another user holds an unexpired lease on the workflow."""

    code: str = "WORKFLOW_LOCKED"

    def __init__(self, workflow_id: str, lock_owner: str, retry_after_seconds: int):
        self.workflow_id = workflow_id
        self.lock_owner = lock_owner
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Workflow is locked by another user. "
            f"Try again in {retry_after_seconds} seconds."
        )


# Hook errors


class HookExecutionError(WorkflowKernelError):
    """An entry or exit hook raised; the transition was rolled back."""

    code: str = "HOOK_EXECUTION_FAILED"

    def __init__(self, workflow_id: str, state_name: str, hook: str, reason: str):
        self.workflow_id = workflow_id
        self.state_name = state_name
        self.hook = hook
        self.reason = reason
        super().__init__(f"{hook} hook of state '{state_name}' failed: {reason}")


# Engine errors


class EngineError(WorkflowKernelError):
    """Base exception for workflow engine errors."""

    code: str = "ENGINE_ERROR"


class EngineNotRunningError(EngineError):
    """The engine must be started before workflows are created."""

    code: str = "ENGINE_NOT_RUNNING"

    def __init__(self):
        super().__init__("Workflow Engine is not running")


class WorkflowNotFoundError(EngineError):
    """No workflow with this ID is held by the engine."""

    code: str = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow {workflow_id} not found")


class WorkflowValidationError(EngineError):
    """The current state's validators rejected the workflow context."""

    code: str = "WORKFLOW_VALIDATION_FAILED"

    def __init__(self, workflow_id: str, errors: list[str]):
        self.workflow_id = workflow_id
        self.errors = list(errors)
        super().__init__(f"Workflow validation failed: {', '.join(self.errors)}")
