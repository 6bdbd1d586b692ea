"""reqchain errors - failures that abort a whole execution attempt.

Network failures and non-200 statuses are not errors here: the HTTP runner
records them on the step's response instead.
"""


class ReqchainError(Exception):
    """Base class for execution failures surfaced to the caller."""


class UnknownStepType(ReqchainError):
    def __init__(self, step_type):
        super().__init__(f"Unknown request type: {step_type}")
        self.step_type = step_type


class UnknownOAuthAction(ReqchainError):
    def __init__(self, action):
        super().__init__(f"Unknown OAuth action: {action}")
        self.action = action


class TemplateRenderError(ReqchainError):
    """A string leaf could not be rendered against the context."""

    def __init__(self, template: str, cause: Exception):
        super().__init__(f"Template error in {template!r}: {cause}")
        self.template = template
        self.cause = cause


class SessionAcquisitionError(ReqchainError):
    """The browser session for an authorization flow could not start."""


class Timeout(ReqchainError, TimeoutError):
    """The authorization flow never saw its redirect before the deadline."""


class ExecutionCancelled(ReqchainError):
    pass


class StepInFlight(ReqchainError):
    """The step already has an execution that has not settled."""


class ContextError(ReqchainError, ValueError):
    """The context file is unreadable or not a mapping."""
