"""
Lifestyle Blueprint - Error types.

Collectors turn these into user-facing messages, the generation pipeline
turns them into retry decisions, and the web layer into HTTP errors.
"""


class BlueprintError(Exception):
    """Base class for all onboarding errors."""

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message)
        self.user_message = user_message


class ValidationFailure(BlueprintError):
    """User input failed a field validator."""

    def __init__(self, message: str):
        super().__init__(message, user_message=message)
        self.message = message


class PersistenceError(BlueprintError):
    """A read or write against the persistence service failed."""


class PreconditionError(BlueprintError):
    """
    Operation cannot proceed (no active user, missing upstream data).

    Fatal for the current operation. Never retried.
    """


class CalculationInputError(PreconditionError):
    """Identity or metrics data needed for the calorie calculation is missing."""


class GenerationError(BlueprintError):
    """A generation attempt failed."""


class TransientGenerationError(GenerationError):
    """Timeout or server-side failure. The attempt may be retried."""


class GenerationPreconditionError(GenerationError, PreconditionError):
    """The generation service refused the request (4xx). Not retried."""


class GenerationInProgress(BlueprintError):
    """A generation job for the same artifact and conversation is already running."""


class WebhookError(BlueprintError):
    """A webhook payload could not be processed (bad signature, unknown stage)."""


class UnknownToolError(WebhookError):
    """The AI backend called a tool the stage does not provide."""
