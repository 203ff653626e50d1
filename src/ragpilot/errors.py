"""
Error taxonomy for the RAG pipeline.

Only ConfigurationError is meant to reach callers of the pipeline. Backend
failures are recovered at the smallest possible scope, and quality guard
rejections are converted into "keep the previous value" by the stage that
raised them.
"""


class RAGPilotError(Exception):
    """Base class for all ragpilot errors."""


class ConfigurationError(RAGPilotError):
    """No usable language-model backend (or other required collaborator) is configured."""


class BackendCallFailure(RAGPilotError):
    """A single chat or embedding call to the model backend failed."""

    def __init__(self, message: str, operation: str = "", provider: str | None = None):
        super().__init__(message)
        self.operation = operation
        self.provider = provider


class BackendTimeout(BackendCallFailure):
    """A backend call did not finish within its time budget."""


class QualityGuardRejection(RAGPilotError):
    """A generated artifact failed a length or content sanity check."""

    def __init__(self, message: str, guard: str = ""):
        super().__init__(message)
        self.guard = guard
