"""
Application errors for clean API and stream error handling.

Use ServiceUnavailableError when a dependency (vector store, embeddings, LLM)
is misconfigured or unreachable; its message is user-facing and becomes the
payload of the stream's terminal error event.
"""


class ServiceUnavailableError(Exception):
    """Raised when a required service (e.g. vector store, embeddings API) is unavailable or misconfigured."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class GenerationError(ServiceUnavailableError):
    """Raised when answer generation yields no text after streaming and the non-streaming retry."""


class ChannelClosedError(Exception):
    """Raised by a delivery channel once its consumer has gone away."""
