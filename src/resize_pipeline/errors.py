"""Error taxonomy for the resize pipeline.

Every per-job failure raised inside the worker is a PipelineError subclass
(or is wrapped into one) so the worker can record a readable cause on the
image record. The ``kind`` label is what ends up in ``error_message``.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    kind = "PipelineError"

    def describe(self) -> str:
        """Human-readable cause, prefixed with the error kind."""
        return f"{self.kind}: {self}"


class ConfigError(PipelineError):
    """Configuration could not be loaded or is inconsistent."""

    kind = "ConfigError"


class QueueUnavailable(PipelineError):
    """Queue or status store is unreachable."""

    kind = "QueueUnavailable"


class StorageError(PipelineError):
    """Object store download/upload failed (auth, network, not-found...)."""

    kind = "StorageError"


class TransformError(PipelineError):
    """A resolution could not be produced from the source image."""

    kind = "TransformError"


class UnsupportedFormat(TransformError):
    """Input bytes are not decodable as an image."""

    kind = "UnsupportedFormat"


class RecordNotFound(PipelineError):
    """Image record missing from the record store."""

    kind = "RecordNotFound"


class InvalidTransition(PipelineError):
    """Requested status change is not allowed by the record state machine."""

    kind = "InvalidTransition"

    def __init__(self, image_id: str, from_state: str, to_state: str):
        self.image_id = image_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"image {image_id}: {from_state} -> {to_state} is not allowed")


class StepTimeout(PipelineError):
    """A bounded step (storage call, transform, whole job) ran out of time."""

    kind = "StepTimeout"


def describe_error(exc: BaseException) -> str:
    """Format any exception as ``"<Kind>: <message>"`` for error_message."""
    if isinstance(exc, PipelineError):
        return exc.describe()
    message = str(exc) or repr(exc)
    return f"{type(exc).__name__}: {message}"
