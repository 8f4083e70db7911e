"""Exceptions used throughout dossier."""

import base64
import pickle
import traceback

from tblib import pickling_support  # type: ignore[import-untyped]

pickling_support.install()


class DossierError(Exception):
    """Base exception for dossier-related errors."""


class PayloadValidationError(DossierError):
    """A submitted payload does not satisfy its stage's required fields."""


class UnknownStageError(DossierError):
    """A queue name was not found in the stage registry."""


class DuplicateStageError(DossierError):
    """A stage was registered twice."""


class JobNotFoundError(DossierError):
    """No job row exists for the requested job ID."""


class WorkflowNotFoundError(DossierError):
    """No root job row exists for the requested workflow."""


class InvalidFilterError(DossierError):
    """A read filter (limit, status) was malformed."""


class CleanupError(DossierError):
    """Deleting a workflow failed; the transaction was rolled back."""


class ExternalServiceError(DossierError):
    """A call to an external API failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __reduce__(self):
        return (type(self), (str(self), self.status_code))


class TransientExternalError(ExternalServiceError):
    """Rate-limited or server-side failure. The queue backend retries these."""


class NonRetryableExternalError(ExternalServiceError):
    """Client-side failure that will not improve on retry. The job fails without further attempts."""


def is_retryable(error: BaseException) -> bool:
    """Should the queue backend schedule another attempt after this error?"""

    return not isinstance(error, (NonRetryableExternalError, PayloadValidationError))


def exception_to_text_blob(exception: BaseException) -> str:
    """Serialize an exception (with its traceback) to a text blob."""

    pickled = pickle.dumps(exception, protocol=pickle.HIGHEST_PROTOCOL)

    return base64.b64encode(pickled).decode("ascii")


def exception_from_text_blob(blob: str) -> BaseException:
    """Deserialize an exception from a text blob."""

    pickled = base64.b64decode(blob.encode("ascii"))
    restored = pickle.loads(pickled)

    if not isinstance(restored, BaseException):
        raise TypeError(f"Unpickled object is not an exception: {type(restored)!r}")

    return restored


def describe_exception(error: BaseException | str) -> dict[str, str]:
    """Summarise an error for storage in a job row's data column."""

    if isinstance(error, str):
        return {"error": error}

    return {
        "error": str(error),
        "errorType": type(error).__name__,
        "traceback": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
