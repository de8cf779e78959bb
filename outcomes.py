"""
Uniform request outcomes.

Every service call ends in a RequestOutcome: a status code, a human
readable message and a data payload. Failures are raised as ApiError
subclasses (or escape from pymongo/pydantic) and are turned into outcomes
by `map_error` at the request boundary.
"""
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, WriteError

logger = logging.getLogger(__name__)

DUPLICATE_EMAIL_MESSAGE = "Email already exists. Please use a different email."
SERVER_ERROR_MESSAGE = "An unexpected server error occurred."

# MongoDB "Document failed validation"
_DOCUMENT_VALIDATION_FAILURE = 121


@dataclass(frozen=True)
class RequestOutcome:
    status: int
    message: str
    data: Any = None

    def body(self) -> Dict[str, Any]:
        return {"message": self.message, "data": self.data}


def ok(data: Any, message: str = "OK") -> RequestOutcome:
    return RequestOutcome(200, message, data)


def created(data: Any, message: str) -> RequestOutcome:
    return RequestOutcome(201, message, data)


# -----------------------------
# Error kinds
# -----------------------------
class ApiError(Exception):
    status = 500

    def __init__(self, message: str, data: Any = None):
        super().__init__(message)
        self.message = message
        self.data = data

    def to_outcome(self) -> RequestOutcome:
        return RequestOutcome(self.status, self.message, self.data)


class InvalidParameter(ApiError):
    status = 400


class InvalidIdentifier(ApiError):
    status = 400


class NotFound(ApiError):
    status = 404


class DuplicateKey(ApiError):
    status = 400

    def __init__(self, message: str = DUPLICATE_EMAIL_MESSAGE, data: Any = None):
        super().__init__(message, data)


class StoreFailure(ApiError):
    status = 500

    def __init__(self, message: str = SERVER_ERROR_MESSAGE, data: Any = None):
        super().__init__(message, data)


def _diagnostics(exc: BaseException) -> Dict[str, Any]:
    return {"type": type(exc).__name__, "detail": str(exc)}


def map_error(exc: BaseException) -> RequestOutcome:
    if isinstance(exc, ApiError):
        return exc.to_outcome()
    if isinstance(exc, DuplicateKeyError):
        return DuplicateKey().to_outcome()
    if isinstance(exc, WriteError) and exc.code == _DOCUMENT_VALIDATION_FAILURE:
        return InvalidParameter(str(exc)).to_outcome()
    if isinstance(exc, ValidationError):
        return InvalidParameter(validation_message(exc)).to_outcome()
    logger.exception("Unhandled failure", exc_info=exc)
    return StoreFailure(data=_diagnostics(exc)).to_outcome()


def validation_message(exc) -> str:
    """First error of a pydantic or FastAPI validation failure, as one line."""
    errors = exc.errors()
    if not errors:
        return "Invalid request."
    first = errors[0]
    loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    return f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))


def handles_errors(fn: Callable[..., Awaitable[RequestOutcome]]) -> Callable[..., Awaitable[RequestOutcome]]:
    """Turn anything raised by a service coroutine into a RequestOutcome."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> RequestOutcome:
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            outcome = map_error(exc)
            if outcome.status < 500:
                logger.info("%s rejected: %s %s", fn.__name__, outcome.status, outcome.message)
            return outcome

    return wrapper
