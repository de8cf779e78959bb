from __future__ import annotations

import pytest
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError, WriteError

from outcomes import (
    DuplicateKey,
    InvalidIdentifier,
    InvalidParameter,
    NotFound,
    RequestOutcome,
    handles_errors,
    map_error,
)
from schemas import User


@pytest.mark.parametrize(
    "exc, status",
    [
        (InvalidParameter("bad"), 400),
        (InvalidIdentifier("Invalid task id"), 400),
        (NotFound("Task not found."), 404),
        (DuplicateKey(), 400),
    ],
)
def test_api_errors_keep_their_status(exc, status) -> None:
    outcome = map_error(exc)
    assert outcome.status == status
    assert outcome.message == exc.message


def test_store_duplicate_key_maps_to_fixed_message() -> None:
    outcome = map_error(DuplicateKeyError("E11000 duplicate key error collection: user index: email_1"))
    assert outcome == RequestOutcome(400, "Email already exists. Please use a different email.", None)


def test_document_validation_failure_is_a_client_error() -> None:
    outcome = map_error(WriteError("Document failed validation", code=121))
    assert outcome.status == 400


def test_pydantic_validation_is_a_client_error() -> None:
    with pytest.raises(ValidationError) as exc:
        User(name="Ann", email="not-an-email")
    outcome = map_error(exc.value)
    assert outcome.status == 400
    assert outcome.message.startswith("email:")


def test_unknown_failures_hide_details_in_data() -> None:
    outcome = map_error(RuntimeError("connection reset by peer"))
    assert outcome.status == 500
    assert outcome.message == "An unexpected server error occurred."
    assert outcome.data == {"type": "RuntimeError", "detail": "connection reset by peer"}


@pytest.mark.asyncio
async def test_handles_errors_wraps_coroutines() -> None:
    @handles_errors
    async def boom() -> RequestOutcome:
        raise NotFound("User not found.")

    assert await boom() == RequestOutcome(404, "User not found.", None)
