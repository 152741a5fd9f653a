from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class IntakeError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    status_code: int = 500


@dataclass(slots=True)
class SessionNotFoundError(IntakeError):
    user_message: str = "This request has expired or was already submitted. Please start again."
    status_code: int = 404


@dataclass(slots=True)
class IncompleteWizardError(IntakeError):
    user_message: str = "Please complete category, priority and location before submitting."
    status_code: int = 409


@dataclass(slots=True)
class InvalidTransitionError(IntakeError):
    user_message: str = "The ticket is not in a valid state for this action."
    status_code: int = 409


@dataclass(slots=True)
class ConcurrentModificationError(IntakeError):
    user_message: str = "The record was changed by someone else. Please retry."
    status_code: int = 503


@dataclass(slots=True)
class TicketNotFoundError(IntakeError):
    user_message: str = "The requested ticket could not be found."
    status_code: int = 404


@dataclass(slots=True)
class ValidationError(IntakeError):
    user_message: str = "The provided input is not valid."
    status_code: int = 422


@dataclass(slots=True)
class RateLimitedError(IntakeError):
    user_message: str = "Too many new requests. Please wait a moment."
    status_code: int = 429


# Short aliases matching the names used in the lifecycle docs.
SessionNotFound = SessionNotFoundError
IncompleteWizard = IncompleteWizardError
InvalidTransition = InvalidTransitionError
ConcurrentModification = ConcurrentModificationError
TicketNotFound = TicketNotFoundError


async def handle_intake_error(request: Request, error: IntakeError) -> JSONResponse:
    if isinstance(error, ConcurrentModificationError):
        LOGGER.warning("Transient conflict. path=%s message=%s", request.url.path, error.user_message)
    elif error.status_code >= 500:
        LOGGER.exception("Request failed. path=%s", request.url.path, exc_info=error)
    else:
        LOGGER.info(
            "Request rejected. path=%s error=%s message=%s",
            request.url.path,
            type(error).__name__,
            error.user_message,
        )
    return JSONResponse(
        status_code=error.status_code,
        content={"error": type(error).__name__, "message": error.user_message},
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IntakeError, handle_intake_error)  # type: ignore[arg-type]
