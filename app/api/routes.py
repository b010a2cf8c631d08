from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.admission import ExecutionSlots, get_execution_slots
from app.core.config import Settings, get_settings
from app.core.errors import AdmissionRejectedError
from app.models.schemas import (
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    LanguageInfo,
    LanguagesResponse,
)
from app.services.executor import execute_code
from app.services.languages import supported_languages
from app.services.normalizer import to_response

BAD_REQUEST_MESSAGE = "Code and language are required"
BUSY_MESSAGE = "Server is busy, try again later"

_REQUIRED_FIELDS = frozenset({"code", "language"})


router = APIRouter()


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    for err in errors:
        loc = tuple(err.get("loc", ()))
        if loc == ("body",) and err.get("type") == "missing":
            return BAD_REQUEST_MESSAGE
        if loc and loc[-1] in _REQUIRED_FIELDS:
            return BAD_REQUEST_MESSAGE
    if not errors:
        return "Invalid request"
    first = errors[0]
    where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"Invalid request: {where}: {first.get('msg', 'invalid value')}" if where else "Invalid request"


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": _validation_message(exc)},
    )


@router.get("/languages", response_model=LanguagesResponse)
def languages() -> LanguagesResponse:
    return LanguagesResponse(
        languages=[
            LanguageInfo(id=p.id, name=p.display_name, compiled=p.compiled)
            for p in supported_languages()
        ]
    )


@router.post(
    "/execute",
    response_model=ExecuteResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_200_OK,
    responses={
        400: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
def execute(
    req: ExecuteRequest,
    settings: Settings = Depends(get_settings),
    slots: ExecutionSlots = Depends(get_execution_slots),
) -> JSONResponse:
    """Compile (when needed) and run the submitted code in a throwaway workspace.

    Note: rlimits and process groups bound the child, but they are not a
    container boundary. Run the service inside one before exposing it publicly.
    """
    try:
        with slots.slot():
            result = execute_code(
                language=req.language,
                code=req.code,
                stdin=req.stdin,
                settings=settings,
            )
    except AdmissionRejectedError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": BUSY_MESSAGE},
        )

    status_code, body = to_response(result)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", exclude_none=True),
    )
