"""
Reimagine Photos API - Edit Routes
Credit-gated image editing
SECURED with Firebase Auth + atomic credit reservation
"""
import asyncio
from typing import Awaitable, Set

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from loguru import logger

from ..deps import get_edit_gate
from ..models.schemas import EditResponse, ErrorResponse
from ..services.edit_gate import EditFailure, EditGate, EditOutcome

router = APIRouter(prefix="/api/v1", tags=["Edit"])


def inflight_edits(app: FastAPI) -> Set[asyncio.Task]:
    """Gate runs that must finish even if the caller goes away."""
    if not hasattr(app.state, "inflight_edits"):
        app.state.inflight_edits = set()
    return app.state.inflight_edits


def run_detached(inflight: Set[asyncio.Task], coro: Awaitable[EditOutcome]) -> "asyncio.Task[EditOutcome]":
    task = asyncio.ensure_future(coro)
    inflight.add(task)
    task.add_done_callback(inflight.discard)
    return task


async def drain_inflight(inflight: Set[asyncio.Task], timeout: float) -> None:
    """Wait for in-flight edits (and their refunds) before shutdown."""
    if not inflight:
        return
    logger.info(f"Waiting for {len(inflight)} in-flight edit request(s)")
    _, pending = await asyncio.wait(set(inflight), timeout=timeout)
    for task in pending:
        logger.critical(f"🔴 Edit request still running at shutdown: {task!r}")


@router.post(
    "/edit",
    response_model=EditResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        402: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def edit_image(request: Request, gate: EditGate = Depends(get_edit_gate)):
    """
    Apply a natural-language edit to an uploaded image.
    One credit is reserved before the model is called and refunded if the
    model fails, times out or refuses.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    # Shielded: a client disconnect must not cancel the reservation/refund path
    task = run_detached(
        inflight_edits(request.app),
        gate.handle(request.headers.get("Authorization"), payload),
    )
    outcome = await asyncio.shield(task)

    if isinstance(outcome, EditFailure):
        return JSONResponse(
            status_code=outcome.status_code,
            content=ErrorResponse(error_code=outcome.code.value, message=outcome.message).model_dump(),
        )

    return EditResponse(image_data=outcome.image_base64, media_type=outcome.image.media_type)
