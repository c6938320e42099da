"""Control routes: every route maps onto one operator command."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from ..session.commands import CommandDispatcher, CommandResult, CommandVerb
from .schemas import CommandResponse, ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(
    tags=["Control"],
    responses={
        400: {"model": ErrorResponse, "description": "Bad Request"},
        404: {"model": ErrorResponse, "description": "Tab Not Found"},
        409: {"model": ErrorResponse, "description": "Session Shutting Down"},
        500: {"model": ErrorResponse, "description": "Internal Server Error"},
    }
)


def get_dispatcher(request: Request) -> CommandDispatcher:
    """Dependency returning the dispatcher bound to the running session."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="No session is running")
    return dispatcher


def to_response(result: CommandResult, error_status: int = 500, partial: bool = False) -> CommandResponse:
    """Convert a command result, raising HTTPException when it failed.

    With ``partial`` a failed result that still carries data (a dump with
    some failed artifacts) is returned as is.
    """
    if not result.ok and not (partial and result.data):
        status = 409 if result.rejected else error_status
        raise HTTPException(status_code=status, detail=result.message)
    return CommandResponse(
        command=result.verb.value,
        ok=result.ok,
        message=result.message,
        data=result.data,
    )


@router.get("/dump", response_model=CommandResponse, summary="Dump buffers to disk")
async def dump(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    """Write console, network, request details, cookies, DOM and screenshot."""
    return to_response(await dispatcher.execute(CommandVerb.DUMP), partial=True)


@router.get("/clear", response_model=CommandResponse, summary="Clear buffers")
async def clear(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return to_response(await dispatcher.execute(CommandVerb.CLEAR))


@router.get("/status", response_model=CommandResponse, summary="Session status")
async def status(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return to_response(await dispatcher.execute(CommandVerb.STATUS))


@router.get("/tabs", response_model=CommandResponse, summary="List user tabs")
async def list_tabs(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return to_response(await dispatcher.execute(CommandVerb.LIST_TABS))


@router.get("/tabs/{index}", response_model=CommandResponse, summary="Switch monitored tab")
async def switch_tab(index: int, dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    """Move capture to the tab at the 1-based ``index`` of ``/tabs``."""
    return to_response(await dispatcher.execute(CommandVerb.SWITCH_TAB, index), error_status=404)


@router.get("/stop", response_model=CommandResponse, summary="Pause collecting")
async def pause(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return to_response(await dispatcher.execute(CommandVerb.PAUSE))


@router.get("/start", response_model=CommandResponse, summary="Resume collecting")
async def resume(dispatcher: CommandDispatcher = Depends(get_dispatcher)) -> CommandResponse:
    return to_response(await dispatcher.execute(CommandVerb.RESUME))


@router.get("/computed-styles", summary="Computed CSS of an element")
async def computed_styles(
    selector: str = Query(..., min_length=1, description="CSS selector of the element"),
    dispatcher: CommandDispatcher = Depends(get_dispatcher),
):
    """Computed styles of the first element matching ``selector`` on the monitored page."""
    session = dispatcher.session
    if session.active_page is None:
        raise HTTPException(status_code=409, detail="No page is being monitored")
    result = await session.computed_styles(selector)
    if "error" in result:
        logger.debug(f"Computed styles for {selector!r} failed: {result['error']}")
        raise HTTPException(status_code=404, detail=result["error"])
    return result
