"""
Selection endpoints:
  GET    /selection — current selection state and detail panel
  POST   /selection — select a member by id or username
  DELETE /selection — close the detail panel
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace

from starfield.context import EngineContext
from starfield.dependencies import get_engine
from starfield.errors import NotFoundError, StaleResultDiscarded
from starfield.schemas import SelectionResponse, SelectRequest

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.get("/", response_model=SelectionResponse)
async def get_selection(engine: EngineContext = Depends(get_engine)):
    return SelectionResponse(state=engine.selection.state.value, detail=engine.selection.detail())


@router.post("/", response_model=SelectionResponse)
async def select_member(body: SelectRequest, engine: EngineContext = Depends(get_engine)):
    """
    Select a member and start the camera travel.

    The id may also be a username. Members missing from the universe are
    looked up remotely and added on demand. Posts and engagement load in the
    background once travel arrives; poll GET /selection for them.
    """
    with tracer.start_as_current_span("select_member") as span:
        span.set_attribute("selection.slug", body.id)
        try:
            detail = await engine.on_select(body.id)
        except NotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
        except StaleResultDiscarded:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Superseded by a newer selection",
            )
        return SelectionResponse(state=engine.selection.state.value, detail=detail)


@router.delete("/", response_model=SelectionResponse)
async def close_selection(engine: EngineContext = Depends(get_engine)):
    engine.on_close()
    return SelectionResponse(state=engine.selection.state.value)
