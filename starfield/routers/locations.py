"""
Location filter endpoints:
  GET    /locations         — countries, regions and cities currently loaded
  POST   /locations/filter  — hide members outside a country / region / city
  DELETE /locations/filter  — show every member again
"""
import logging

from fastapi import APIRouter, Depends
from opentelemetry import trace

from starfield.context import EngineContext
from starfield.dependencies import get_engine
from starfield.schemas import LocationFilter, LocationFilterResponse, LocationOptions

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.get("/", response_model=LocationOptions)
async def location_options(engine: EngineContext = Depends(get_engine)):
    return engine.location_filter_options()


@router.post("/filter", response_model=LocationFilterResponse)
async def set_location_filter(body: LocationFilter, engine: EngineContext = Depends(get_engine)):
    """Empty fields match everything; members without the field are hidden."""
    with tracer.start_as_current_span("set_location_filter") as span:
        visible = engine.on_location_filter(body)
        span.set_attribute("location.visible", visible)
        return LocationFilterResponse(filter=body, visible=visible, total=len(engine.store))


@router.delete("/filter", response_model=LocationFilterResponse)
async def clear_location_filter(engine: EngineContext = Depends(get_engine)):
    cleared = LocationFilter()
    visible = engine.on_location_filter(cleared)
    return LocationFilterResponse(filter=cleared, visible=visible, total=len(engine.store))
