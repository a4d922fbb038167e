"""
Member search endpoint:
  POST /search — search members by username
"""
import logging

from fastapi import APIRouter, Depends
from opentelemetry import trace

from starfield.context import EngineContext
from starfield.dependencies import get_engine
from starfield.schemas import SearchRequest, SearchResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


@router.post("/", response_model=SearchResponse)
async def search_members(body: SearchRequest, engine: EngineContext = Depends(get_engine)):
    """
    Search members by username.

    Results are ranked exact match first, then prefix matches, then the rest,
    each group by comment count. Members not yet in the universe are flagged
    `is_new`; selecting one places it at a fallback position.
    """
    with tracer.start_as_current_span("search_members") as span:
        span.set_attribute("search.query_length", len(body.text))
        results = await engine.on_search_input(body.text)
        span.set_attribute("search.results", len(results))
        return SearchResponse(query=body.text.strip(), results=results)
