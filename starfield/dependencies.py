"""FastAPI dependencies shared by the routers."""
from fastapi import Request

from starfield.context import EngineContext


def get_engine(request: Request) -> EngineContext:
    """The one engine context the lifespan put on `app.state`."""
    return request.app.state.engine
