"""Interactions endpoint: POST /interactions."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from server.app.interactions.server import InteractionServer

router = APIRouter()


@router.post("")
async def receive_interaction(request: Request) -> JSONResponse:
    """Verify, route and acknowledge one Discord interaction callback."""
    server: InteractionServer = request.app.state.interaction_server
    body = await request.body()
    status, payload = await server.handle(request.headers, body)
    return JSONResponse(status_code=status, content=payload)
