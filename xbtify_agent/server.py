"""
HTTP control plane.

``GET /`` reports health; ``POST /api/send/message`` sends an out-of-band
direct message to a user identified by Farcaster fid. The send endpoint
requires the ``x-api-key`` header except in development.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from xbtify_agent import __version__
from xbtify_agent.agent import DeliveryStatus, XbtAgent

logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1)
    user_fid: int = Field(alias="userFid", ge=1)

    model_config = {"populate_by_name": True}


def create_app(agent: XbtAgent, manage_agent: bool = False) -> FastAPI:
    """Build the FastAPI app for ``agent``.

    With ``manage_agent`` the app starts and stops the agent in its lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if manage_agent:
            await agent.start()
        try:
            yield
        finally:
            if manage_agent:
                await agent.stop()

    app = FastAPI(title="XBTify Agent", version=__version__, lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.error("Invalid request body: %s", exc.errors())
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid request body", "error": str(exc.errors())},
        )

    async def require_api_key(x_api_key: str | None = Header(default=None)) -> None:
        if agent.config.is_development:
            return
        if not x_api_key or x_api_key != agent.config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")

    @app.get("/")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/send/message", dependencies=[Depends(require_api_key)])
    async def send_message(body: SendMessageRequest) -> JSONResponse:
        try:
            status = await agent.send_direct_message(body.user_fid, body.message)
        except Exception as e:
            logger.exception("Error sending message to fid %s", body.user_fid)
            return JSONResponse(
                status_code=500,
                content={"message": "Failed to send message", "error": str(e)},
            )

        if status == DeliveryStatus.USER_NOT_FOUND:
            return JSONResponse(status_code=404, content={"message": "User not found"})
        if status == DeliveryStatus.NO_INBOX:
            return JSONResponse(status_code=200, content={"message": "User does not have an inbox ID"})
        return JSONResponse(status_code=200, content={"status": "ok"})

    return app


def serve(agent: XbtAgent, host: str = "0.0.0.0") -> None:
    """Run the control plane (and the agent) under uvicorn."""
    import uvicorn

    uvicorn.run(create_app(agent, manage_agent=True), host=host, port=agent.config.port)
