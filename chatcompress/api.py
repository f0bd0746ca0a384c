"""HTTP endpoint exposing the compaction handler."""

from __future__ import annotations

import logging

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from chatcompress.config import DEFAULT_COMPRESSION_API
from chatcompress.handler import CompressionHandler

logger = logging.getLogger(__name__)


def create_compression_router(
    handler: CompressionHandler,
    path: str = DEFAULT_COMPRESSION_API,
) -> APIRouter:
    """Build a router with a single ``POST`` compaction route.

    The raw body is handed to the handler so that JSON errors and schema
    violations are reported with the handler's own messages.
    """
    router = APIRouter(tags=["compression"])

    @router.post(path)
    async def compress(request: Request) -> JSONResponse:
        body = await request.body()
        result = await handler.handle(body)
        if not result.ok:
            logger.debug(f"Compression request rejected with {result.status_code}: {result.payload}")
        return JSONResponse(status_code=result.status_code, content=result.payload)

    return router


def create_compression_app(
    handler: CompressionHandler,
    path: str = DEFAULT_COMPRESSION_API,
) -> FastAPI:
    """Build a standalone FastAPI app serving the compaction endpoint."""
    app = FastAPI(title="chatcompress")
    app.include_router(create_compression_router(handler, path))
    return app
