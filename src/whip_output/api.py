"""HTTP control surface for a running output."""
from __future__ import annotations

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel

from .output import WHIPOutput
from .version import APP_VERSION


class OutputStatusPayload(BaseModel):
    name: str
    state: str
    running: bool
    total_bytes: int
    connect_time_ms: int
    resource_url: str | None = None
    last_status: str | None = None


class StopPayload(BaseModel):
    signal: bool = True


def create_output_router(output: WHIPOutput) -> APIRouter:
    """Return a router exposing status, start and stop for ``output``."""

    router = APIRouter(prefix="/api/output", tags=["output"])

    @router.get("", response_model=OutputStatusPayload)
    async def get_status() -> OutputStatusPayload:
        return OutputStatusPayload(**output.status())

    @router.post("/start", response_model=OutputStatusPayload, status_code=202)
    async def start_output() -> OutputStatusPayload:
        if not await output.start():
            raise HTTPException(status_code=409, detail="Output cannot start")
        return OutputStatusPayload(**output.status())

    @router.post("/stop", response_model=OutputStatusPayload, status_code=202)
    async def stop_output(payload: StopPayload | None = None) -> OutputStatusPayload:
        signal = payload.signal if payload is not None else True
        await output.stop(signal=signal)
        return OutputStatusPayload(**output.status())

    return router


def create_app(output: WHIPOutput) -> FastAPI:
    """Create a FastAPI application controlling ``output``."""

    app = FastAPI(title="whip-output", version=APP_VERSION)
    app.include_router(create_output_router(output))

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - exercised in deployment
        await output.close()

    return app


__all__ = ["OutputStatusPayload", "StopPayload", "create_app", "create_output_router"]
