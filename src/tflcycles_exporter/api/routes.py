"""
API routes.

Endpoints:
- GET `/`: landing page (cheap; suitable for health checks).
- GET `/metrics`: the exporter's own process-wide metrics.
- GET `/stations`: one BikePoint fetch per request, rendered as station metrics.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import anyio
from fastapi import APIRouter, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, Response
from fastapi.templating import Jinja2Templates
from prometheus_client import REGISTRY
from prometheus_client.exposition import choose_encoder

from tflcycles_exporter import __version__
from tflcycles_exporter.config.settings import get_settings
from tflcycles_exporter.core.deadline import FetchContext
from tflcycles_exporter.exporter.scrape import (
    SCRAPE_TIMEOUT_HEADER,
    ExporterMetrics,
    StationsExporter,
    scrape_context,
)
from tflcycles_exporter.ingestion.bikepoint_client import BikePointClient, BikePointMetrics

# How often an in-flight scrape checks whether the scraper has gone away.
DISCONNECT_POLL_SECONDS = 0.25

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "web" / "templates"
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

router = APIRouter()


@lru_cache
def _exporter() -> StationsExporter:
    settings = get_settings()
    client = BikePointClient(settings.bikepoint, metrics=BikePointMetrics.register(REGISTRY))
    return StationsExporter(client, ExporterMetrics.register(REGISTRY))


@router.get("/", response_class=HTMLResponse)
def index(request: Request) -> HTMLResponse:
    """Serve the landing page."""
    return templates.TemplateResponse(request, "index.html", {"version": __version__})


@router.get("/metrics")
def metrics(request: Request) -> Response:
    """Expose the process-wide registry."""
    encoder, content_type = choose_encoder(request.headers.get("accept", ""))
    return Response(content=encoder(REGISTRY), media_type=content_type)


async def _cancel_on_disconnect(request: Request, ctx: FetchContext) -> None:
    while not ctx.done():
        if await request.is_disconnected():
            ctx.cancel()
            return
        await anyio.sleep(DISCONNECT_POLL_SECONDS)


@router.get("/stations")
async def stations(request: Request) -> Response:
    """Fetch BikePoint and expose its data. Always 200; failures show as `tflcycles_up 0`."""
    exporter = _exporter()
    ctx = scrape_context(request.headers.get(SCRAPE_TIMEOUT_HEADER), get_settings().scrape)

    async with anyio.create_task_group() as tg:
        tg.start_soon(_cancel_on_disconnect, request, ctx)
        body, content_type = await run_in_threadpool(exporter.scrape, ctx, request.headers.get("accept"))
        tg.cancel_scope.cancel()

    return Response(content=body, media_type=content_type)
