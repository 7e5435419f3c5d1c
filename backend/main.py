"""FastAPI application for the nearby station scanner."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Query, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

import config
from geo import Coordinate
from lines import Line, classify
from models import (
    ClassifyResponse,
    CoordinateModel,
    DashboardState,
    LineModel,
    ScanRequested,
    ScanResponse,
    StationModel,
)
from publisher import ScanPublisher
from scanner import ScanCoordinator, ScanResult, SourceUnavailableError
from sources import build_sources

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sources = build_sources()
    app.state.coordinator = ScanCoordinator(sources)
    app.state.publisher = ScanPublisher(app.state.coordinator)
    logger.info("Scanner ready")
    yield
    await app.state.publisher.close()
    for source in sources:
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()


app = FastAPI(title="Nearby Station Scanner", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _line_model(line: Line) -> LineModel:
    return LineModel(name=line.display_name, color=line.color, priority=line.priority)


def _scan_response(result: ScanResult) -> ScanResponse:
    return ScanResponse(
        origin=CoordinateModel(lat=result.origin.lat, lon=result.origin.lon),
        radius_m=result.radius_m,
        count=len(result),
        stations=[
            StationModel(
                id=s.id,
                name=s.name,
                distance_m=round(s.distance_m, 1),
                line=s.line.display_name,
                line_color=s.line_color,
                open_until=s.open_until,
                closing_soon=s.closing_soon,
                lat=s.coordinate.lat,
                lon=s.coordinate.lon,
            )
            for s in result
        ],
        failed_queries=list(result.failed_queries),
        dropped_malformed=result.dropped_malformed,
        scanned_at=result.scanned_at,
    )


# ---------- Health check ----------

@app.get("/health")
async def health():
    return {"status": "ok"}


# ---------- Config / lines (read-only) ----------

@app.get("/config")
async def get_config(request: Request):
    coordinator: ScanCoordinator = request.app.state.coordinator
    return {
        "max_radius_m": config.MAX_RADIUS_M,
        "categories": coordinator.categories,
        "sources": [s.name for s in coordinator.sources],
        "query_timeout_s": coordinator.query_timeout_s,
        "closing_soon_minutes": config.CLOSING_SOON_MINUTES,
        "assume_open_when_unknown": coordinator.assume_open_when_unknown,
    }


@app.get("/lines", response_model=list[LineModel])
async def get_lines():
    return [_line_model(line) for line in sorted(Line, key=lambda l: l.priority)]


@app.get("/classify", response_model=ClassifyResponse)
async def classify_tags(
    tag: str = Query(..., description="Primary place type tag"),
    tags: list[str] = Query(default=[], description="Additional tags"),
):
    return ClassifyResponse(tags=[tag, *tags], line=_line_model(classify(tag, tags)))


# ---------- Scanning ----------

@app.get("/scan", response_model=ScanResponse)
async def scan(
    request: Request,
    lat: float = Query(..., ge=-90, le=90, description="Latitude"),
    lon: float = Query(..., ge=-180, le=180, description="Longitude"),
    radius: float = Query(config.MAX_RADIUS_M, gt=0, description="Search radius in meters (capped at 1 mile)"),
):
    """One-off scan around a coordinate, independent of the live dashboard state."""
    coordinator: ScanCoordinator = request.app.state.coordinator
    try:
        result = await coordinator.scan(Coordinate(lat, lon), radius)
    except SourceUnavailableError as exc:
        raise HTTPException(503, str(exc))
    return _scan_response(result)


@app.post("/location", status_code=202, response_model=ScanRequested)
async def update_location(request: Request, location: CoordinateModel):
    """Observer moved: supersede any running scan with one at the new location."""
    publisher: ScanPublisher = request.app.state.publisher
    publisher.request_scan(Coordinate(location.lat, location.lon))
    return ScanRequested(generation=publisher.state.generation, origin=location)


@app.post("/refresh", status_code=202, response_model=ScanRequested)
async def refresh(request: Request):
    publisher: ScanPublisher = request.app.state.publisher
    try:
        publisher.refresh()
    except ValueError as exc:
        raise HTTPException(400, str(exc))
    origin = publisher.state.origin
    return ScanRequested(generation=publisher.state.generation, origin=CoordinateModel(lat=origin.lat, lon=origin.lon))


@app.get("/stations", response_model=DashboardState)
async def get_stations(request: Request):
    """Latest published stations plus the loading flag."""
    state = request.app.state.publisher.state
    return DashboardState(
        generation=state.generation,
        loading=state.loading,
        error=str(state.error) if state.error else None,
        origin=CoordinateModel(lat=state.origin.lat, lon=state.origin.lon) if state.origin else None,
        scan=_scan_response(state.result) if state.result else None,
    )
