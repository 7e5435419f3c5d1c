"""Pydantic models for API requests and responses."""

from datetime import datetime

from pydantic import BaseModel, Field


class CoordinateModel(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class LineModel(BaseModel):
    name: str
    color: str
    priority: int


class StationModel(BaseModel):
    id: str
    name: str
    distance_m: float
    line: str
    line_color: str
    open_until: str | None = None
    closing_soon: bool
    lat: float
    lon: float


class ScanResponse(BaseModel):
    origin: CoordinateModel
    radius_m: float
    count: int
    stations: list[StationModel]
    failed_queries: list[str]
    dropped_malformed: int
    scanned_at: datetime


class DashboardState(BaseModel):
    generation: int
    loading: bool
    error: str | None = None
    origin: CoordinateModel | None = None
    scan: ScanResponse | None = None


class ScanRequested(BaseModel):
    generation: int
    origin: CoordinateModel


class ClassifyResponse(BaseModel):
    tags: list[str]
    line: LineModel
