"""Response models for measure engine API endpoints."""
from typing import Dict, List, Optional

from pydantic import BaseModel

from measure_engine.models.validation import MeasureScore, ValidationTrace


class StoredMeasureResponse(BaseModel):
    measure_id: str
    stored: bool = True


class RebuildResponse(BaseModel):
    components: int
    usage: Dict[str, int]


class EvaluationResponse(BaseModel):
    """Traces for every patient plus the aggregate score."""
    measure_id: str
    traces: List[ValidationTrace]
    score: MeasureScore


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str
    components: Dict[str, bool]
    platform: Optional[str] = None
