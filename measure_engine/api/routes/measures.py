"""Measure API routes: storage, library linking and patient evaluation."""
from typing import Optional

from fastapi import APIRouter, HTTPException

from measure_engine.api.requests import EvaluatePatientsRequest, LinkMeasureRequest
from measure_engine.api.responses import EvaluationResponse, StoredMeasureResponse
from measure_engine.config.logging_config import get_logger
from measure_engine.criteria_engine.exceptions import MeasureNotFoundError
from measure_engine.criteria_engine.library_service import get_library_service
from measure_engine.criteria_engine.linker import LinkResult
from measure_engine.models.measure_schema import UniversalMeasureSpec

logger = get_logger(__name__)

router = APIRouter(prefix="/measures", tags=["Measures"])


@router.post("", response_model=StoredMeasureResponse)
async def store_measure(measure: UniversalMeasureSpec):
    measure_id = await get_library_service().store_measure(measure)
    return StoredMeasureResponse(measure_id=measure_id)


@router.get("/{measure_id}")
async def get_measure(measure_id: str):
    try:
        measure = await get_library_service().get_measure(measure_id)
    except MeasureNotFoundError:
        raise HTTPException(status_code=404, detail=f"Measure not found: {measure_id}")
    return measure.model_dump(mode="json")


@router.post("/{measure_id}/link", response_model=LinkResult)
async def link_measure(measure_id: str, request: Optional[LinkMeasureRequest] = None):
    """
    Link every data element of a stored measure to the component library.

    Re-linking an unchanged measure is a no-op: same link map, no new or
    updated components.
    """
    created_by = request.created_by if request else None
    try:
        return await get_library_service().link_measure(measure_id, created_by=created_by)
    except MeasureNotFoundError:
        raise HTTPException(status_code=404, detail=f"Measure not found: {measure_id}")


@router.post("/{measure_id}/evaluate", response_model=EvaluationResponse)
async def evaluate_measure(measure_id: str, request: EvaluatePatientsRequest):
    """Evaluate test patients against a stored measure."""
    try:
        traces, score = await get_library_service().evaluate_batch(
            measure_id, request.patients, request.measurement_period()
        )
    except MeasureNotFoundError:
        raise HTTPException(status_code=404, detail=f"Measure not found: {measure_id}")
    logger.info(
        "Measure evaluated via API",
        measure_id=measure_id,
        patients=score.total_patients,
        performance_rate=score.performance_rate,
    )
    return EvaluationResponse(measure_id=measure_id, traces=traces, score=score)
