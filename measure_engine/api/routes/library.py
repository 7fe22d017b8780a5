"""Component library API routes."""
from fastapi import APIRouter, HTTPException

from measure_engine.api.requests import (
    ApproveComponentRequest,
    ComponentEditRequest,
    MatchElementRequest,
    MergeComponentsRequest,
)
from measure_engine.api.responses import RebuildResponse
from measure_engine.config.logging_config import get_logger
from measure_engine.criteria_engine.exceptions import ComponentNotFoundError
from measure_engine.criteria_engine.library_service import get_library_service
from measure_engine.criteria_engine.matcher import MatchResult
from measure_engine.criteria_engine.merge import COMPONENTS_NOT_FOUND
from measure_engine.criteria_engine.sync import COMPONENT_NOT_FOUND, COMPONENT_NOT_USED, MEASURE_NOT_FOUND

logger = get_logger(__name__)

router = APIRouter(prefix="/library", tags=["Component Library"])


@router.post("/match", response_model=MatchResult)
async def match_element(request: MatchElementRequest):
    """
    Find the library component a data element would link to.

    Exact identity matches (approved components first) win; otherwise the
    best fuzzy name match is returned with its differences for review.
    """
    return await get_library_service().match_element(request.element)


@router.get("/components")
async def list_components():
    components = await get_library_service().list_components()
    return {
        "components": [c.model_dump(mode="json") for c in components],
        "total": len(components),
    }


@router.get("/components/{component_id}")
async def get_component(component_id: str):
    try:
        component = await get_library_service().get_component(component_id)
    except ComponentNotFoundError:
        raise HTTPException(status_code=404, detail=f"Component not found: {component_id}")
    return component.model_dump(mode="json")


@router.post("/components/{component_id}/edit")
async def edit_component(component_id: str, request: ComponentEditRequest):
    """
    Apply an edit to a shared component.

    ``update_all`` creates a new version and rewrites every measure that
    uses the component; ``fork`` gives ``measure_id`` its own copy.
    """
    result = await get_library_service().edit_component(
        component_id,
        request.changes,
        request.action,
        measure_id=request.measure_id,
        updated_by=request.updated_by,
    )
    if not result.success and result.error in (COMPONENT_NOT_FOUND, MEASURE_NOT_FOUND):
        raise HTTPException(status_code=404, detail=f"{result.error.capitalize()}")
    if not result.success and result.error == COMPONENT_NOT_USED:
        raise HTTPException(status_code=409, detail=f"Measure {request.measure_id} does not use component {component_id}")

    response = {
        "success": result.success,
        "action": result.action.value,
        "component_id": result.component_id,
        "error": result.error,
    }
    if result.sync is not None:
        response["updated_measures"] = [m.id for m in result.sync.updated_measures]
        response["failed_measures"] = [f.model_dump() for f in result.sync.failed_measures]
        response["component"] = result.library[component_id].model_dump(mode="json")
    if result.fork is not None and result.fork.success:
        response["forked_component"] = result.fork.forked_component.model_dump(mode="json")
        response["original_component"] = result.library[component_id].model_dump(mode="json")
    return response


@router.post("/merge")
async def merge_components(request: MergeComponentsRequest):
    """
    Merge duplicate atomic components into one new draft component.

    The originals are archived and every measure element that pointed at
    one of them is re-pointed to the merged component.
    """
    result = await get_library_service().merge(
        request.component_ids,
        request.merged_name,
        merged_description=request.merged_description,
        merged_by=request.merged_by,
    )
    if not result.success:
        status_code = 404 if result.error.startswith(COMPONENTS_NOT_FOUND) else 400
        raise HTTPException(status_code=status_code, detail=result.error)
    return {
        "success": True,
        "merged_component": result.merged_component.model_dump(mode="json"),
        "archived_ids": result.archived_ids,
        "updated_measures": [m.id for m in result.updated_measures],
    }


@router.post("/components/{component_id}/approve")
async def approve_component(component_id: str, request: ApproveComponentRequest):
    try:
        component = await get_library_service().approve(component_id, request.approved_by, request.review_notes)
    except ComponentNotFoundError:
        raise HTTPException(status_code=404, detail=f"Component not found: {component_id}")
    return component.model_dump(mode="json")


@router.post("/rebuild", response_model=RebuildResponse)
async def rebuild_usage():
    """Recompute every component's usage from the stored measures."""
    library = await get_library_service().rebuild()
    return RebuildResponse(
        components=len(library),
        usage={cid: c.usage.usage_count for cid, c in library.items()},
    )


@router.get("/integrity")
async def check_integrity(repair: bool = True):
    report = await get_library_service().check_integrity(repair=repair)
    return {
        "clean": report.clean,
        "rebuilt": report.rebuilt,
        "usage_mismatches": [m.model_dump() for m in report.usage_mismatches],
        "reference_mismatches": [m.model_dump() for m in report.reference_mismatches],
    }
