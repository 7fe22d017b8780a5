"""Request models for measure engine API endpoints."""
from datetime import date
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from measure_engine.criteria_engine.versioning import ComponentChanges
from measure_engine.models.enums import EditAction
from measure_engine.models.measure_schema import DataElement


class MatchElementRequest(BaseModel):
    """Find the library component an element would link to."""
    element: DataElement


class LinkMeasureRequest(BaseModel):
    created_by: Optional[str] = Field(None, description="Author recorded on new components")


class ComponentEditRequest(BaseModel):
    """Edit a shared component, either everywhere or as a fork for one measure."""
    action: EditAction = EditAction.UPDATE_ALL
    changes: ComponentChanges
    measure_id: Optional[str] = Field(None, description="Required when action is 'fork'")
    updated_by: str = "user"

    @model_validator(mode="after")
    def _fork_needs_measure(self):
        if self.action == EditAction.FORK and not self.measure_id:
            raise ValueError("measure_id is required to fork a component")
        return self


class ApproveComponentRequest(BaseModel):
    approved_by: str
    review_notes: Optional[str] = None


class EvaluatePatientsRequest(BaseModel):
    """Raw test patients (demographics + coded fact lists) to evaluate."""
    patients: List[Dict[str, Any]] = Field(..., min_length=1)
    measurement_period_start: Optional[date] = None
    measurement_period_end: Optional[date] = None

    @model_validator(mode="after")
    def _period_is_complete(self):
        if (self.measurement_period_start is None) != (self.measurement_period_end is None):
            raise ValueError("measurement period needs both start and end")
        if self.measurement_period_start and self.measurement_period_start > self.measurement_period_end:
            raise ValueError("measurement period start is after its end")
        return self

    def measurement_period(self):
        if self.measurement_period_start is None:
            return None
        return self.measurement_period_start, self.measurement_period_end


class MergeComponentsRequest(BaseModel):
    """Collapse duplicate atomic components into one new draft component."""
    component_ids: List[str] = Field(..., description="At least two atomic, non-archived component ids")
    merged_name: str = Field(..., min_length=1)
    merged_description: Optional[str] = None
    merged_by: str = "merge"
