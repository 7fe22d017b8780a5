"""Component Library Service - async, serialized access to the pure criteria engine.

Each top-level operation loads the library and measures from the
repositories, runs the synchronous core, persists what changed, and checks
integrity afterwards. Operations run one at a time under an asyncio.Lock so
a link and a sync never interleave their read-modify-write cycles.
"""

import asyncio
from datetime import date
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from measure_engine.config.logging_config import get_logger
from measure_engine.config.settings import get_settings
from measure_engine.criteria_engine.evaluator import (
    evaluate_measure,
    evaluate_patients,
    summarize_outcomes,
)
from measure_engine.criteria_engine.exceptions import ComponentNotFoundError, MeasureNotFoundError
from measure_engine.criteria_engine.integrity import (
    ReferenceMismatch,
    UsageMismatch,
    check_usage_invariants,
    validate_referential_integrity,
)
from measure_engine.criteria_engine.linker import LinkResult, link_measure_components, rebuild_usage_index
from measure_engine.criteria_engine.matcher import MatchResult, find_match_prioritize_approved
from measure_engine.criteria_engine.merge import MergeResult, merge_components
from measure_engine.criteria_engine.patient_data_adapter import normalize_patient
from measure_engine.criteria_engine.sync import SharedEditResult, handle_shared_edit
from measure_engine.criteria_engine.versioning import ComponentChanges, approve_component
from measure_engine.models.component_library import ComponentLibrary
from measure_engine.models.enums import EditAction
from measure_engine.models.measure_schema import DataElement, UniversalMeasureSpec
from measure_engine.models.validation import MeasureScore, PatientRecord, ValidationTrace
from measure_engine.storage.repository import ComponentRepository, MeasureRepository

logger = get_logger(__name__)


class IntegrityReport(BaseModel):
    usage_mismatches: List[UsageMismatch] = Field(default_factory=list)
    reference_mismatches: List[ReferenceMismatch] = Field(default_factory=list)
    rebuilt: bool = False

    @property
    def clean(self) -> bool:
        return not self.usage_mismatches and not self.reference_mismatches


def _as_patient(patient: Union[PatientRecord, Dict[str, Any]]) -> PatientRecord:
    if isinstance(patient, PatientRecord):
        return patient
    return normalize_patient(patient)


class ComponentLibraryService:
    """Serializes library/measure read-modify-write cycles over the repositories."""

    def __init__(
        self,
        measures: Optional[MeasureRepository] = None,
        components: Optional[ComponentRepository] = None,
    ):
        self.measures = measures or MeasureRepository()
        self.components = components or ComponentRepository()
        self._lock = asyncio.Lock()

    async def _load(self) -> Tuple[ComponentLibrary, Dict[str, UniversalMeasureSpec]]:
        return await self.components.load_library(), await self.measures.load_all()

    async def _load_measure(self, measure_id: str) -> UniversalMeasureSpec:
        measure = await self.measures.load(measure_id)
        if measure is None:
            raise MeasureNotFoundError(measure_id)
        return measure

    async def _repair(self, library: ComponentLibrary, measures: Dict[str, UniversalMeasureSpec]) -> IntegrityReport:
        report = IntegrityReport(
            usage_mismatches=check_usage_invariants(library),
            reference_mismatches=validate_referential_integrity(measures, library),
        )
        if not report.clean:
            logger.warning(
                "Integrity mismatch, rebuilding usage index",
                usage_mismatches=len(report.usage_mismatches),
                reference_mismatches=len(report.reference_mismatches),
            )
            rebuilt = rebuild_usage_index(
                library, measures, auto_archive=get_settings().auto_archive_unused_components
            )
            await self.components.save_library(rebuilt)
            report.rebuilt = True
        return report

    # --- Measures ---

    async def store_measure(self, measure: UniversalMeasureSpec) -> str:
        async with self._lock:
            return await self.measures.store(measure)

    async def get_measure(self, measure_id: str) -> UniversalMeasureSpec:
        return await self._load_measure(measure_id)

    async def list_components(self) -> List:
        return await self.components.list_all()

    async def get_component(self, component_id: str):
        component = await self.components.load(component_id)
        if component is None:
            raise ComponentNotFoundError(component_id)
        return component

    # --- Library operations ---

    async def link_measure(self, measure_id: str, created_by: Optional[str] = None) -> LinkResult:
        """Link a stored measure's elements to the library and persist both."""
        async with self._lock:
            measure = await self._load_measure(measure_id)
            library = await self.components.load_library()

            result = link_measure_components(measure.id, measure.populations, library, created_by=created_by)
            await self.components.store_many(result.new_components + result.updated_components)
            await self.measures.store(measure)

            if result.rebuild_required:
                measures = await self.measures.load_all()
                await self._repair(library, measures)
            return result

    async def match_element(self, element: DataElement) -> MatchResult:
        async with self._lock:
            library = await self.components.load_library()
            return find_match_prioritize_approved(element, library)

    async def edit_component(
        self,
        component_id: str,
        changes: Union[ComponentChanges, dict],
        action: EditAction,
        measure_id: Optional[str] = None,
        updated_by: str = "user",
    ) -> SharedEditResult:
        """Update-all or fork a shared component and persist the outcome."""
        async with self._lock:
            library, measures = await self._load()
            result = handle_shared_edit(
                component_id,
                changes,
                action,
                library,
                measures,
                measure_id=measure_id,
                updated_by=updated_by,
                auto_archive=get_settings().auto_archive_unused_components,
            )
            if result.library:
                await self.components.save_library(result.library)
            updated = []
            if result.sync is not None:
                updated = result.sync.updated_measures
            elif result.fork is not None and result.fork.updated_measure is not None:
                updated = [result.fork.updated_measure]
            if updated:
                await self.measures.store_many(updated)

            if result.library:
                await self._repair(result.library, result.measures)
            return result

    async def merge(
        self,
        component_ids: List[str],
        merged_name: str,
        merged_description: Optional[str] = None,
        merged_by: str = "merge",
    ) -> MergeResult:
        """Merge atomic components and re-point every measure that used them."""
        async with self._lock:
            library, measures = await self._load()
            result = merge_components(
                component_ids,
                merged_name,
                library,
                measures,
                merged_description=merged_description,
                merged_by=merged_by,
            )
            if not result.success:
                return result
            await self.components.save_library(result.library)
            if result.updated_measures:
                await self.measures.store_many(result.updated_measures)
            await self._repair(result.library, result.measures)
            return result

    async def approve(self, component_id: str, approved_by: str, review_notes: Optional[str] = None):
        async with self._lock:
            component = await self.get_component(component_id)
            approved = approve_component(component, approved_by, review_notes)
            await self.components.store(approved)
            return approved

    async def rebuild(self) -> ComponentLibrary:
        async with self._lock:
            library, measures = await self._load()
            rebuilt = rebuild_usage_index(
                library, measures, auto_archive=get_settings().auto_archive_unused_components
            )
            await self.components.save_library(rebuilt)
            return rebuilt

    async def check_integrity(self, repair: bool = True) -> IntegrityReport:
        async with self._lock:
            library, measures = await self._load()
            if repair:
                return await self._repair(library, measures)
            return IntegrityReport(
                usage_mismatches=check_usage_invariants(library),
                reference_mismatches=validate_referential_integrity(measures, library),
            )

    # --- Evaluation ---

    async def evaluate(
        self,
        measure_id: str,
        patient: Union[PatientRecord, Dict[str, Any]],
        measurement_period: Optional[Tuple[date, date]] = None,
    ) -> ValidationTrace:
        async with self._lock:
            measure = await self._load_measure(measure_id)
            return evaluate_measure(measure, _as_patient(patient), measurement_period)

    async def evaluate_batch(
        self,
        measure_id: str,
        patients: List[Union[PatientRecord, Dict[str, Any]]],
        measurement_period: Optional[Tuple[date, date]] = None,
    ) -> Tuple[List[ValidationTrace], MeasureScore]:
        async with self._lock:
            measure = await self._load_measure(measure_id)
            traces = evaluate_patients(measure, [_as_patient(p) for p in patients], measurement_period)
            return traces, summarize_outcomes(measure.id, traces)


_service: Optional[ComponentLibraryService] = None


def get_library_service() -> ComponentLibraryService:
    global _service
    if _service is None:
        _service = ComponentLibraryService()
    return _service


def reset_library_service() -> None:
    global _service
    _service = None
