"""Component construction, versioning and approval.

All functions return new component objects; the caller decides where to
store them. Usage is carried over unchanged by every version operation.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator

from measure_engine.criteria_engine.complexity import (
    calculate_atomic_complexity,
    calculate_composite_complexity,
)
from measure_engine.criteria_engine.timing import parse_timing_expression
from measure_engine.models.component_library import (
    AtomicComponent,
    ComponentLibrary,
    ComponentMetadata,
    ComponentReference,
    ComponentSource,
    ComponentVersionInfo,
    CompositeComponent,
    VersionHistoryEntry,
)
from measure_engine.models.enums import (
    ApprovalStatus,
    ComponentCategory,
    DataElementType,
    LogicalOperator,
)
from measure_engine.models.measure_schema import (
    CodeReference,
    DataElement,
    TimingExpression,
    ValueSetReference,
)

AnyComponent = Union[AtomicComponent, CompositeComponent]

_EXCLUSION_KEYWORDS = ("exclusion", "hospice", "palliative", "frailty", "advanced illness", "long-term care")
_LAB_SYSTEMS = ("loinc",)


class ComponentChanges(BaseModel):
    """Partial edit of a library component; ``None`` fields are left alone."""
    name: Optional[str] = None
    description: Optional[str] = None
    timing: Optional[TimingExpression] = None
    negation: Optional[bool] = None
    codes: Optional[List[CodeReference]] = None
    change_description: str = ""

    @field_validator("timing", mode="before")
    @classmethod
    def _parse_timing_text(cls, value):
        if isinstance(value, str):
            return parse_timing_expression(value)
        return value


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_component_id(kind: str) -> str:
    return f"{kind}-{uuid.uuid4().hex[:12]}"


def initial_version_info(created_by: str, created_at: Optional[str] = None) -> ComponentVersionInfo:
    created_at = created_at or _utcnow_iso()
    return ComponentVersionInfo(
        version_id="1.0",
        status=ApprovalStatus.DRAFT,
        version_history=[VersionHistoryEntry(
            version_id="1.0",
            status=ApprovalStatus.DRAFT,
            created_at=created_at,
            created_by=created_by,
            change_description="Initial version",
        )],
    )


def infer_category(element: DataElement) -> ComponentCategory:
    """Library category for a component created from a data element."""
    text = f"{element.description} {element.value_set.name if element.value_set else ''}".lower()
    if any(keyword in text for keyword in _EXCLUSION_KEYWORDS):
        return ComponentCategory.EXCLUSIONS

    mapping = {
        DataElementType.DEMOGRAPHIC: ComponentCategory.DEMOGRAPHICS,
        DataElementType.ENCOUNTER: ComponentCategory.ENCOUNTERS,
        DataElementType.DIAGNOSIS: ComponentCategory.CONDITIONS,
        DataElementType.PROCEDURE: ComponentCategory.PROCEDURES,
        DataElementType.MEDICATION: ComponentCategory.MEDICATIONS,
        DataElementType.IMMUNIZATION: ComponentCategory.IMMUNIZATIONS,
        DataElementType.ASSESSMENT: ComponentCategory.ASSESSMENTS,
    }
    if element.type in mapping:
        return mapping[element.type]
    if any(system in c.system.lower() for c in element.all_codes() for system in _LAB_SYSTEMS):
        return ComponentCategory.LABORATORY
    return ComponentCategory.CLINICAL_OBSERVATIONS


def create_atomic_component(
    name: str,
    value_set: ValueSetReference,
    timing: Optional[TimingExpression] = None,
    negation: bool = False,
    category: ComponentCategory = ComponentCategory.CLINICAL_OBSERVATIONS,
    description: Optional[str] = None,
    tags: Optional[List[str]] = None,
    created_by: str = "user",
    component_id: Optional[str] = None,
    source: Optional[ComponentSource] = None,
    category_auto_assigned: bool = False,
) -> AtomicComponent:
    now = _utcnow_iso()
    component = AtomicComponent(
        id=component_id or generate_component_id("atomic"),
        name=name,
        description=description,
        value_set=value_set.model_copy(deep=True),
        timing=timing.model_copy() if timing else TimingExpression(),
        negation=negation,
        version_info=initial_version_info(created_by, now),
        metadata=ComponentMetadata(
            created_at=now,
            created_by=created_by,
            updated_at=now,
            updated_by=created_by,
            category=category,
            tags=list(tags or []),
            source=source or ComponentSource(),
            category_auto_assigned=category_auto_assigned,
        ),
    )
    component.complexity = calculate_atomic_complexity(component)
    return component


def create_composite_component(
    name: str,
    operator: LogicalOperator,
    children: List[ComponentReference],
    library: ComponentLibrary,
    category: ComponentCategory = ComponentCategory.CLINICAL_OBSERVATIONS,
    description: Optional[str] = None,
    tags: Optional[List[str]] = None,
    created_by: str = "user",
    component_id: Optional[str] = None,
    source: Optional[ComponentSource] = None,
) -> CompositeComponent:
    if operator not in (LogicalOperator.AND, LogicalOperator.OR):
        raise ValueError(f"Composite operator must be AND or OR, got {operator}")
    now = _utcnow_iso()
    component = CompositeComponent(
        id=component_id or generate_component_id("composite"),
        name=name,
        description=description,
        operator=operator,
        children=[ref.model_copy() for ref in children],
        version_info=initial_version_info(created_by, now),
        metadata=ComponentMetadata(
            created_at=now,
            created_by=created_by,
            updated_at=now,
            updated_by=created_by,
            category=category,
            tags=list(tags or []),
            source=source or ComponentSource(),
        ),
    )
    component.complexity = calculate_composite_complexity(component, library.get)
    return component


def next_version_id(version_id: str) -> str:
    """Minor bump: "1.0" -> "1.1", "1.9" -> "1.10"."""
    major, _, minor = version_id.partition(".")
    try:
        return f"{int(major)}.{int(minor or 0) + 1}"
    except ValueError:
        return f"{version_id}.1"


def apply_component_changes(component: AnyComponent, changes: ComponentChanges, updated_by: str = "user") -> AnyComponent:
    """
    New draft version of ``component`` with ``changes`` applied.

    The history gains one entry; earlier entries are kept as they were.
    """
    now = _utcnow_iso()
    new_version = next_version_id(component.version_info.version_id)
    history = [entry.model_copy() for entry in component.version_info.version_history]
    history.append(VersionHistoryEntry(
        version_id=new_version,
        status=ApprovalStatus.DRAFT,
        created_at=now,
        created_by=updated_by,
        change_description=changes.change_description,
    ))

    update = {
        "version_info": ComponentVersionInfo(
            version_id=new_version,
            status=ApprovalStatus.DRAFT,
            version_history=history,
        ),
        "metadata": component.metadata.model_copy(update={"updated_at": now, "updated_by": updated_by}),
    }
    if changes.name is not None:
        update["name"] = changes.name
    if changes.description is not None:
        update["description"] = changes.description

    if isinstance(component, AtomicComponent):
        if changes.timing is not None:
            update["timing"] = changes.timing.model_copy()
        if changes.negation is not None:
            update["negation"] = changes.negation
        if changes.codes is not None:
            update["value_set"] = component.value_set.model_copy(
                update={"codes": [c.model_copy() for c in changes.codes]}
            )

    updated = component.model_copy(deep=True, update=update)
    if isinstance(updated, AtomicComponent):
        updated.complexity = calculate_atomic_complexity(updated)
    return updated


def _with_current_status(component: AnyComponent, status: ApprovalStatus, **version_fields) -> AnyComponent:
    history = [
        entry.model_copy(update={"status": status, **(
            {"superseded_by": version_fields["superseded_by"]}
            if version_fields.get("superseded_by") else {}
        )})
        if entry.version_id == component.version_info.version_id else entry.model_copy()
        for entry in component.version_info.version_history
    ]
    info_update = {"status": status, "version_history": history}
    for key in ("approved_by", "approved_at", "review_notes"):
        if key in version_fields:
            info_update[key] = version_fields[key]
    return component.model_copy(deep=True, update={
        "version_info": component.version_info.model_copy(update=info_update),
        "metadata": component.metadata.model_copy(update={"updated_at": _utcnow_iso()}),
    })


def approve_component(component: AnyComponent, approved_by: str, review_notes: Optional[str] = None) -> AnyComponent:
    return _with_current_status(
        component,
        ApprovalStatus.APPROVED,
        approved_by=approved_by,
        approved_at=_utcnow_iso(),
        review_notes=review_notes,
    )


def archive_component(component: AnyComponent, superseded_by: Optional[str] = None) -> AnyComponent:
    return _with_current_status(component, ApprovalStatus.ARCHIVED, superseded_by=superseded_by)


def restore_component(component: AnyComponent) -> AnyComponent:
    """Undo an archive: approved if it had been approved, else draft."""
    status = ApprovalStatus.APPROVED if component.version_info.approved_by else ApprovalStatus.DRAFT
    return _with_current_status(component, status)
