"""Component Merge - collapse duplicate atomic components into one.

The merged component takes the union of the originals' codes, usage and
tags, and the timing and negation of the first original. The originals are
archived (superseded by the merged id) and every measure element linked to
one of them is re-pointed to the merged component and aligned with its
definition, so re-linking the measure later finds the merged component by
identity.

Nothing here mutates its inputs; the caller persists the returned library
and measures.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from measure_engine.config.logging_config import get_logger
from measure_engine.criteria_engine.criteria_tree import is_element, transform
from measure_engine.criteria_engine.integrity import Measures, measure_list
from measure_engine.criteria_engine.linker import rebuild_usage_index
from measure_engine.criteria_engine.sync import linked_element_ids
from measure_engine.criteria_engine.versioning import (
    archive_component,
    create_atomic_component,
    generate_component_id,
)
from measure_engine.models.component_library import (
    AtomicComponent,
    ComponentLibrary,
    ComponentSource,
    LibraryComponent,
)
from measure_engine.models.enums import ApprovalStatus
from measure_engine.models.measure_schema import CodeReference, UniversalMeasureSpec, ValueSetReference

logger = get_logger(__name__)

COMPONENTS_NOT_FOUND = "Component IDs not found"


class MergeResult(BaseModel):
    success: bool
    component_ids: List[str] = Field(default_factory=list)
    merged_component: Optional[AtomicComponent] = None
    archived_ids: List[str] = Field(default_factory=list)
    updated_measures: List[UniversalMeasureSpec] = Field(default_factory=list)
    library: Dict[str, LibraryComponent] = Field(default_factory=dict)
    measures: Dict[str, UniversalMeasureSpec] = Field(default_factory=dict)
    error: Optional[str] = None


def _union_codes(components: List[AtomicComponent]) -> List[CodeReference]:
    seen = set()
    codes = []
    for component in components:
        for code in component.value_set.codes:
            key = (code.system, code.code)
            if key not in seen:
                seen.add(key)
                codes.append(code.model_copy())
    return codes


def _union_tags(components: List[AtomicComponent]) -> List[str]:
    tags: Dict[str, None] = {}
    for component in components:
        for tag in component.metadata.tags:
            tags[tag] = None
    return list(tags)


def _validate(component_ids: List[str], library: ComponentLibrary) -> Optional[str]:
    if len(component_ids) < 2:
        return "At least 2 components must be selected for merge"
    missing = [cid for cid in component_ids if cid not in library]
    if missing:
        return f"{COMPONENTS_NOT_FOUND}: {', '.join(missing)}"
    archived = [
        cid for cid in component_ids
        if library[cid].version_info.status == ApprovalStatus.ARCHIVED
    ]
    if archived:
        return f"Cannot merge archived components: {', '.join(archived)}"
    composite = [cid for cid in component_ids if not isinstance(library[cid], AtomicComponent)]
    if composite:
        return f"Only atomic components can be merged: {', '.join(composite)}"
    return None


def repoint_measure(measure: UniversalMeasureSpec, merged_ids: List[str], merged: AtomicComponent) -> UniversalMeasureSpec:
    """Copy of ``measure`` with elements linked to ``merged_ids`` pointing at ``merged``."""
    def repoint(node):
        if is_element(node) and node.library_component_id in merged_ids:
            node.library_component_id = merged.id
            node.value_set = merged.value_set.model_copy(deep=True)
            node.direct_codes = []
            node.timing = merged.timing.model_copy()
            node.negation = merged.negation
        return node

    populations = []
    for population in measure.populations:
        criteria = transform(population.criteria, repoint) if population.criteria is not None else None
        populations.append(population.model_copy(update={"criteria": criteria}))
    return measure.model_copy(deep=True, update={"populations": populations})


def merge_components(
    component_ids: List[str],
    merged_name: str,
    library: ComponentLibrary,
    measures: Measures,
    merged_description: Optional[str] = None,
    merged_by: str = "merge",
    new_id: Optional[str] = None,
) -> MergeResult:
    """
    Merge two or more atomic, non-archived components into a new draft component.

    Fails without changes when fewer than two ids are given, an id is
    unknown, or a component is archived or composite.
    """
    component_ids = list(dict.fromkeys(component_ids))
    error = _validate(component_ids, library)
    if error is not None:
        logger.warning("Merge rejected", component_ids=component_ids, error=error)
        return MergeResult(success=False, component_ids=component_ids, error=error)

    originals = [library[cid] for cid in component_ids]
    base = originals[0]
    names = [c.name for c in originals]

    merged = create_atomic_component(
        name=merged_name,
        value_set=ValueSetReference(name=merged_name, codes=_union_codes(originals)),
        timing=base.timing,
        negation=base.negation,
        category=base.metadata.category,
        description=merged_description or f"Combined component: {' + '.join(names)}",
        tags=_union_tags(originals),
        created_by=merged_by,
        component_id=new_id or generate_component_id("merged"),
        source=ComponentSource(origin="custom", origin_reference=", ".join(component_ids)),
    )
    merged.version_info.version_history[0].change_description = f"Merged from: {', '.join(names)}"
    for original in originals:
        for measure_id in original.usage.measure_ids:
            merged.usage.add(measure_id)

    new_measures = {m.id: m for m in measure_list(measures)}
    updated = []
    for measure in new_measures.values():
        if any(linked_element_ids(measure, cid) for cid in component_ids):
            updated.append(repoint_measure(measure, component_ids, merged))
    for measure in updated:
        new_measures[measure.id] = measure

    new_library = dict(library)
    for original in originals:
        new_library[original.id] = archive_component(original, superseded_by=merged.id)
    new_library[merged.id] = merged
    new_library = rebuild_usage_index(new_library, new_measures)

    logger.info(
        "Components merged",
        merged_id=merged.id,
        component_ids=component_ids,
        codes=len(merged.value_set.codes),
        updated_measures=len(updated),
    )
    return MergeResult(
        success=True,
        component_ids=component_ids,
        merged_component=new_library[merged.id],
        archived_ids=component_ids,
        updated_measures=updated,
        library=new_library,
        measures=new_measures,
    )
