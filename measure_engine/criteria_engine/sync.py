"""Sync Propagator - push library component edits into the measures that use them.

Two edit paths:
- update all: every measure in the component's usage gets its linked
  elements rewritten (``sync_component_to_measures``)
- fork: one measure gets a private copy of the component; every other
  measure keeps the original (``fork_component``)

Nothing here mutates its inputs. Results carry the rewritten measures and
components; the caller persists them.
"""

import uuid
from collections.abc import Mapping
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field

from measure_engine.config.logging_config import get_logger
from measure_engine.criteria_engine.criteria_tree import collect_leaves, has_cycle, is_element, transform
from measure_engine.criteria_engine.integrity import Measures, measure_list
from measure_engine.criteria_engine.linker import rebuild_usage_index
from measure_engine.criteria_engine.versioning import (
    ComponentChanges,
    apply_component_changes,
    initial_version_info,
)
from measure_engine.models.component_library import (
    ComponentLibrary,
    ComponentUsage,
    LibraryComponent,
)
from measure_engine.models.enums import EditAction
from measure_engine.models.measure_schema import UniversalMeasureSpec

logger = get_logger(__name__)

COMPONENT_NOT_FOUND = "component not found"
MEASURE_NOT_FOUND = "measure not found"
COMPONENT_NOT_USED = "measure does not use component"


class SyncFailure(BaseModel):
    measure_id: str
    error: str


class SyncResult(BaseModel):
    success: bool
    component_id: str
    updated_measures: List[UniversalMeasureSpec] = Field(default_factory=list)
    failed_measures: List[SyncFailure] = Field(default_factory=list)
    error: Optional[str] = None


class ForkResult(BaseModel):
    success: bool
    component_id: str
    measure_id: str
    original_component: Optional[LibraryComponent] = None
    forked_component: Optional[LibraryComponent] = None
    updated_measure: Optional[UniversalMeasureSpec] = None
    error: Optional[str] = None


class SharedEditResult(BaseModel):
    success: bool
    action: EditAction
    component_id: str
    library: Dict[str, LibraryComponent] = Field(default_factory=dict)
    measures: Dict[str, UniversalMeasureSpec] = Field(default_factory=dict)
    sync: Optional[SyncResult] = None
    fork: Optional[ForkResult] = None
    error: Optional[str] = None


def _as_changes(changes: Union[ComponentChanges, dict]) -> ComponentChanges:
    if isinstance(changes, ComponentChanges):
        return changes
    return ComponentChanges.model_validate(changes)


def _measures_by_id(measures: Measures) -> Dict[str, UniversalMeasureSpec]:
    if isinstance(measures, Mapping):
        return dict(measures)
    return {m.id: m for m in measure_list(measures)}


def apply_changes_to_element(element, changes: ComponentChanges):
    """Overwrite the element fields an edit touches; re-applying is a no-op."""
    if changes.name is not None:
        element.description = changes.name
    if changes.timing is not None:
        element.timing = changes.timing.model_copy()
    if changes.negation is not None:
        element.negation = changes.negation
    if changes.codes is not None:
        codes = [c.model_copy() for c in changes.codes]
        if element.value_set is not None:
            element.value_set = element.value_set.model_copy(update={"codes": codes})
            element.direct_codes = []
        else:
            element.direct_codes = codes
    return element


def linked_element_ids(measure: UniversalMeasureSpec, component_id: str) -> List[str]:
    """Ids of the measure's elements whose library_component_id is ``component_id``."""
    ids = []
    for population in measure.populations:
        root = population.criteria
        if root is None or has_cycle(root):
            continue
        ids.extend(e.id for e in collect_leaves(root) if e.library_component_id == component_id)
    return ids


def rewrite_measure(
    measure: UniversalMeasureSpec,
    component_id: str,
    changes: ComponentChanges,
    relink_to: Optional[str] = None,
) -> UniversalMeasureSpec:
    """
    Copy of ``measure`` with every element linked to ``component_id`` rewritten.

    With ``relink_to`` the rewritten elements are also re-pointed there.
    """
    def rewrite(node):
        if is_element(node) and node.library_component_id == component_id:
            apply_changes_to_element(node, changes)
            if relink_to is not None:
                node.library_component_id = relink_to
        return node

    populations = []
    for population in measure.populations:
        criteria = transform(population.criteria, rewrite) if population.criteria is not None else None
        populations.append(population.model_copy(update={"criteria": criteria}))
    return measure.model_copy(deep=True, update={"populations": populations})


def sync_component_to_measures(
    component_id: str,
    changes: Union[ComponentChanges, dict],
    library: ComponentLibrary,
    measures: Measures,
) -> SyncResult:
    """
    Rewrite the linked elements of every measure in the component's usage.

    Trusts ``usage.measure_ids``; rebuild the usage index first if it may be
    stale. Each measure is rewritten whole or not at all; failures are
    reported per measure and do not roll back the others.
    """
    component = library.get(component_id)
    if component is None:
        logger.warning("Sync requested for unknown component", component_id=component_id)
        return SyncResult(success=False, component_id=component_id, error=COMPONENT_NOT_FOUND)

    changes = _as_changes(changes)
    by_id = _measures_by_id(measures)
    result = SyncResult(success=True, component_id=component_id)

    for measure_id in component.usage.measure_ids:
        measure = by_id.get(measure_id)
        if measure is None:
            result.failed_measures.append(SyncFailure(measure_id=measure_id, error=MEASURE_NOT_FOUND))
            logger.warning("Measure in usage index not found", component_id=component_id, measure_id=measure_id)
            continue
        try:
            result.updated_measures.append(rewrite_measure(measure, component_id, changes))
        except Exception as exc:
            result.failed_measures.append(SyncFailure(measure_id=measure_id, error=str(exc)))
            logger.warning("Measure sync failed", component_id=component_id, measure_id=measure_id, error=str(exc))

    if result.failed_measures:
        result.success = False
        result.error = f"{len(result.failed_measures)} measure(s) failed to sync"

    logger.info(
        "Component synced to measures",
        component_id=component_id,
        updated=len(result.updated_measures),
        failed=len(result.failed_measures),
    )
    return result


def fork_component(
    component_id: str,
    measure_id: str,
    changes: Union[ComponentChanges, dict],
    library: ComponentLibrary,
    measures: Measures,
    new_id: Optional[str] = None,
    created_by: str = "user",
) -> ForkResult:
    """
    Give one measure a private copy of a shared component.

    The copy starts at version 1.0 (draft) with usage ``[measure_id]``; the
    original loses ``measure_id`` from its usage. Only that measure's
    elements are re-pointed and rewritten. The measure must have at least
    one element linked to the component.
    """
    component = library.get(component_id)
    if component is None:
        return ForkResult(success=False, component_id=component_id, measure_id=measure_id, error=COMPONENT_NOT_FOUND)
    measure = _measures_by_id(measures).get(measure_id)
    if measure is None:
        return ForkResult(success=False, component_id=component_id, measure_id=measure_id, error=MEASURE_NOT_FOUND)
    if not linked_element_ids(measure, component_id):
        logger.warning(
            "Fork requested for a measure that does not use the component",
            component_id=component_id,
            measure_id=measure_id,
        )
        return ForkResult(success=False, component_id=component_id, measure_id=measure_id, error=COMPONENT_NOT_USED)

    changes = _as_changes(changes)
    fork_id = new_id or f"{component_id}-fork-{uuid.uuid4().hex[:8]}"

    forked = apply_component_changes(component, changes, created_by)
    forked.id = fork_id
    forked.version_info = initial_version_info(created_by)
    forked.version_info.version_history[0].change_description = (
        changes.change_description or f"Forked from {component_id}"
    )
    forked.usage = ComponentUsage()
    forked.usage.add(measure_id)
    forked.metadata.source = forked.metadata.source.model_copy(update={
        "origin": "custom",
        "origin_reference": component_id,
        "original_measure_id": measure_id,
    })

    original = component.model_copy(deep=True)
    original.usage.remove(measure_id)

    updated_measure = rewrite_measure(measure, component_id, changes, relink_to=fork_id)

    logger.info("Component forked", component_id=component_id, fork_id=fork_id, measure_id=measure_id)
    return ForkResult(
        success=True,
        component_id=component_id,
        measure_id=measure_id,
        original_component=original,
        forked_component=forked,
        updated_measure=updated_measure,
    )


def handle_shared_edit(
    component_id: str,
    changes: Union[ComponentChanges, dict],
    action: EditAction,
    library: ComponentLibrary,
    measures: Measures,
    measure_id: Optional[str] = None,
    updated_by: str = "user",
    auto_archive: bool = False,
) -> SharedEditResult:
    """Apply an edit to a shared component as update-all or fork; returns new collections."""
    action = EditAction(action)
    changes = _as_changes(changes)
    new_library = dict(library)
    new_measures = _measures_by_id(measures)

    component = library.get(component_id)
    if component is None:
        return SharedEditResult(success=False, action=action, component_id=component_id, error=COMPONENT_NOT_FOUND)

    if action == EditAction.UPDATE_ALL:
        new_library[component_id] = apply_component_changes(component, changes, updated_by)
        sync = sync_component_to_measures(component_id, changes, new_library, new_measures)
        for measure in sync.updated_measures:
            new_measures[measure.id] = measure
        return SharedEditResult(
            success=sync.success,
            action=action,
            component_id=component_id,
            library=new_library,
            measures=new_measures,
            sync=sync,
            error=sync.error,
        )

    if not measure_id:
        return SharedEditResult(success=False, action=action, component_id=component_id, error="measure_id is required to fork")

    fork = fork_component(component_id, measure_id, changes, library, new_measures, created_by=updated_by)
    if not fork.success:
        return SharedEditResult(success=False, action=action, component_id=component_id, fork=fork, error=fork.error)

    new_library[component_id] = fork.original_component
    new_library[fork.forked_component.id] = fork.forked_component
    new_measures[measure_id] = fork.updated_measure
    new_library = rebuild_usage_index(new_library, new_measures, auto_archive=auto_archive)
    return SharedEditResult(
        success=True,
        action=action,
        component_id=component_id,
        library=new_library,
        measures=new_measures,
        fork=fork,
    )
