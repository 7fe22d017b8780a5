"""Consistency checks between the component library and the measures that use it.

``collect_component_references`` is the single definition of "measure M uses
component C"; the usage-index rebuild and the referential checks both derive
from it so they can never disagree.
"""

from collections.abc import Mapping
from typing import Dict, Iterable, List, Literal, Optional, Set, Tuple, Union

from pydantic import BaseModel

from measure_engine.config.logging_config import get_logger
from measure_engine.criteria_engine.criteria_tree import collect_clauses, collect_leaves, has_cycle
from measure_engine.criteria_engine.exceptions import InvariantViolationError
from measure_engine.criteria_engine.identity import (
    clause_identity,
    composite_component_identity,
    has_usable_identity,
)
from measure_engine.criteria_engine.matcher import find_exact_matches
from measure_engine.models.component_library import ComponentLibrary, CompositeComponent
from measure_engine.models.enums import ApprovalStatus
from measure_engine.models.measure_schema import PopulationDefinition, UniversalMeasureSpec

logger = get_logger(__name__)

Measures = Union[Mapping, Iterable[UniversalMeasureSpec]]


class UsageMismatch(BaseModel):
    component_id: str
    usage_count: int
    measure_id_count: int


class ReferenceMismatch(BaseModel):
    kind: Literal["dangling_reference", "missing_usage", "stale_usage"]
    component_id: str
    measure_id: str
    element_id: str = ""
    detail: str = ""


def measure_list(measures: Measures) -> List[UniversalMeasureSpec]:
    if isinstance(measures, Mapping):
        return list(measures.values())
    return list(measures)


def check_usage_invariants(library: ComponentLibrary) -> List[UsageMismatch]:
    """Components whose usage_count disagrees with their measure_ids."""
    mismatches = []
    for component in library.values():
        if not component.usage.is_consistent:
            mismatches.append(UsageMismatch(
                component_id=component.id,
                usage_count=component.usage.usage_count,
                measure_id_count=len(component.usage.measure_ids),
            ))
    return mismatches


def ensure_usage_invariants(library: ComponentLibrary) -> None:
    """Raise InvariantViolationError when any component's usage_count disagrees with its measure_ids."""
    mismatches = check_usage_invariants(library)
    if mismatches:
        raise InvariantViolationError(mismatches)


def _pick_exact(element, library: ComponentLibrary):
    exact = find_exact_matches(element, library)
    if not exact:
        return None
    approved = [c for c in exact if c.version_info.status == ApprovalStatus.APPROVED]
    return (approved or exact)[0]


def _population_references(
    measure_id: str,
    populations: Iterable[PopulationDefinition],
    library: ComponentLibrary,
    composite_keys: Dict[str, Optional[str]],
) -> Tuple[Set[str], List[ReferenceMismatch]]:
    referenced: Set[str] = set()
    dangling: List[ReferenceMismatch] = []
    for population in populations:
        root = population.criteria
        if root is None or has_cycle(root):
            continue
        for element in collect_leaves(root):
            component_id = element.library_component_id
            if component_id:
                if component_id in library:
                    referenced.add(component_id)
                else:
                    dangling.append(ReferenceMismatch(
                        kind="dangling_reference",
                        component_id=component_id,
                        measure_id=measure_id,
                        element_id=element.id,
                        detail="Linked component no longer exists",
                    ))
                continue
            if not has_usable_identity(element):
                continue
            match = _pick_exact(element, library)
            if match is not None:
                referenced.add(match.id)
        for clause in collect_clauses(root):
            key = clause_identity(clause)
            if key is None:
                continue
            for composite_id, composite_key in composite_keys.items():
                if composite_key == key:
                    referenced.add(composite_id)
                    break
    return referenced, dangling


def _composite_keys(library: ComponentLibrary) -> Dict[str, Optional[str]]:
    return {
        c.id: composite_component_identity(c, library)
        for c in library.values()
        if isinstance(c, CompositeComponent)
    }


def referenced_component_ids(
    measure_id: str,
    populations: Iterable[PopulationDefinition],
    library: ComponentLibrary,
) -> Set[str]:
    """Components one measure's populations reference, by the same rules as the rebuild."""
    referenced, _ = _population_references(measure_id, populations, library, _composite_keys(library))
    return referenced


def collect_component_references(
    library: ComponentLibrary,
    measures: Measures,
) -> Tuple[Dict[str, Set[str]], List[ReferenceMismatch]]:
    """
    Measure ids referencing each component, plus dangling links.

    An element counts for the component named by its ``library_component_id``;
    an unlinked element counts for its exact match, if any. A clause counts
    for the composite component with the same composite identity.
    """
    refs: Dict[str, Set[str]] = {component_id: set() for component_id in library}
    dangling: List[ReferenceMismatch] = []
    composite_keys = _composite_keys(library)

    for measure in measure_list(measures):
        referenced, missing = _population_references(measure.id, measure.populations, library, composite_keys)
        for component_id in referenced:
            refs[component_id].add(measure.id)
        dangling.extend(missing)
    return refs, dangling


def validate_referential_integrity(measures: Measures, library: ComponentLibrary) -> List[ReferenceMismatch]:
    """Dangling links, measures missing from a component's usage, and stale usage entries."""
    refs, mismatches = collect_component_references(library, measures)
    for component_id, component in library.items():
        expected = refs[component_id]
        recorded = set(component.usage.measure_ids)
        for measure_id in sorted(expected - recorded):
            mismatches.append(ReferenceMismatch(
                kind="missing_usage",
                component_id=component_id,
                measure_id=measure_id,
                detail="Measure references component but is not in its usage",
            ))
        for measure_id in sorted(recorded - expected):
            mismatches.append(ReferenceMismatch(
                kind="stale_usage",
                component_id=component_id,
                measure_id=measure_id,
                detail="Usage lists a measure that does not reference the component",
            ))
    if mismatches:
        logger.warning("Referential integrity mismatches", count=len(mismatches))
    return mismatches
