"""Library Linker - attach measure data elements to shared library components.

Linking walks every population tree of a measure, links each data element to
an exact-identity library component (creating one when none exists) and
keeps the usage index in lockstep. Fuzzy matches are never auto-linked; they
come back as suggestions for a reviewer.

Failure policy: malformed populations and elements are counted and logged;
the batch always completes with a (possibly partial) result.
"""

from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from measure_engine.config.logging_config import get_logger
from measure_engine.config.settings import get_settings
from measure_engine.criteria_engine.criteria_tree import collect_clauses, collect_leaves, has_cycle, render_expression
from measure_engine.criteria_engine.exceptions import InvariantViolationError, MalformedInputError
from measure_engine.criteria_engine.identity import (
    clause_identity,
    component_identity,
    composite_component_identity,
    element_identity,
    has_usable_identity,
    usable_oid,
)
from measure_engine.criteria_engine.integrity import (
    Measures,
    check_usage_invariants,
    collect_component_references,
    ensure_usage_invariants,
    referenced_component_ids,
)
from measure_engine.criteria_engine.matcher import (
    ComponentDiff,
    candidate_name,
    find_match_prioritize_approved,
)
from measure_engine.criteria_engine.versioning import (
    archive_component,
    create_atomic_component,
    create_composite_component,
    generate_component_id,
    infer_category,
    restore_component,
)
from measure_engine.models.component_library import (
    AtomicComponent,
    ComponentLibrary,
    ComponentReference,
    ComponentSource,
    CompositeComponent,
    LibraryComponent,
)
from measure_engine.models.enums import ApprovalStatus, ComponentCategory, MatchType
from measure_engine.models.measure_schema import (
    DataElement,
    LogicalClause,
    PopulationDefinition,
    ValueSetReference,
)

logger = get_logger(__name__)

IdFactory = Callable[[str], str]


class LinkSuggestion(BaseModel):
    """A similar (not exact) component a reviewer may choose to link."""
    element_id: str
    component_id: str
    similarity: float = 0.0
    needs_review: bool = False
    differences: List[ComponentDiff] = Field(default_factory=list)


class LinkResult(BaseModel):
    measure_id: str
    link_map: Dict[str, str] = Field(default_factory=dict)
    new_components: List[LibraryComponent] = Field(default_factory=list)
    updated_components: List[LibraryComponent] = Field(default_factory=list)
    suggestions: List[LinkSuggestion] = Field(default_factory=list)
    released: List[str] = Field(
        default_factory=list, description="Components this measure no longer references; its id was removed from their usage"
    )
    skipped: int = Field(0, description="Elements without an OID or codes")
    zero_codes: int = Field(0, description="Elements with an OID but no codes and no existing component")
    malformed: int = Field(0, description="Populations without a criteria root or with a cycle")
    errors: int = 0
    invariant_violations: int = 0
    rebuild_required: bool = False


class _LinkState:
    """Mutable bookkeeping for one linking run."""

    def __init__(self, measure_id: str, library: ComponentLibrary, created_by: str, id_factory: IdFactory):
        self.measure_id = measure_id
        self.library = library
        self.created_by = created_by
        self.id_factory = id_factory
        self.result = LinkResult(measure_id=measure_id)
        self.new_ids: Dict[str, None] = {}
        self.updated_ids: Dict[str, None] = {}

    def mark_updated(self, component_id: str) -> None:
        if component_id not in self.new_ids:
            self.updated_ids[component_id] = None


def _default_id_factory(kind: str) -> str:
    return generate_component_id(kind)


def _existing_link(element: DataElement, library: ComponentLibrary) -> Optional[AtomicComponent]:
    """The component the element already points at, if it still has the element's identity."""
    component = library.get(element.library_component_id) if element.library_component_id else None
    if isinstance(component, AtomicComponent) and component_identity(component) == element_identity(element):
        return component
    return None


def _link_element(element: DataElement, state: _LinkState) -> None:
    result = state.result
    library = state.library

    if not has_usable_identity(element):
        result.skipped += 1
        logger.debug("Element has no usable identity", element_id=element.id)
        return

    component = _existing_link(element, library)
    if component is None:
        match = find_match_prioritize_approved(element, library)
        if match.match_type == MatchType.EXACT:
            component = library[match.matched.id]
        elif match.match_type == MatchType.SIMILAR:
            result.suggestions.append(LinkSuggestion(
                element_id=element.id,
                component_id=match.matched.id,
                similarity=match.similarity or 0.0,
                needs_review=match.needs_review,
                differences=match.differences,
            ))

    if component is not None:
        changed = False
        codes = element.all_codes()
        if not component.value_set.codes and codes:
            component.value_set.codes = [c.model_copy() for c in codes]
            changed = True
        if component.usage.add(state.measure_id):
            changed = True
        if changed:
            state.mark_updated(component.id)
        element.library_component_id = component.id
        result.link_map[element.id] = component.id
        return

    codes = element.all_codes()
    if not codes:
        result.zero_codes += 1
        logger.info("Element has a value set but no codes; not creating component", element_id=element.id)
        return

    value_set = element.value_set
    component = create_atomic_component(
        name=candidate_name(element) or element.id,
        value_set=ValueSetReference(
            oid=usable_oid(value_set.oid) if value_set else None,
            name=value_set.name if value_set else element.description,
            version=value_set.version if value_set else None,
            codes=codes,
        ),
        timing=element.timing,
        negation=element.negation,
        category=infer_category(element),
        description=element.description or None,
        created_by=state.created_by,
        component_id=state.id_factory("atomic"),
        source=ComponentSource(origin="imported", original_measure_id=state.measure_id),
        category_auto_assigned=True,
    )
    component.usage.add(state.measure_id)
    library[component.id] = component
    state.new_ids[component.id] = None
    element.library_component_id = component.id
    result.link_map[element.id] = component.id


def _link_clause(clause: LogicalClause, state: _LinkState) -> None:
    key = clause_identity(clause)
    if key is None:
        return
    library = state.library
    for component in library.values():
        if isinstance(component, CompositeComponent) and composite_component_identity(component, library) == key:
            if component.usage.add(state.measure_id):
                state.mark_updated(component.id)
            state.result.link_map[clause.id] = component.id
            return

    children = []
    for child in clause.children:
        linked = library.get(child.library_component_id) if child.library_component_id else None
        if linked is None:
            return
        children.append(ComponentReference(
            component_id=linked.id,
            version_id=linked.version_info.version_id,
            display_name=linked.name,
        ))

    composite = create_composite_component(
        name=clause.description or render_expression(clause),
        operator=clause.operator,
        children=children,
        library=library,
        category=_composite_category(children, library),
        created_by=state.created_by,
        component_id=state.id_factory("composite"),
        source=ComponentSource(origin="imported", original_measure_id=state.measure_id),
    )
    composite.usage.add(state.measure_id)
    library[composite.id] = composite
    state.new_ids[composite.id] = None
    state.result.link_map[clause.id] = composite.id


def _composite_category(children: List[ComponentReference], library: ComponentLibrary) -> ComponentCategory:
    categories = {library[ref.component_id].metadata.category for ref in children}
    if len(categories) == 1:
        return categories.pop()
    return ComponentCategory.CLINICAL_OBSERVATIONS


def _check_population(population: PopulationDefinition) -> LogicalClause:
    root = population.criteria
    if root is None:
        raise MalformedInputError(f"Population '{population.id}' has no criteria root")
    if has_cycle(root):
        raise MalformedInputError(f"Population '{population.id}' criteria contain a cycle")
    return root


def _release_stale_usage(populations: List[PopulationDefinition], state: _LinkState) -> None:
    """Drop the measure from components none of its elements or clauses reference any more."""
    referenced = referenced_component_ids(state.measure_id, populations, state.library)
    for component in state.library.values():
        if component.id in referenced or state.measure_id not in component.usage.measure_ids:
            continue
        component.usage.remove(state.measure_id)
        state.mark_updated(component.id)
        state.result.released.append(component.id)
        logger.info(
            "Measure no longer references component",
            measure_id=state.measure_id,
            component_id=component.id,
        )


def link_measure_components(
    measure_id: str,
    populations: List[PopulationDefinition],
    library: ComponentLibrary,
    created_by: Optional[str] = None,
    id_factory: Optional[IdFactory] = None,
) -> LinkResult:
    """
    Link every data element of a measure to the library.

    ``library`` is mutated in place (new components appended, matched ones
    updated) and elements get ``library_component_id`` set. Components the
    measure stopped referencing (an edited element moved to another
    component) lose the measure from their usage. Re-running with no
    intervening changes produces the same ``link_map`` and no new or updated
    components.
    """
    state = _LinkState(
        measure_id=measure_id,
        library=library,
        created_by=created_by or get_settings().auto_import_user,
        id_factory=id_factory or _default_id_factory,
    )
    result = state.result

    try:
        ensure_usage_invariants(library)
    except InvariantViolationError as exc:
        result.invariant_violations = len(exc.mismatches)
        result.rebuild_required = True
        logger.warning(
            "Usage invariant violated before linking",
            measure_id=measure_id,
            component_ids=[m.component_id for m in exc.mismatches],
        )

    for population in populations:
        try:
            root = _check_population(population)
        except MalformedInputError as exc:
            result.malformed += 1
            logger.warning("Malformed population skipped", measure_id=measure_id, error=str(exc))
            continue

        for element in collect_leaves(root):
            try:
                _link_element(element, state)
            except Exception as exc:
                result.errors += 1
                logger.warning(
                    "Element linking failed",
                    measure_id=measure_id,
                    element_id=element.id,
                    error=str(exc),
                )
        for clause in collect_clauses(root):
            try:
                _link_clause(clause, state)
            except Exception as exc:
                result.errors += 1
                logger.warning(
                    "Clause linking failed",
                    measure_id=measure_id,
                    clause_id=clause.id,
                    error=str(exc),
                )

    _release_stale_usage(populations, state)

    result.new_components = [library[cid] for cid in state.new_ids]
    result.updated_components = [library[cid] for cid in state.updated_ids]

    if not result.rebuild_required and check_usage_invariants(library):
        result.rebuild_required = True

    logger.info(
        "Measure linked",
        measure_id=measure_id,
        linked=len(result.link_map),
        new=len(result.new_components),
        updated=len(result.updated_components),
        released=len(result.released),
        suggestions=len(result.suggestions),
        skipped=result.skipped,
        zero_codes=result.zero_codes,
        malformed=result.malformed,
        errors=result.errors,
    )
    return result


def rebuild_usage_index(
    library: ComponentLibrary,
    measures: Measures,
    auto_archive: bool = False,
) -> ComponentLibrary:
    """
    Recompute every component's usage from the measures; returns a new library.

    This is the one operation allowed to repair a usage_count / measure_ids
    mismatch. Dangling links are logged and ignored. With ``auto_archive``,
    unused components are archived and archived components in use restored.
    """
    rebuilt: ComponentLibrary = {cid: c.model_copy(deep=True) for cid, c in library.items()}
    refs, dangling = collect_component_references(rebuilt, measures)

    corrected = 0
    for component_id, component in list(rebuilt.items()):
        measure_ids = sorted(refs[component_id])
        if component.usage.measure_ids != measure_ids or not component.usage.is_consistent:
            corrected += 1
        component.usage.replace(measure_ids)

        if auto_archive:
            status = component.version_info.status
            if not measure_ids and status != ApprovalStatus.ARCHIVED:
                rebuilt[component_id] = archive_component(component)
            elif measure_ids and status == ApprovalStatus.ARCHIVED:
                rebuilt[component_id] = restore_component(component)

    for mismatch in dangling:
        logger.warning(
            "Dangling component reference",
            measure_id=mismatch.measure_id,
            element_id=mismatch.element_id,
            component_id=mismatch.component_id,
        )
    logger.info(
        "Usage index rebuilt",
        components=len(rebuilt),
        corrected=corrected,
        dangling=len(dangling),
    )
    return rebuilt
