import itertools

import pytest
from conftest import colonoscopy_element, encounter_element, make_measure, numerator_measure, population

from measure_engine.criteria_engine.exceptions import InvariantViolationError
from measure_engine.criteria_engine.integrity import (
    check_usage_invariants,
    ensure_usage_invariants,
    validate_referential_integrity,
)
from measure_engine.criteria_engine.linker import link_measure_components, rebuild_usage_index
from measure_engine.criteria_engine.timing import parse_timing_expression
from measure_engine.criteria_engine.versioning import approve_component
from measure_engine.models.component_library import AtomicComponent, CompositeComponent
from measure_engine.models.enums import ApprovalStatus, DataElementType, LogicalOperator, PopulationType
from measure_engine.models.measure_schema import (
    CodeReference,
    DataElement,
    LogicalClause,
    PopulationDefinition,
    ValueSetReference,
)


def _ids():
    counter = itertools.count(1)
    return lambda kind: f"{kind}-{next(counter)}"


def test_linking_identical_element_reuses_component(crc_component):
    library = {crc_component.id: crc_component}
    m2 = numerator_measure("M2", colonoscopy_element("m2-colonoscopy"))

    result = link_measure_components("M2", m2.populations, library)

    assert result.link_map == {"m2-colonoscopy": crc_component.id}
    assert result.new_components == []
    assert [c.id for c in result.updated_components] == [crc_component.id]
    assert library[crc_component.id].usage.usage_count == 2
    assert library[crc_component.id].usage.measure_ids == ["M1", "M2"]
    assert m2.populations[0].criteria.children[0].library_component_id == crc_component.id


def test_unmatched_element_creates_atomic_component():
    library = {}
    measure = numerator_measure("M1", colonoscopy_element())

    result = link_measure_components("M1", measure.populations, library, created_by="importer", id_factory=_ids())

    assert [c.id for c in result.new_components] == ["atomic-1"]
    component = library["atomic-1"]
    assert isinstance(component, AtomicComponent)
    assert component.usage.measure_ids == ["M1"]
    assert component.metadata.created_by == "importer"
    assert component.metadata.source.origin == "imported"
    assert component.version_info.status == ApprovalStatus.DRAFT


def test_linking_twice_is_idempotent():
    library = {}
    measure = make_measure(
        "M1",
        population(PopulationType.INITIAL_POPULATION, colonoscopy_element("a"), encounter_element("b")),
    )
    first = link_measure_components("M1", measure.populations, library, id_factory=_ids())
    snapshot = {cid: c.model_dump() for cid, c in library.items()}

    second = link_measure_components("M1", measure.populations, library, id_factory=_ids())

    assert second.link_map == first.link_map
    assert second.new_components == []
    assert second.updated_components == []
    assert {cid: c.model_dump() for cid, c in library.items()} == snapshot


def test_clause_of_linked_elements_becomes_composite():
    library = {}
    measure = make_measure(
        "M1",
        population(
            PopulationType.INITIAL_POPULATION,
            colonoscopy_element("a"),
            encounter_element("b"),
            operator=LogicalOperator.OR,
        ),
    )
    result = link_measure_components("M1", measure.populations, library, id_factory=_ids())

    composites = [c for c in result.new_components if isinstance(c, CompositeComponent)]
    assert len(composites) == 1
    assert composites[0].operator == LogicalOperator.OR
    assert result.link_map["initial_population-root"] == composites[0].id
    assert {ref.component_id for ref in composites[0].children} == {result.link_map["a"], result.link_map["b"]}


def test_elements_without_identity_are_skipped_and_counted():
    no_identity = DataElement(id="el-empty", type=DataElementType.DIAGNOSIS, description="Unspecified")
    zero_codes = DataElement(
        id="el-zero",
        type=DataElementType.DIAGNOSIS,
        value_set=ValueSetReference(oid="1.2.3.4", name="Empty Value Set"),
    )
    measure = numerator_measure("M1", no_identity)
    measure.populations[0].criteria.children.append(zero_codes)
    measure.populations.append(PopulationDefinition(id="broken", type=PopulationType.DENOMINATOR))

    library = {}
    result = link_measure_components("M1", measure.populations, library)

    assert result.skipped == 1
    assert result.zero_codes == 1
    assert result.malformed == 1
    assert result.link_map == {}
    assert library == {}


def test_exact_match_backfills_missing_codes():
    bare = approve_component(
        AtomicComponent(
            id="comp-bare",
            name="Colonoscopy",
            value_set=ValueSetReference(oid="2.16.840.1.113883.3.464.1003.198.12.1011", name="Colonoscopy"),
        ),
        approved_by="reviewer",
    )
    library = {bare.id: bare}
    link_measure_components("M1", numerator_measure("M1", colonoscopy_element()).populations, library)
    assert [c.code for c in library[bare.id].value_set.codes] == ["44388"]


def test_usage_invariant_holds_after_linking_many_measures():
    library = {}
    for index in range(3):
        measure = numerator_measure(f"M{index}", colonoscopy_element(f"el-{index}"))
        link_measure_components(measure.id, measure.populations, library, id_factory=_ids())
    assert check_usage_invariants(library) == []
    assert len(library) == 1
    assert next(iter(library.values())).usage.measure_ids == ["M0", "M1", "M2"]


def test_rebuild_removes_corrupted_measure_id(crc_component, linked_measures):
    crc_component.usage.measure_ids = ["GHOST", "M1", "M2"]
    crc_component.usage.usage_count = 3
    library = {crc_component.id: crc_component}

    mismatches = validate_referential_integrity(linked_measures, library)
    assert [(m.kind, m.measure_id) for m in mismatches] == [("stale_usage", "GHOST")]

    rebuilt = rebuild_usage_index(library, linked_measures)

    assert rebuilt[crc_component.id].usage.measure_ids == ["M1", "M2"]
    assert rebuilt[crc_component.id].usage.usage_count == 2
    assert library[crc_component.id].usage.usage_count == 3
    assert validate_referential_integrity(linked_measures, rebuilt) == []


def test_rebuild_repairs_count_mismatch_and_is_repeatable(crc_component, linked_measures):
    crc_component.usage.usage_count = 7
    library = {crc_component.id: crc_component}
    assert len(check_usage_invariants(library)) == 1

    once = rebuild_usage_index(library, linked_measures)
    twice = rebuild_usage_index(once, linked_measures)

    assert check_usage_invariants(once) == []
    assert once[crc_component.id].usage.measure_ids == twice[crc_component.id].usage.measure_ids


def test_rebuild_counts_unlinked_matchable_elements(crc_component):
    crc_component.usage.replace([])
    unlinked = numerator_measure("M3", colonoscopy_element("m3-colonoscopy"))
    rebuilt = rebuild_usage_index({crc_component.id: crc_component}, [unlinked])
    assert rebuilt[crc_component.id].usage.measure_ids == ["M3"]


def test_rebuild_archives_and_restores_when_enabled(crc_component):
    library = {crc_component.id: crc_component}
    archived = rebuild_usage_index(library, [], auto_archive=True)
    assert archived[crc_component.id].version_info.status == ApprovalStatus.ARCHIVED
    assert archived[crc_component.id].usage.usage_count == 0

    measure = numerator_measure("M1", colonoscopy_element(library_component_id=crc_component.id))
    restored = rebuild_usage_index(archived, [measure], auto_archive=True)
    assert restored[crc_component.id].version_info.status == ApprovalStatus.DRAFT


def test_rebuild_ignores_dangling_links(crc_component):
    measure = numerator_measure("M1", colonoscopy_element(library_component_id="deleted-component"))
    rebuilt = rebuild_usage_index({crc_component.id: crc_component}, [measure])
    assert rebuilt[crc_component.id].usage.measure_ids == []
    mismatches = validate_referential_integrity([measure], rebuilt)
    assert [m.kind for m in mismatches] == ["dangling_reference"]


def test_direct_code_elements_link_separately():
    def coded(element_id, code):
        return DataElement(
            id=element_id,
            type=DataElementType.DIAGNOSIS,
            description=f"Diagnosis {code}",
            direct_codes=[CodeReference(code=code, system="ICD10CM")],
        )

    library = {}
    measure = make_measure(
        "M1",
        PopulationDefinition(
            id="ip",
            type=PopulationType.INITIAL_POPULATION,
            criteria=LogicalClause(
                id="ip-root",
                operator=LogicalOperator.NOT,
                children=[LogicalClause(id="inner", operator=LogicalOperator.OR, children=[
                    coded("e1", "E11.9"), coded("e2", "I10"),
                ])],
            ),
        ),
    )
    result = link_measure_components("M1", measure.populations, library, id_factory=_ids())
    assert result.link_map["e1"] != result.link_map["e2"]


def test_relink_after_edit_releases_previous_component():
    ids = _ids()
    library = {}
    shared = numerator_measure("M2", colonoscopy_element("m2-colonoscopy"))
    measure = numerator_measure("M1", colonoscopy_element("m1-colonoscopy"))
    link_measure_components("M2", shared.populations, library, id_factory=ids)
    link_measure_components("M1", measure.populations, library, id_factory=ids)
    assert library["atomic-1"].usage.measure_ids == ["M1", "M2"]

    measure.populations[0].criteria.children[0].timing = parse_timing_expression("within 1 year")
    result = link_measure_components("M1", measure.populations, library, id_factory=ids)

    assert result.link_map == {"m1-colonoscopy": "atomic-2"}
    assert result.released == ["atomic-1"]
    assert [c.id for c in result.updated_components] == ["atomic-1"]
    assert library["atomic-1"].usage.measure_ids == ["M2"]
    assert library["atomic-1"].usage.usage_count == 1
    assert library["atomic-2"].usage.measure_ids == ["M1"]
    assert check_usage_invariants(library) == []
    assert validate_referential_integrity([measure, shared], library) == []

    again = link_measure_components("M1", measure.populations, library, id_factory=ids)
    assert again.released == []
    assert again.updated_components == []


def test_invariant_violation_is_raised_and_flags_rebuild(crc_component, linked_measures):
    crc_component.usage.usage_count = 5
    library = {crc_component.id: crc_component}

    with pytest.raises(InvariantViolationError) as excinfo:
        ensure_usage_invariants(library)
    assert [m.component_id for m in excinfo.value.mismatches] == [crc_component.id]

    result = link_measure_components("M1", linked_measures["M1"].populations, library)
    assert result.invariant_violations == 1
    assert result.rebuild_required


def test_cyclic_population_is_counted_malformed():
    element = colonoscopy_element()
    root = LogicalClause(id="root", operator=LogicalOperator.AND, children=[element])
    root.children.append(LogicalClause(id="root", operator=LogicalOperator.OR, children=[]))
    measure = make_measure("M1", PopulationDefinition(id="num", type=PopulationType.NUMERATOR, criteria=root))

    library = {}
    result = link_measure_components("M1", measure.populations, library)

    assert result.malformed == 1
    assert library == {}
