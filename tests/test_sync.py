from conftest import colonoscopy_element, numerator_measure

from measure_engine.criteria_engine.integrity import check_usage_invariants, validate_referential_integrity
from measure_engine.criteria_engine.sync import (
    COMPONENT_NOT_FOUND,
    COMPONENT_NOT_USED,
    MEASURE_NOT_FOUND,
    fork_component,
    handle_shared_edit,
    linked_element_ids,
    sync_component_to_measures,
)
from measure_engine.criteria_engine.versioning import ComponentChanges
from measure_engine.models.enums import EditAction, TimingOperator


def _timing_of(measure):
    return measure.populations[0].criteria.children[0].timing


def test_update_all_rewrites_every_linked_measure(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    result = sync_component_to_measures(crc_component.id, {"timing": "within 1 year"}, library, linked_measures)

    assert result.success
    assert [m.id for m in result.updated_measures] == ["M1", "M2"]
    for measure in result.updated_measures:
        timing = _timing_of(measure)
        assert timing.expression() == "within 1 year"
        assert timing.operator == TimingOperator.WITHIN
    # inputs are not mutated
    assert _timing_of(linked_measures["M1"]).expression() == "during measurement period"


def test_sync_twice_equals_sync_once(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    changes = ComponentChanges(name="Colonoscopy (updated)", negation=True, timing="within 1 year")

    once = sync_component_to_measures(crc_component.id, changes, library, linked_measures)
    once_by_id = {m.id: m for m in once.updated_measures}
    twice = sync_component_to_measures(crc_component.id, changes, library, once_by_id)

    assert [m.model_dump() for m in twice.updated_measures] == [m.model_dump() for m in once.updated_measures]


def test_sync_leaves_unlinked_elements_alone(crc_component, linked_measures):
    measure = linked_measures["M1"]
    measure.populations[0].criteria.children.append(colonoscopy_element("other", description="Not linked"))
    library = {crc_component.id: crc_component}

    result = sync_component_to_measures(crc_component.id, {"name": "Renamed"}, library, linked_measures)

    children = result.updated_measures[0].populations[0].criteria.children
    assert [c.description for c in children] == ["Renamed", "Not linked"]


def test_sync_replaces_codes_in_value_set(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    changes = {"codes": [{"code": "45378", "system": "CPT"}]}
    result = sync_component_to_measures(crc_component.id, changes, library, linked_measures)
    element = result.updated_measures[0].populations[0].criteria.children[0]
    assert [c.code for c in element.value_set.codes] == ["45378"]
    assert element.direct_codes == []


def test_sync_unknown_component_fails_without_writes(linked_measures):
    result = sync_component_to_measures("nope", {"name": "x"}, {}, linked_measures)
    assert not result.success
    assert result.error == COMPONENT_NOT_FOUND
    assert result.updated_measures == []


def test_sync_reports_missing_measures_and_keeps_others(crc_component, linked_measures):
    crc_component.usage.add("M9")
    library = {crc_component.id: crc_component}
    result = sync_component_to_measures(crc_component.id, {"name": "x"}, library, linked_measures)

    assert not result.success
    assert [m.id for m in result.updated_measures] == ["M1", "M2"]
    assert [(f.measure_id, f.error) for f in result.failed_measures] == [("M9", MEASURE_NOT_FOUND)]


def test_fork_gives_one_measure_a_private_copy(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    result = fork_component(
        crc_component.id, "M2", {"timing": "within 1 year"}, library, linked_measures, new_id="comp-fork"
    )

    assert result.success
    assert result.forked_component.id == "comp-fork"
    assert result.forked_component.usage.measure_ids == ["M2"]
    assert result.forked_component.usage.usage_count == 1
    assert result.forked_component.version_info.version_id == "1.0"
    assert result.original_component.usage.measure_ids == ["M1"]
    assert result.original_component.usage.usage_count == 1

    element = result.updated_measure.populations[0].criteria.children[0]
    assert element.library_component_id == "comp-fork"
    assert element.timing.expression() == "within 1 year"


def test_fork_unknown_measure(crc_component, linked_measures):
    result = fork_component(crc_component.id, "M9", {}, {crc_component.id: crc_component}, linked_measures)
    assert not result.success
    assert result.error == MEASURE_NOT_FOUND


def test_fork_rejects_measure_that_does_not_use_component(crc_component, linked_measures):
    m3 = numerator_measure("M3", colonoscopy_element("m3-colonoscopy"))
    measures = dict(linked_measures, M3=m3)
    library = {crc_component.id: crc_component}

    result = fork_component(crc_component.id, "M3", {"negation": True}, library, measures, new_id="comp-fork")

    assert not result.success
    assert result.error == COMPONENT_NOT_USED
    assert result.forked_component is None
    assert linked_element_ids(m3, crc_component.id) == []
    assert crc_component.usage.measure_ids == ["M1", "M2"]

    edit = handle_shared_edit(crc_component.id, {"negation": True}, EditAction.FORK, library, measures, measure_id="M3")
    assert not edit.success
    assert edit.error == COMPONENT_NOT_USED
    assert edit.library == {}


def test_shared_edit_update_all_bumps_version(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    result = handle_shared_edit(
        crc_component.id, {"timing": "within 1 year"}, EditAction.UPDATE_ALL, library, linked_measures
    )

    assert result.success
    component = result.library[crc_component.id]
    assert component.version_info.version_id == "1.1"
    assert component.timing.operator == TimingOperator.WITHIN
    assert [e.version_id for e in component.version_info.version_history] == ["1.0", "1.1"]
    assert _timing_of(result.measures["M1"]).expression() == "within 1 year"
    assert _timing_of(result.measures["M2"]).expression() == "within 1 year"
    assert component.usage.measure_ids == ["M1", "M2"]


def test_shared_edit_fork_leaves_other_measure_untouched(crc_component, linked_measures):
    library = {crc_component.id: crc_component}
    result = handle_shared_edit(
        crc_component.id,
        {"timing": "within 1 year"},
        EditAction.FORK,
        library,
        linked_measures,
        measure_id="M2",
    )

    assert result.success
    assert result.measures["M1"] == linked_measures["M1"]
    fork_id = result.fork.forked_component.id
    assert result.library[fork_id].usage.measure_ids == ["M2"]
    assert result.library[crc_component.id].usage.measure_ids == ["M1"]
    assert check_usage_invariants(result.library) == []
    assert validate_referential_integrity(result.measures, result.library) == []


def test_shared_edit_fork_requires_measure(crc_component, linked_measures):
    result = handle_shared_edit(
        crc_component.id, {"name": "x"}, EditAction.FORK, {crc_component.id: crc_component}, linked_measures
    )
    assert not result.success
    assert "measure_id" in result.error
