from datetime import date

from conftest import make_measure, population

from measure_engine.criteria_engine.evaluator import (
    EvaluationContext,
    code_matches,
    evaluate_measure,
    evaluate_node,
    evaluate_patients,
    resolve_measurement_period,
    summarize_outcomes,
)
from measure_engine.criteria_engine.patient_data_adapter import normalize_patient
from measure_engine.models.enums import (
    DataElementType,
    FactType,
    LogicalOperator,
    PopulationOutcome,
    PopulationType,
)
from measure_engine.models.measure_schema import (
    AgeRange,
    CodeReference,
    DataElement,
    GlobalConstraints,
    LogicalClause,
    SiblingConnection,
    Thresholds,
    TimingExpression,
    ValueSetReference,
)
from measure_engine.models.validation import PatientFact, PatientRecord


def adult() -> DataElement:
    return DataElement(
        id="age",
        type=DataElementType.DEMOGRAPHIC,
        description="Age 45 to 75",
        thresholds=Thresholds(age_min=45, age_max=75),
    )


def office_visit() -> DataElement:
    return DataElement(
        id="visit",
        type=DataElementType.ENCOUNTER,
        description="Office visit during the measurement period",
        value_set=ValueSetReference(oid="1.1", name="Office Visit", codes=[CodeReference(code="99213", system="CPT")]),
    )


def crc_diagnosis() -> DataElement:
    return DataElement(
        id="crc",
        type=DataElementType.DIAGNOSIS,
        description="Colorectal cancer",
        value_set=ValueSetReference(
            oid="2.2",
            name="Malignant Neoplasm of Colon",
            codes=[CodeReference(code="C18.9", system="ICD10CM")],
        ),
    )


def colonoscopy(element_id="colonoscopy", **kwargs) -> DataElement:
    return DataElement(
        id=element_id,
        type=DataElementType.PROCEDURE,
        description="Colonoscopy in the last 10 years",
        value_set=ValueSetReference(oid="3.3", name="Colonoscopy", codes=[CodeReference(code="44388", system="CPT")]),
        timing=TimingExpression(operator="within", quantity=10, unit="years", position="before end of"),
        **kwargs,
    )


def hba1c_poor_control() -> DataElement:
    return DataElement(
        id="hba1c",
        type=DataElementType.OBSERVATION,
        description="Most recent HbA1c > 9%",
        value_set=ValueSetReference(oid="4.4", name="HbA1c Laboratory Test", codes=[CodeReference(code="4548-4", system="LOINC")]),
        thresholds=Thresholds(value_min=9, comparator=">"),
    )


def crc_screening_measure():
    return make_measure(
        "CMS130",
        population(PopulationType.INITIAL_POPULATION, adult(), office_visit()),
        population(PopulationType.DENOMINATOR),
        population(PopulationType.DENOMINATOR_EXCLUSION, crc_diagnosis(), operator=LogicalOperator.OR),
        population(PopulationType.NUMERATOR, colonoscopy(), operator=LogicalOperator.OR),
        title="Colorectal Cancer Screening",
    )


def patient(*facts, birth_date=date(1970, 5, 1), gender="female") -> PatientRecord:
    return PatientRecord(id="p1", name="Jane Doe", birth_date=birth_date, gender=gender, facts=list(facts))


VISIT = PatientFact(fact_type=FactType.ENCOUNTER, code="99213", system="CPT", date=date(2025, 3, 10))
SCOPE_2019 = PatientFact(fact_type=FactType.PROCEDURE, code="44388", system="CPT", date=date(2019, 6, 1))
CRC_2020 = PatientFact(fact_type=FactType.DIAGNOSIS, code="C189", system="ICD-10-CM", date=date(2020, 2, 1))

CTX = EvaluationContext(measure=crc_screening_measure(), period_start=date(2025, 1, 1), period_end=date(2025, 12, 31))


def test_code_match_ignores_dots_case_and_system_spelling():
    codes = [CodeReference(code="C18.9", system="http://hl7.org/fhir/sid/icd-10-cm")]
    assert code_matches("c189", "ICD10CM", codes)
    assert code_matches("C18.9", "", codes)
    assert not code_matches("C18.9", "SNOMED", codes)


def test_diagnosis_leaf_true_with_fact_and_false_without():
    element = crc_diagnosis()
    element.timing = TimingExpression()
    assert evaluate_node(element, patient(CRC_2020.model_copy(update={"date": date(2025, 4, 1)})), CTX).met
    assert not evaluate_node(element, patient(VISIT), CTX).met


def test_ongoing_diagnosis_overlaps_period_without_timing():
    node = evaluate_node(crc_diagnosis(), patient(CRC_2020), CTX)
    assert node.met
    assert node.facts[0].code == "C189"


def test_and_population_needs_both_leaves():
    clause = LogicalClause(id="ip", operator=LogicalOperator.AND, children=[adult(), office_visit()])
    assert evaluate_node(clause, patient(VISIT), CTX).met
    assert not evaluate_node(clause, patient(), CTX).met
    assert not evaluate_node(clause, patient(VISIT, birth_date=date(2000, 1, 1)), CTX).met

    partial = evaluate_node(clause, patient(), CTX)
    assert partial.status == "partial"
    assert [child.met for child in partial.children] == [True, False]


def test_sibling_connection_folds_left_to_right():
    a = colonoscopy("a")
    b = office_visit()
    c = crc_diagnosis()
    clause = LogicalClause(
        id="mixed",
        operator=LogicalOperator.OR,
        children=[a, b, c],
        sibling_connections=[SiblingConnection(from_index=0, to_index=1, operator=LogicalOperator.AND)],
    )
    # (A AND B) OR C: A alone is not enough
    assert not evaluate_node(clause, patient(SCOPE_2019), CTX).met
    assert evaluate_node(clause, patient(SCOPE_2019, VISIT), CTX).met
    assert evaluate_node(clause, patient(CRC_2020), CTX).met


def test_negated_leaf_requires_absence():
    element = colonoscopy(negation=True)
    assert evaluate_node(element, patient(), CTX).met
    assert not evaluate_node(element, patient(SCOPE_2019), CTX).met


def test_lookback_window_excludes_old_procedures():
    old = SCOPE_2019.model_copy(update={"date": date(2014, 6, 1)})
    assert not evaluate_node(colonoscopy(), patient(old), CTX).met


def test_value_threshold_uses_most_recent_result():
    high = PatientFact(fact_type=FactType.OBSERVATION, code="4548-4", system="LOINC", date=date(2025, 3, 1), value=10.2)
    low = PatientFact(fact_type=FactType.OBSERVATION, code="4548-4", system="LOINC", date=date(2025, 9, 1), value=7.5)
    assert evaluate_node(hba1c_poor_control(), patient(high), CTX).met
    assert not evaluate_node(hba1c_poor_control(), patient(high, low), CTX).met


def test_missing_value_is_ambiguous_and_false():
    no_value = PatientFact(fact_type=FactType.OBSERVATION, code="4548-4", system="LOINC", date=date(2025, 3, 1))
    node = evaluate_node(hba1c_poor_control(), patient(no_value), CTX)
    assert not node.met
    assert not node.determinable
    assert node.evidence[0].startswith("Cannot determine")


def test_missing_index_event_is_false_even_under_not():
    element = DataElement(
        id="followup",
        type=DataElementType.ENCOUNTER,
        value_set=ValueSetReference(oid="1.1", name="Office Visit", codes=[CodeReference(code="99213", system="CPT")]),
        timing=TimingExpression(operator="within", quantity=30, unit="days", position="after start of", reference="IPSD"),
    )
    leaf = evaluate_node(element, patient(VISIT), CTX)
    assert not leaf.met
    assert "IPSD" in leaf.evidence[0]

    negated = LogicalClause(id="not", operator=LogicalOperator.NOT, children=[element])
    assert not evaluate_node(negated, patient(VISIT), CTX).met

    with_event = patient(VISIT).model_copy(update={"index_events": {"IPSD": date(2025, 3, 1)}})
    assert evaluate_node(element, with_event, CTX).met


def test_gender_and_missing_birth_date():
    female = DataElement(id="sex", type=DataElementType.DEMOGRAPHIC, gender_value="female")
    assert evaluate_node(female, patient(), CTX).met
    assert not evaluate_node(female, patient(gender="male"), CTX).met
    assert not evaluate_node(adult(), patient(birth_date=None), CTX).determinable


def test_empty_clauses():
    empty_and = LogicalClause(id="and", operator=LogicalOperator.AND)
    empty_or = LogicalClause(id="or", operator=LogicalOperator.OR)
    assert evaluate_node(empty_and, patient(), CTX).met
    assert not evaluate_node(empty_or, patient(), CTX).met


def test_leaf_without_codes_does_not_abort_evaluation():
    broken = office_visit()
    broken.value_set = None
    clause = LogicalClause(id="or", operator=LogicalOperator.OR, children=[broken, adult()])
    node = evaluate_node(clause, patient(), CTX)
    assert node.met
    assert not node.children[0].met


def test_in_numerator():
    trace = evaluate_measure(crc_screening_measure(), patient(VISIT, SCOPE_2019))
    assert trace.final_outcome == PopulationOutcome.IN_NUMERATOR
    assert trace.how_close == []
    assert trace.narrative.startswith("Jane Doe meets all criteria for Colorectal Cancer Screening")
    assert trace.get_population(PopulationType.DENOMINATOR).met


def test_not_in_numerator_lists_missing_leaves():
    trace = evaluate_measure(crc_screening_measure(), patient(VISIT))
    assert trace.final_outcome == PopulationOutcome.NOT_IN_NUMERATOR
    assert trace.how_close == ["Missing: Colonoscopy in the last 10 years"]
    numerator = trace.get_population(PopulationType.NUMERATOR)
    assert numerator.root.children[0].id == "colonoscopy"


def test_excluded_short_circuits_numerator():
    trace = evaluate_measure(crc_screening_measure(), patient(VISIT, SCOPE_2019, CRC_2020))
    assert trace.final_outcome == PopulationOutcome.EXCLUDED
    assert trace.how_close == []
    assert trace.exclusion_reasons == ["Met exclusion: Colorectal cancer"]
    assert not trace.get_population(PopulationType.NUMERATOR).evaluated


def test_not_in_population_skips_later_populations():
    trace = evaluate_measure(crc_screening_measure(), patient(VISIT, birth_date=date(2010, 1, 1)))
    assert trace.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert trace.how_close == ["Missing: Age 45 to 75"]
    skipped = [p.population_type for p in trace.populations if not p.evaluated]
    assert skipped == [
        PopulationType.DENOMINATOR,
        PopulationType.DENOMINATOR_EXCLUSION,
        PopulationType.NUMERATOR,
    ]


def test_denominator_exception_is_informational():
    measure = crc_screening_measure()
    measure.populations.append(population(PopulationType.DENOMINATOR_EXCEPTION, office_visit()))
    trace = evaluate_measure(measure, patient(VISIT))
    exception = trace.get_population(PopulationType.DENOMINATOR_EXCEPTION)
    assert exception.met and exception.informational
    assert trace.final_outcome == PopulationOutcome.NOT_IN_NUMERATOR


def test_measurement_period_resolution():
    measure = crc_screening_measure()
    assert resolve_measurement_period(measure) == (date(2025, 1, 1), date(2025, 12, 31))
    override = (date(2024, 1, 1), date(2024, 12, 31))
    assert resolve_measurement_period(measure, override) == override


def test_batch_summary():
    measure = crc_screening_measure()
    patients = [
        patient(VISIT, SCOPE_2019),
        patient(VISIT),
        patient(VISIT, CRC_2020),
        patient(birth_date=date(2010, 1, 1)),
    ]
    score = summarize_outcomes(measure.id, evaluate_patients(measure, patients))
    assert (score.in_numerator, score.not_in_numerator, score.excluded, score.not_in_population) == (1, 1, 1, 1)
    assert score.performance_rate == 0.5


def test_raw_patient_json_evaluates():
    raw = {
        "id": "p2",
        "name": "John Roe",
        "demographics": {"birthDate": "1965-02-14", "gender": "Male"},
        "encounters": [{"code": "99213", "system": "CPT", "date": "2025-05-05"}],
        "procedures": [
            {"code": "44388", "system": "CPT", "date": "2021-08-01T10:00:00Z"},
            {"code": "44388", "system": "CPT", "date": "2025-01-02", "status": "not-done"},
        ],
    }
    record = normalize_patient(raw)
    assert record.gender == "male"
    assert len(record.facts_of(FactType.PROCEDURE)) == 1
    assert evaluate_measure(crc_screening_measure(), record).final_outcome == PopulationOutcome.IN_NUMERATOR


def constrained_measure(**constraints):
    measure = make_measure(
        "CMS125",
        population(PopulationType.INITIAL_POPULATION, office_visit()),
        population(PopulationType.NUMERATOR, colonoscopy(), operator=LogicalOperator.OR),
        title="Screening",
    )
    measure.global_constraints = GlobalConstraints(**constraints)
    return measure


def test_gender_constraint_fails_before_any_population():
    measure = constrained_measure(gender="female", age_range=AgeRange(min=50, max=74))
    trace = evaluate_measure(measure, patient(VISIT, SCOPE_2019, gender="male"))

    assert trace.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert trace.how_close == ["Patient gender (male) does not match required gender (female)"]
    assert [node.id for node in trace.pre_checks] == ["gender-check", "age-check"]
    assert [node.met for node in trace.pre_checks] == [False, True]
    assert len(trace.populations) == 2
    assert not any(p.evaluated for p in trace.populations)


def test_age_constraint_during_period_accepts_anyone_in_range():
    measure = constrained_measure(gender="female", age_range=AgeRange(min=50, max=74))
    trace = evaluate_measure(measure, patient(VISIT, SCOPE_2019))
    assert trace.final_outcome == PopulationOutcome.IN_NUMERATOR
    assert all(node.met for node in trace.pre_checks)

    # Turns 75 on the second day of the period: still 74 at its start.
    turning_75 = patient(VISIT, SCOPE_2019, birth_date=date(1950, 1, 2))
    assert evaluate_measure(measure, turning_75).final_outcome == PopulationOutcome.IN_NUMERATOR

    young = evaluate_measure(measure, patient(VISIT, SCOPE_2019, birth_date=date(1976, 6, 1)))
    assert young.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert young.how_close == ["Patient is too young (age 49). Age 50-74"]


def test_age_constraint_at_period_end():
    measure = constrained_measure(age_range=AgeRange(min=50, max=74), age_calculation="at_end")
    trace = evaluate_measure(measure, patient(VISIT, SCOPE_2019, birth_date=date(1950, 1, 2)))
    assert trace.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert trace.how_close == ["Patient is too old (age 75 at period end). Age 50-74"]
    assert [node.id for node in trace.pre_checks] == ["age-check"]


def test_age_constraint_turns_during_period():
    measure = constrained_measure(age_range=AgeRange(min=1, max=2), age_calculation="turns_during")
    toddler = evaluate_measure(measure, patient(VISIT, SCOPE_2019, birth_date=date(2023, 3, 15)))
    assert toddler.final_outcome == PopulationOutcome.IN_NUMERATOR

    older = evaluate_measure(measure, patient(VISIT, SCOPE_2019, birth_date=date(2020, 1, 1)))
    assert older.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert older.how_close == ["Patient age (5-5) is outside the required range. Age 1-2"]


def test_age_constraint_without_birth_date_is_undeterminable():
    measure = constrained_measure(age_range=AgeRange(min=50, max=74))
    trace = evaluate_measure(measure, patient(VISIT, SCOPE_2019, birth_date=None))
    assert trace.final_outcome == PopulationOutcome.NOT_IN_POPULATION
    assert not trace.pre_checks[0].determinable
    assert trace.how_close[0].startswith("Cannot determine: patient birth date not available")
