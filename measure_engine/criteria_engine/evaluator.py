"""Deterministic Measure Evaluator - pure logic over a measure tree and a patient.

Evaluates a patient against a measure's population criteria and classifies
the patient as in_numerator / not_in_numerator / excluded / not_in_population.

Design principles:
- Pure function: no DB, no side effects; same inputs, same trace
- Conservative: a criterion that cannot be determined (missing index event,
  missing result value) evaluates false and says why in the trace
- The trace mirrors the full criteria tree so a reviewer can see exactly
  which sub-clause failed
- Leaf evaluators are registered per data element type
"""

from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from dateutil import parser as date_parser
from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, ConfigDict

from measure_engine.config.logging_config import get_logger
from measure_engine.config.settings import get_settings
from measure_engine.criteria_engine.criteria_tree import is_element, operator_between
from measure_engine.criteria_engine.exceptions import EvaluationAmbiguityError
from measure_engine.criteria_engine.identity import usable_oid
from measure_engine.criteria_engine.timing import TimingWindow, resolve_timing_window
from measure_engine.models.enums import (
    DataElementType,
    FactType,
    LogicalOperator,
    PopulationOutcome,
    PopulationType,
    TimingOperator,
)
from measure_engine.models.measure_schema import (
    CodeReference,
    DataElement,
    GlobalConstraints,
    LogicalClause,
    PopulationDefinition,
    Thresholds,
    UniversalMeasureSpec,
)
from measure_engine.models.validation import (
    MeasureScore,
    PatientFact,
    PatientRecord,
    PopulationResult,
    ValidationFact,
    ValidationNode,
    ValidationTrace,
)

logger = get_logger(__name__)


class EvaluationContext(BaseModel):
    """Everything a leaf evaluator needs besides the element and the patient."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    measure: UniversalMeasureSpec
    period_start: date
    period_end: date


# --- Evaluator Registry ---

LeafEvaluatorFn = Callable[[DataElement, PatientRecord, EvaluationContext], ValidationNode]

EVALUATOR_REGISTRY: Dict[DataElementType, LeafEvaluatorFn] = {}


def register_evaluator(*element_types: DataElementType):
    """Decorator to register an evaluator function for one or more DataElementType values."""
    def decorator(fn: LeafEvaluatorFn):
        for element_type in element_types:
            EVALUATOR_REGISTRY[element_type] = fn
        return fn
    return decorator


FACT_TYPES: Dict[DataElementType, Tuple[FactType, ...]] = {
    DataElementType.DIAGNOSIS: (FactType.DIAGNOSIS,),
    DataElementType.ENCOUNTER: (FactType.ENCOUNTER,),
    DataElementType.PROCEDURE: (FactType.PROCEDURE,),
    DataElementType.MEDICATION: (FactType.MEDICATION,),
    DataElementType.OBSERVATION: (FactType.OBSERVATION,),
    DataElementType.IMMUNIZATION: (FactType.IMMUNIZATION,),
    DataElementType.ASSESSMENT: (FactType.ASSESSMENT, FactType.OBSERVATION),
}


# --- Code matching ---

def normalize_code_system(system: str) -> str:
    lower = (system or "").lower()
    if not lower:
        return ""
    if "icd" in lower or "10-cm" in lower:
        return "ICD10"
    if "snomed" in lower or "sct" in lower:
        return "SNOMED"
    if "cpt" in lower:
        return "CPT"
    if "hcpcs" in lower:
        return "HCPCS"
    if "loinc" in lower:
        return "LOINC"
    if "rxnorm" in lower or "rx" in lower:
        return "RxNorm"
    if "cvx" in lower:
        return "CVX"
    return system.upper()


def _normalize_code(code: str) -> str:
    return code.replace(".", "").upper()


def code_matches(code: str, system: str, target_codes: Iterable[CodeReference]) -> bool:
    """Code equal ignoring dots and case; systems equal or either side blank."""
    normalized_code = _normalize_code(code)
    normalized_system = normalize_code_system(system)
    for target in target_codes:
        if _normalize_code(target.code) != normalized_code:
            continue
        target_system = normalize_code_system(target.system)
        if not target_system or not normalized_system or target_system == normalized_system:
            return True
    return False


def element_codes(element: DataElement, measure: Optional[UniversalMeasureSpec] = None) -> List[CodeReference]:
    """Element codes plus codes of the measure-level value set it names."""
    codes = element.all_codes()
    if measure is not None and element.value_set is not None:
        oid = usable_oid(element.value_set.oid)
        name = element.value_set.name
        for value_set in measure.value_sets:
            if (oid and value_set.oid == oid) or (name and value_set.name == name):
                codes.extend(value_set.codes)
    seen = set()
    unique = []
    for code in codes:
        key = (normalize_code_system(code.system), _normalize_code(code.code))
        if key not in seen:
            seen.add(key)
            unique.append(code)
    return unique


# --- Numeric comparison ---

def has_value_threshold(thresholds: Optional[Thresholds]) -> bool:
    return thresholds is not None and (thresholds.value_min is not None or thresholds.value_max is not None)


def compare_value(value: float, thresholds: Thresholds) -> bool:
    """
    With a comparator, compare against value_min (or value_max when only it is set).
    Without one, value_min / value_max form an inclusive range.
    """
    if thresholds.comparator:
        target = thresholds.value_min if thresholds.value_min is not None else thresholds.value_max
        op = thresholds.comparator
        if op == ">":
            return value > target
        if op == ">=":
            return value >= target
        if op == "<":
            return value < target
        if op == "<=":
            return value <= target
        if op == "=":
            return abs(value - target) < 1e-9
        return abs(value - target) >= 1e-9
    if thresholds.value_min is not None and value < thresholds.value_min:
        return False
    if thresholds.value_max is not None and value > thresholds.value_max:
        return False
    return True


# --- Node construction helpers ---

def _element_title(element: DataElement) -> str:
    if element.value_set and element.value_set.name:
        return element.value_set.name
    return element.description[:50] or element.id


def _fact_view(fact: PatientFact) -> ValidationFact:
    return ValidationFact(
        code=fact.code,
        display=fact.display,
        date=fact.date.isoformat() if fact.date else None,
        source=fact.fact_type.value,
    )


def _leaf_node(
    element: DataElement,
    met: bool,
    evidence: List[str],
    facts: Optional[List[ValidationFact]] = None,
    determinable: bool = True,
) -> ValidationNode:
    return ValidationNode(
        id=element.id,
        title=_element_title(element),
        node_type="element",
        description=element.description,
        met=met,
        determinable=determinable,
        status="pass" if met else "fail",
        facts=facts or [],
        evidence=evidence,
    )


def _ambiguous(element: DataElement, reason: str) -> ValidationNode:
    return _leaf_node(element, False, [f"Cannot determine: {reason}"], determinable=False)


# --- Leaf evaluators ---

def _fact_in_window(fact: PatientFact, element: DataElement, window: TimingWindow) -> bool:
    if fact.date is None:
        return False
    operator = element.timing.operator if element.timing else None
    if operator in (TimingOperator.ENDS_DURING, TimingOperator.ENDS_BEFORE, TimingOperator.ENDS_AFTER):
        return window.contains(fact.end_date or fact.date)
    if operator == TimingOperator.OVERLAPS or (
        operator is None and fact.fact_type == FactType.DIAGNOSIS
    ):
        # Diagnoses without an end date are ongoing.
        end = fact.end_date or (date.max if fact.fact_type == FactType.DIAGNOSIS else fact.date)
        return window.overlaps(fact.date, end)
    return window.contains(fact.date)


@register_evaluator(
    DataElementType.DIAGNOSIS,
    DataElementType.ENCOUNTER,
    DataElementType.PROCEDURE,
    DataElementType.MEDICATION,
    DataElementType.OBSERVATION,
    DataElementType.IMMUNIZATION,
    DataElementType.ASSESSMENT,
)
def match_resource_to_element(element: DataElement, patient: PatientRecord, ctx: EvaluationContext) -> ValidationNode:
    codes = element_codes(element, ctx.measure)
    if not codes:
        return _ambiguous(element, "element has no codes to match")

    try:
        window = resolve_timing_window(element.timing, ctx.period_start, ctx.period_end, patient.index_events)
    except EvaluationAmbiguityError as exc:
        return _ambiguous(element, str(exc))

    candidates = [
        f for f in patient.facts_of(*FACT_TYPES[element.type])
        if code_matches(f.code, f.system, codes)
    ]
    in_window = [f for f in candidates if _fact_in_window(f, element, window)]
    evidence = [f"{len(candidates)} coded fact(s), {len(in_window)} in window {window.describe()}"]

    qualifying = in_window
    if has_value_threshold(element.thresholds) and in_window:
        most_recent = max(in_window, key=lambda f: f.date)
        if most_recent.value is None:
            return _ambiguous(element, f"no result value on {most_recent.code} ({most_recent.date.isoformat()})")
        passes = compare_value(most_recent.value, element.thresholds)
        evidence.append(
            f"Most recent value {most_recent.value}{' ' + most_recent.unit if most_recent.unit else ''} "
            f"{'meets' if passes else 'does not meet'} threshold"
        )
        qualifying = [most_recent] if passes else []

    found = bool(qualifying)
    met = not found if element.negation else found
    if element.negation:
        evidence.append("Absence required: " + ("no qualifying fact" if not found else "qualifying fact present"))
    return _leaf_node(element, met, evidence, facts=[_fact_view(f) for f in qualifying])


def age_on(birth_date: date, on: date) -> int:
    return relativedelta(on, birth_date).years


@register_evaluator(DataElementType.DEMOGRAPHIC)
def evaluate_demographic(element: DataElement, patient: PatientRecord, ctx: EvaluationContext) -> ValidationNode:
    """Age at the period boundaries and administrative sex."""
    thresholds = element.thresholds
    checks_age = thresholds is not None and (thresholds.age_min is not None or thresholds.age_max is not None)
    if not checks_age and not element.gender_value:
        return _ambiguous(element, "demographic element has no age or gender constraint")

    met = True
    evidence = []
    if element.gender_value:
        if not patient.gender:
            return _ambiguous(element, "patient gender not available")
        gender_ok = patient.gender.lower() == element.gender_value
        met = met and gender_ok
        evidence.append(f"Patient gender: {patient.gender} (required {element.gender_value})")

    if checks_age:
        if patient.birth_date is None:
            return _ambiguous(element, "patient birth date not available")
        if thresholds.age_min is not None:
            age_at_end = age_on(patient.birth_date, ctx.period_end)
            met = met and age_at_end >= thresholds.age_min
            evidence.append(f"Age {age_at_end} at period end (min {thresholds.age_min:g})")
        if thresholds.age_max is not None:
            age_at_start = age_on(patient.birth_date, ctx.period_start)
            met = met and age_at_start <= thresholds.age_max
            evidence.append(f"Age {age_at_start} at period start (max {thresholds.age_max:g})")

    if element.negation:
        met = not met
    return _leaf_node(element, met, evidence)


def evaluate_element(element: DataElement, patient: PatientRecord, ctx: EvaluationContext) -> ValidationNode:
    """Evaluate one leaf using the registry; errors become a failed leaf."""
    evaluator = EVALUATOR_REGISTRY.get(element.type)
    if evaluator is None:
        return _ambiguous(element, f"no evaluator registered for type '{element.type}'")
    try:
        return evaluator(element, patient, ctx)
    except Exception as exc:
        logger.warning(
            "Element evaluation failed",
            element_id=element.id,
            error=str(exc),
        )
        node = _leaf_node(
            element,
            False,
            [f"Evaluation error: {type(exc).__name__}"],
            facts=[ValidationFact(code="ERROR", display=str(exc))],
            determinable=False,
        )
        return node


# --- Clause evaluation ---

def _combine(clause: LogicalClause, children: List[ValidationNode]) -> Tuple[bool, List[str]]:
    results = [child.met for child in children]
    if clause.operator == LogicalOperator.NOT:
        if len(children) != 1:
            return False, [f"NOT clause must have exactly one child, has {len(children)}"]
        if not children[0].determinable:
            return False, ["Negated criterion could not be determined"]
        return not results[0], []
    if not results:
        if clause.operator == LogicalOperator.AND:
            return True, ["Empty AND clause is true"]
        return False, ["Empty OR clause is false"]

    # Positional left-to-right fold; sibling connections override the clause operator.
    met = results[0]
    for index in range(1, len(results)):
        operator = operator_between(clause, index - 1, index)
        if operator == LogicalOperator.OR:
            met = met or results[index]
        else:
            met = met and results[index]
    return met, []


def evaluate_node(node, patient: PatientRecord, ctx: EvaluationContext, _path: Optional[Set[str]] = None) -> ValidationNode:
    """Evaluate a criteria node; the result mirrors the node's shape."""
    if is_element(node):
        return evaluate_element(node, patient, ctx)

    if _path is None:
        _path = set()
    if node.id in _path:
        return ValidationNode(
            id=node.id,
            title=node.description or f"{node.operator.value} Group",
            node_type="clause",
            operator=node.operator,
            met=False,
            determinable=False,
            evidence=["Circular clause reference detected"],
        )
    _path.add(node.id)
    children = [evaluate_node(child, patient, ctx, _path) for child in node.children]
    _path.discard(node.id)

    met, evidence = _combine(node, children)
    met_count = sum(1 for child in children if child.met)
    if met:
        status = "pass"
    elif met_count > 0:
        status = "partial"
    else:
        status = "fail"
    if children:
        evidence.append(f"{met_count} of {len(children)} criteria met")
    return ValidationNode(
        id=node.id,
        title=node.description or f"{node.operator.value} Group",
        node_type="clause",
        operator=node.operator,
        description=node.description,
        met=met,
        determinable=all(child.determinable for child in children),
        status=status,
        evidence=evidence,
        children=children,
    )


def evaluate_population(
    population: PopulationDefinition,
    patient: PatientRecord,
    ctx: EvaluationContext,
    informational: bool = False,
) -> PopulationResult:
    if population.criteria is None:
        logger.warning("Population has no criteria root", population_id=population.id)
        return PopulationResult(
            population_id=population.id,
            population_type=population.type,
            met=False,
            informational=informational,
        )
    root = evaluate_node(population.criteria, patient, ctx)
    return PopulationResult(
        population_id=population.id,
        population_type=population.type,
        met=root.met,
        informational=informational,
        root=root,
    )


# --- Measure-wide pre-checks ---

def _pre_check_node(
    node_id: str,
    title: str,
    met: bool,
    description: str,
    fact: ValidationFact,
    determinable: bool = True,
) -> ValidationNode:
    return ValidationNode(
        id=node_id,
        title=title,
        node_type="element",
        description=description,
        met=met,
        determinable=determinable,
        status="pass" if met else "fail",
        facts=[fact],
        evidence=[description],
    )


def check_gender_constraint(constraints: GlobalConstraints, patient: PatientRecord) -> Optional[ValidationNode]:
    """None when the measure applies to all genders."""
    required = constraints.gender
    if required == "all":
        return None
    fact = ValidationFact(code="GENDER", display=f"Patient gender: {patient.gender or 'unknown'}", source="demographics")
    if not patient.gender:
        return _pre_check_node(
            "gender-check", "Gender Requirement", False,
            f"Cannot determine: patient gender not available (required {required})", fact, determinable=False,
        )
    if patient.gender.lower() != required:
        return _pre_check_node(
            "gender-check", "Gender Requirement", False,
            f"Patient gender ({patient.gender}) does not match required gender ({required})", fact,
        )
    return _pre_check_node(
        "gender-check", "Gender Requirement", True,
        f"Patient gender ({patient.gender}) meets requirement ({required})", fact,
    )


def check_age_constraint(
    constraints: GlobalConstraints,
    patient: PatientRecord,
    ctx: EvaluationContext,
) -> Optional[ValidationNode]:
    """None when the measure declares no age range."""
    age_range = constraints.age_range
    if age_range is None:
        return None
    requirement = f"Age {age_range.min}-{age_range.max}"
    if patient.birth_date is None:
        fact = ValidationFact(code="AGE", display="Patient birth date: unknown", source="demographics")
        return _pre_check_node(
            "age-check", "Age Requirement", False,
            f"Cannot determine: patient birth date not available ({requirement})", fact, determinable=False,
        )

    age_at_start = age_on(patient.birth_date, ctx.period_start)
    age_at_end = age_on(patient.birth_date, ctx.period_end)
    info = f"Age {age_at_start} at period start, {age_at_end} at period end"
    fact = ValidationFact(code="AGE", display=info, date=patient.birth_date.isoformat(), source="demographics")

    calculation = constraints.age_calculation
    reason = None
    if calculation == "turns_during":
        birthday = patient.birth_date + relativedelta(years=age_range.max)
        turns = ctx.period_start <= birthday <= ctx.period_end
        in_range = age_at_end >= age_range.min and age_at_start <= age_range.max
        if not turns and not in_range:
            reason = f"Patient age ({age_at_start}-{age_at_end}) is outside the required range. {requirement}"
    elif calculation in ("at_start", "at_end"):
        age = age_at_start if calculation == "at_start" else age_at_end
        boundary = "start" if calculation == "at_start" else "end"
        if age < age_range.min:
            reason = f"Patient is too young (age {age} at period {boundary}). {requirement}"
        elif age > age_range.max:
            reason = f"Patient is too old (age {age} at period {boundary}). {requirement}"
    elif age_at_end < age_range.min:
        reason = f"Patient is too young (age {age_at_end}). {requirement}"
    elif age_at_start > age_range.max:
        reason = f"Patient is too old (age {age_at_start}). {requirement}"

    if reason is not None:
        return _pre_check_node("age-check", "Age Requirement", False, reason, fact)
    return _pre_check_node("age-check", "Age Requirement", True, f"{info}. Meets requirement: {requirement}", fact)


def evaluate_global_constraints(
    measure: UniversalMeasureSpec,
    patient: PatientRecord,
    ctx: EvaluationContext,
) -> List[ValidationNode]:
    """Gender then age pre-check nodes for the measure's global constraints."""
    constraints = measure.global_constraints
    if constraints is None:
        return []
    checks = [check_gender_constraint(constraints, patient), check_age_constraint(constraints, patient, ctx)]
    return [node for node in checks if node is not None]


# --- Measure evaluation ---

def resolve_measurement_period(
    measure: UniversalMeasureSpec,
    measurement_period: Optional[Tuple[date, date]] = None,
) -> Tuple[date, date]:
    """Explicit period, else the measure's declared period, else the configured (or current) year."""
    if measurement_period is not None:
        return measurement_period
    start = measure.metadata.measurement_period_start
    end = measure.metadata.measurement_period_end
    if start and end:
        return date_parser.isoparse(start).date(), date_parser.isoparse(end).date()
    year = get_settings().measurement_year or date.today().year
    return date(year, 1, 1), date(year, 12, 31)


def _has_children(population: Optional[PopulationDefinition]) -> bool:
    return population is not None and population.criteria is not None and bool(population.criteria.children)


def _skipped(population: Optional[PopulationDefinition]) -> Optional[PopulationResult]:
    if population is None:
        return None
    return PopulationResult(population_id=population.id, population_type=population.type, evaluated=False)


def _unmet_leaves(node: Optional[ValidationNode]) -> List[str]:
    if node is None:
        return []
    if node.node_type == "element":
        return [] if node.met else [f"Missing: {node.description or node.title}"]
    gaps = []
    for child in node.children:
        gaps.extend(_unmet_leaves(child))
    return gaps


def _met_leaves(node: Optional[ValidationNode]) -> List[str]:
    if node is None:
        return []
    if node.node_type == "element":
        return [f"Met exclusion: {node.description or node.title}"] if node.met else []
    gaps = []
    for child in node.children:
        gaps.extend(_met_leaves(child))
    return gaps


def generate_narrative(patient: PatientRecord, outcome: PopulationOutcome, measure: UniversalMeasureSpec) -> str:
    name = patient.name or patient.id
    title = measure.metadata.title or measure.metadata.measure_id
    if outcome == PopulationOutcome.IN_NUMERATOR:
        return f"{name} meets all criteria for {title} and is included in the performance numerator."
    if outcome == PopulationOutcome.NOT_IN_NUMERATOR:
        return f"{name} is in the denominator for {title} but does not meet numerator criteria."
    if outcome == PopulationOutcome.EXCLUDED:
        return f"{name} meets exclusion criteria and is excluded from {title} performance calculation."
    return f"{name} does not meet the initial population criteria for {title}."


def evaluate_measure(
    measure: UniversalMeasureSpec,
    patient: PatientRecord,
    measurement_period: Optional[Tuple[date, date]] = None,
) -> ValidationTrace:
    """
    Evaluate a patient against a measure.

    Order: measure-wide gender/age pre-checks -> initial population ->
    denominator -> denominator exclusion (and exception, informational) ->
    numerator. The first failing gate decides the outcome and later gates
    are recorded as not evaluated. ``how_close`` lists what kept the patient
    out; met exclusion criteria go to ``exclusion_reasons``.
    """
    period_start, period_end = resolve_measurement_period(measure, measurement_period)
    ctx = EvaluationContext(measure=measure, period_start=period_start, period_end=period_end)

    ip_pop = measure.get_population(PopulationType.INITIAL_POPULATION)
    denom_pop = measure.get_population(PopulationType.DENOMINATOR)
    excl_pop = measure.get_population(PopulationType.DENOMINATOR_EXCLUSION)
    exception_pop = measure.get_population(PopulationType.DENOMINATOR_EXCEPTION)
    numer_pop = measure.get_population(PopulationType.NUMERATOR)
    numer_excl_pop = measure.get_population(PopulationType.NUMERATOR_EXCLUSION)

    results: List[PopulationResult] = []
    how_close: List[str] = []
    exclusion_reasons: List[str] = []
    pre_checks = evaluate_global_constraints(measure, patient, ctx)

    def finish(outcome: PopulationOutcome, remaining) -> ValidationTrace:
        for population in remaining:
            skipped = _skipped(population)
            if skipped is not None:
                results.append(skipped)
        return ValidationTrace(
            patient_id=patient.id,
            patient_name=patient.name,
            measure_id=measure.id,
            pre_checks=pre_checks,
            populations=results,
            final_outcome=outcome,
            how_close=how_close,
            exclusion_reasons=exclusion_reasons,
            narrative=generate_narrative(patient, outcome, measure),
        )

    failed_checks = [node for node in pre_checks if not node.met]
    if failed_checks:
        how_close.extend(node.description for node in failed_checks)
        return finish(
            PopulationOutcome.NOT_IN_POPULATION,
            [ip_pop, denom_pop, excl_pop, exception_pop, numer_pop, numer_excl_pop],
        )

    if ip_pop is None:
        logger.warning("Measure has no initial population", measure_id=measure.id)
        ip = PopulationResult(population_type=PopulationType.INITIAL_POPULATION, met=False)
    else:
        ip = evaluate_population(ip_pop, patient, ctx)
    results.append(ip)
    if not ip.met:
        how_close.extend(_unmet_leaves(ip.root))
        return finish(
            PopulationOutcome.NOT_IN_POPULATION,
            [denom_pop, excl_pop, exception_pop, numer_pop, numer_excl_pop],
        )

    if _has_children(denom_pop):
        denominator = evaluate_population(denom_pop, patient, ctx)
    else:
        # Absent or empty denominator equals the initial population.
        denominator = PopulationResult(
            population_id=denom_pop.id if denom_pop else None,
            population_type=PopulationType.DENOMINATOR,
            met=ip.met,
        )
    results.append(denominator)
    if not denominator.met:
        how_close.extend(_unmet_leaves(denominator.root))
        return finish(
            PopulationOutcome.NOT_IN_POPULATION,
            [excl_pop, exception_pop, numer_pop, numer_excl_pop],
        )

    if _has_children(excl_pop):
        exclusion = evaluate_population(excl_pop, patient, ctx)
        results.append(exclusion)
        if exclusion.met:
            exclusion_reasons.extend(_met_leaves(exclusion.root))
            return finish(PopulationOutcome.EXCLUDED, [exception_pop, numer_pop, numer_excl_pop])
    elif excl_pop is not None:
        results.append(_skipped(excl_pop))

    if exception_pop is not None:
        results.append(evaluate_population(exception_pop, patient, ctx, informational=True))

    if numer_pop is None:
        logger.warning("Measure has no numerator", measure_id=measure.id)
        numerator = PopulationResult(population_type=PopulationType.NUMERATOR, met=False)
    else:
        numerator = evaluate_population(numer_pop, patient, ctx)
    results.append(numerator)

    if numer_excl_pop is not None:
        results.append(evaluate_population(numer_excl_pop, patient, ctx, informational=True))

    if numerator.met:
        return finish(PopulationOutcome.IN_NUMERATOR, [])
    how_close.extend(_unmet_leaves(numerator.root))
    return finish(PopulationOutcome.NOT_IN_NUMERATOR, [])


def evaluate_patients(
    measure: UniversalMeasureSpec,
    patients: Iterable[PatientRecord],
    measurement_period: Optional[Tuple[date, date]] = None,
) -> List[ValidationTrace]:
    traces = [evaluate_measure(measure, patient, measurement_period) for patient in patients]
    logger.info("Patients evaluated", measure_id=measure.id, patients=len(traces))
    return traces


def summarize_outcomes(measure_id: str, traces: Iterable[ValidationTrace]) -> MeasureScore:
    """Outcome counts and performance rate for a batch of traces."""
    score = MeasureScore(measure_id=measure_id)
    for trace in traces:
        score.total_patients += 1
        if trace.final_outcome == PopulationOutcome.IN_NUMERATOR:
            score.in_numerator += 1
        elif trace.final_outcome == PopulationOutcome.NOT_IN_NUMERATOR:
            score.not_in_numerator += 1
        elif trace.final_outcome == PopulationOutcome.EXCLUDED:
            score.excluded += 1
        else:
            score.not_in_population += 1
    performance_denominator = score.in_numerator + score.not_in_numerator
    if performance_denominator:
        score.performance_rate = round(score.in_numerator / performance_denominator, 4)
    return score
