"""Component Matcher - find the library component a data element corresponds to.

Matching policy:
- Exact: identity keys equal (atomic components only, library insertion order,
  first wins). Only exact matches are ever auto-linked.
- Similar: no exact match, but the names overlap. Surfaced to a reviewer as a
  suggestion with a similarity score and field-level differences.
- None: caller decides whether to create a new component.
"""

import re
from collections.abc import Mapping
from typing import Iterable, List, Optional, Set, Union

from pydantic import BaseModel, Field

from measure_engine.config.logging_config import get_logger
from measure_engine.config.settings import get_settings
from measure_engine.criteria_engine.identity import (
    component_identity,
    element_identity,
    normalize_oid,
    normalize_timing,
    timing_text,
)
from measure_engine.models.component_library import (
    AtomicComponent,
    ComponentLibrary,
    CompositeComponent,
)
from measure_engine.models.enums import ApprovalStatus, MatchType
from measure_engine.models.measure_schema import DataElement

logger = get_logger(__name__)

AnyComponent = Union[AtomicComponent, CompositeComponent]

_NON_WORD = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")

# Words shared by unrelated value sets; an overlap made only of these is suspicious.
GENERIC_CLINICAL_WORDS = {
    "visit", "visits", "encounter", "encounters", "diagnosis", "diagnoses",
    "procedure", "procedures", "medication", "medications", "assessment",
    "patient", "patients", "service", "services", "screening", "test", "tests",
    "history", "care", "office", "during", "measurement", "period", "with",
    "without", "value", "result", "results", "order", "performed", "other",
    "condition", "conditions", "disorder", "disorders", "therapy", "treatment",
}


class ComponentDiff(BaseModel):
    field: str
    expected: str
    actual: str
    description: str


class MatchResult(BaseModel):
    match_type: MatchType
    matched: Optional[Union[AtomicComponent, CompositeComponent]] = None
    similarity: Optional[float] = None
    differences: List[ComponentDiff] = Field(default_factory=list)
    needs_review: bool = False
    overlapping_words: List[str] = Field(default_factory=list)


def _components(library: Union[ComponentLibrary, Iterable[AnyComponent]]) -> List[AnyComponent]:
    if isinstance(library, Mapping):
        return list(library.values())
    return list(library)


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not name:
        return ""
    lowered = _NON_WORD.sub(" ", name.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def significant_words(name: str, min_length: int) -> Set[str]:
    return {w for w in normalize_name(name).split(" ") if len(w) >= min_length}


def candidate_name(element: DataElement) -> str:
    """Value set name, falling back to the element description."""
    if element.value_set and element.value_set.name:
        return element.value_set.name
    return element.description


# --- Exact matching ---

def find_exact_matches(
    candidate: DataElement,
    library: Union[ComponentLibrary, Iterable[AnyComponent]],
) -> List[AtomicComponent]:
    """All atomic components whose identity equals the candidate's, in library order."""
    key = element_identity(candidate)
    return [
        c for c in _components(library)
        if isinstance(c, AtomicComponent) and component_identity(c) == key
    ]


# --- Fuzzy matching ---

def _similar_result(
    candidate: DataElement,
    component: AtomicComponent,
    min_word_overlap: int,
    min_word_length: int,
) -> Optional[MatchResult]:
    cand_name = normalize_name(candidate_name(candidate))
    comp_name = normalize_name(component.name)
    if not cand_name or not comp_name:
        return None

    cand_words = significant_words(cand_name, min_word_length)
    comp_words = significant_words(comp_name, min_word_length)
    overlap = cand_words & comp_words
    union = cand_words | comp_words

    substring = cand_name in comp_name or comp_name in cand_name
    same_semantics = (
        normalize_timing(timing_text(candidate.timing)) == normalize_timing(timing_text(component.timing))
        and candidate.negation == component.negation
    )
    if not substring and not (same_semantics and len(overlap) >= min_word_overlap):
        return None

    similarity = round(len(overlap) / len(union), 4) if union else 0.0
    needs_review = (not overlap) or overlap <= GENERIC_CLINICAL_WORDS
    return MatchResult(
        match_type=MatchType.SIMILAR,
        matched=component,
        similarity=similarity,
        differences=compute_component_diff(component, candidate),
        needs_review=needs_review,
        overlapping_words=sorted(overlap),
    )


def find_similar_components(
    candidate: DataElement,
    library: Union[ComponentLibrary, Iterable[AnyComponent]],
    min_word_overlap: Optional[int] = None,
    min_word_length: Optional[int] = None,
) -> List[MatchResult]:
    """
    Every qualifying similar component, best similarity first.

    Exact matches are skipped. The sort is stable, so ties keep library order.
    """
    settings = get_settings()
    if min_word_overlap is None:
        min_word_overlap = settings.fuzzy_min_word_overlap
    if min_word_length is None:
        min_word_length = settings.fuzzy_min_word_length

    key = element_identity(candidate)
    results = []
    for component in _components(library):
        if not isinstance(component, AtomicComponent):
            continue
        if component_identity(component) == key:
            continue
        result = _similar_result(candidate, component, min_word_overlap, min_word_length)
        if result is not None:
            results.append(result)
    results.sort(key=lambda r: r.similarity or 0.0, reverse=True)
    return results


def find_match(
    candidate: DataElement,
    library: Union[ComponentLibrary, Iterable[AnyComponent]],
    min_word_overlap: Optional[int] = None,
    min_word_length: Optional[int] = None,
) -> MatchResult:
    """Exact identity match first, then the best similar candidate, else none."""
    exact = find_exact_matches(candidate, library)
    if exact:
        return MatchResult(match_type=MatchType.EXACT, matched=exact[0], similarity=1.0)
    return _fuzzy_fallback(candidate, library, min_word_overlap, min_word_length)


def find_match_prioritize_approved(
    candidate: DataElement,
    library: Union[ComponentLibrary, Iterable[AnyComponent]],
    min_word_overlap: Optional[int] = None,
    min_word_length: Optional[int] = None,
) -> MatchResult:
    """Like find_match, but among several exact matches an approved one wins."""
    exact = find_exact_matches(candidate, library)
    if exact:
        approved = [c for c in exact if c.version_info.status == ApprovalStatus.APPROVED]
        chosen = approved[0] if approved else exact[0]
        if len(exact) > 1:
            logger.debug(
                "Multiple exact matches",
                element_id=candidate.id,
                component_ids=[c.id for c in exact],
                chosen=chosen.id,
            )
        return MatchResult(match_type=MatchType.EXACT, matched=chosen, similarity=1.0)
    return _fuzzy_fallback(candidate, library, min_word_overlap, min_word_length)


def _fuzzy_fallback(candidate, library, min_word_overlap, min_word_length) -> MatchResult:
    similar = find_similar_components(candidate, library, min_word_overlap, min_word_length)
    if not similar:
        return MatchResult(match_type=MatchType.NONE)
    best = similar[0]
    if best.needs_review:
        logger.warning(
            "Suspicious similar match",
            element_id=candidate.id,
            component_id=best.matched.id if best.matched else None,
            overlapping_words=best.overlapping_words,
        )
    return best


# --- Diffing ---

def _text(value) -> str:
    if value is None or value == "":
        return "none"
    return str(getattr(value, "value", value))


def compute_component_diff(component: AnyComponent, candidate: DataElement) -> List[ComponentDiff]:
    """Field-level differences between a library component and a candidate element."""
    if isinstance(component, CompositeComponent):
        return [ComponentDiff(
            field="kind",
            expected="composite",
            actual="element",
            description="Library component is a composite; candidate is a single data element",
        )]

    diffs = []
    cand_oid = candidate.value_set.oid if candidate.value_set else None
    if normalize_oid(component.value_set.oid) != normalize_oid(cand_oid):
        diffs.append(ComponentDiff(
            field="value_set",
            expected=_text(component.value_set.oid),
            actual=_text(cand_oid),
            description=f"Value set OID differs: library has \"{_text(component.value_set.oid)}\", incoming has \"{_text(cand_oid)}\"",
        ))

    lib_timing = component.timing
    cand_timing = candidate.timing
    for attr in ("operator", "quantity", "unit", "position", "reference"):
        expected = _text(getattr(lib_timing, attr, None))
        actual = _text(getattr(cand_timing, attr, None)) if cand_timing else _text(None)
        if cand_timing is None and attr in ("operator", "reference"):
            # Absent timing defaults to "during Measurement Period".
            actual = _text(getattr(lib_timing.__class__(), attr))
        if expected != actual:
            diffs.append(ComponentDiff(
                field="timing",
                expected=expected,
                actual=actual,
                description=f"Timing {attr} differs: library has \"{expected}\", incoming has \"{actual}\"",
            ))

    if component.negation != candidate.negation:
        diffs.append(ComponentDiff(
            field="negation",
            expected=str(component.negation).lower(),
            actual=str(candidate.negation).lower(),
            description=f"Negation differs: library has {str(component.negation).lower()}, incoming has {str(candidate.negation).lower()}",
        ))
    return diffs
