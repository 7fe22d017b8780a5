"""Identity keys for deduplicating data elements against library components.

An identity key is ``normalize(oid)|normalize(timing)|negation``. Two
elements or components with equal keys are the same criterion regardless of
display name. Keys are plain strings so they can be compared, logged and
stored without further encoding.
"""

import re
import string
from typing import Iterable, Optional

from measure_engine.models.component_library import (
    AtomicComponent,
    ComponentLibrary,
    CompositeComponent,
)
from measure_engine.models.enums import LogicalOperator
from measure_engine.models.measure_schema import (
    CodeReference,
    DataElement,
    LogicalClause,
    TimingExpression,
)

_WHITESPACE = re.compile(r"\s+")
_PLACEHOLDER_OIDS = {"n/a", "na", "none", "null"}


def _normalize(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip().lower())


def normalize_oid(oid: Optional[str]) -> str:
    """Lowercase, collapse whitespace and strip surrounding punctuation."""
    return _normalize(oid).strip(string.punctuation + " ")


def normalize_timing(timing_expression: Optional[str]) -> str:
    return _normalize(timing_expression)


def compute_identity(oid: Optional[str], timing_expression: Optional[str], negation: bool) -> str:
    """Canonical identity key; pure and insensitive to caller formatting."""
    return "|".join([
        normalize_oid(oid),
        normalize_timing(timing_expression),
        "true" if negation else "false",
    ])


def timing_text(timing: Optional[TimingExpression]) -> str:
    """Timing text used for hashing; absent timing means 'during Measurement Period'."""
    return (timing or TimingExpression()).expression()


def usable_oid(oid: Optional[str]) -> Optional[str]:
    """The OID if it identifies something, else None."""
    if oid is None or normalize_oid(oid) in _PLACEHOLDER_OIDS or not normalize_oid(oid):
        return None
    return oid


def identity_oid(oid: Optional[str], codes: Iterable[CodeReference] = ()) -> str:
    """
    OID used for hashing.

    A value set without an OID but with codes hashes on a ``codes:`` key
    built from its sorted ``system:code`` pairs, so distinct code-only
    elements do not collapse onto a single timing+negation identity.
    """
    real_oid = usable_oid(oid)
    if real_oid:
        return real_oid
    pairs = sorted({f"{_normalize(c.system)}:{_normalize(c.code)}" for c in codes if c.code})
    if pairs:
        return "codes:" + ",".join(pairs)
    return ""


def has_usable_identity(element: DataElement) -> bool:
    """An element can be linked when it has an OID or at least one code."""
    oid = element.value_set.oid if element.value_set else None
    return bool(usable_oid(oid) or element.all_codes())


def element_identity(element: DataElement) -> str:
    oid = element.value_set.oid if element.value_set else None
    return compute_identity(
        identity_oid(oid, element.all_codes()),
        timing_text(element.timing),
        element.negation,
    )


def component_identity(component) -> Optional[str]:
    """Identity of an atomic component; composites are not identity-matched."""
    if not isinstance(component, AtomicComponent):
        return None
    return compute_identity(
        identity_oid(component.value_set.oid, component.value_set.codes),
        timing_text(component.timing),
        component.negation,
    )


def composite_identity(operator: LogicalOperator, child_keys: Iterable[str]) -> str:
    """Identity of an AND/OR combination; child order does not matter."""
    return f"composite:{operator.value}(" + ";".join(sorted(child_keys)) + ")"


def clause_identity(clause: LogicalClause) -> Optional[str]:
    """
    Composite identity of a clause whose children are all linkable elements.

    Returns None for NOT clauses, mixed-operator clauses, clauses with fewer
    than two children, and clauses with nested sub-clauses.
    """
    if clause.operator == LogicalOperator.NOT or clause.sibling_connections:
        return None
    if len(clause.children) < 2:
        return None
    keys = []
    for child in clause.children:
        if not isinstance(child, DataElement) or not has_usable_identity(child):
            return None
        keys.append(element_identity(child))
    return composite_identity(clause.operator, keys)


def composite_component_identity(component: CompositeComponent, library: ComponentLibrary) -> Optional[str]:
    """Composite identity resolved through the library; None if a child is missing."""
    keys = []
    for ref in component.children:
        child = library.get(ref.component_id)
        key = component_identity(child) if child is not None else None
        if key is None:
            return None
        keys.append(key)
    if not keys:
        return None
    return composite_identity(component.operator, keys)
