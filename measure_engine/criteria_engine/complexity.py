"""Complexity scoring for library components and criteria trees.

Atomic:    1 + timing clauses (1, or 2 with quantity/position) + 2 if negated
Composite: sum of child scores + (n - 1) for AND + 2 per nesting level
Levels:    low <= 3, medium <= 7, high otherwise
"""

from typing import Callable, Optional

from measure_engine.criteria_engine.criteria_tree import collect_clauses, collect_leaves, compute_depth
from measure_engine.models.component_library import (
    AtomicComponent,
    ComplexityFactors,
    ComponentComplexity,
    CompositeComponent,
)
from measure_engine.models.enums import ComplexityLevel, LogicalOperator
from measure_engine.models.measure_schema import TimingExpression

ResolveChild = Callable[[str], Optional[object]]


def complexity_level(score: int) -> ComplexityLevel:
    if score <= 3:
        return ComplexityLevel.LOW
    if score <= 7:
        return ComplexityLevel.MEDIUM
    return ComplexityLevel.HIGH


def count_timing_clauses(timing: Optional[TimingExpression]) -> int:
    if timing is None:
        return 1
    if timing.quantity is not None or timing.position is not None:
        return 2
    return 1


def atomic_complexity(timing: Optional[TimingExpression], negation: bool, zero_codes: bool = False) -> ComponentComplexity:
    timing_clauses = count_timing_clauses(timing)
    score = 1 + timing_clauses + (2 if negation else 0)
    return ComponentComplexity(
        level=complexity_level(score),
        score=score,
        factors=ComplexityFactors(
            base=1,
            timing_clauses=timing_clauses,
            negations=1 if negation else 0,
            zero_codes=zero_codes,
        ),
    )


def calculate_atomic_complexity(component: AtomicComponent) -> ComponentComplexity:
    return atomic_complexity(
        component.timing,
        component.negation,
        zero_codes=not component.value_set.codes,
    )


def calculate_composite_complexity(component: CompositeComponent, resolve_child: ResolveChild) -> ComponentComplexity:
    """Children that cannot be resolved contribute nothing."""
    children_sum = 0
    nesting_depth = 0
    for ref in component.children:
        child = resolve_child(ref.component_id)
        if child is None:
            continue
        children_sum += child.complexity.score
        if isinstance(child, CompositeComponent):
            nesting_depth = max(nesting_depth, (child.complexity.factors.nesting_depth or 0) + 1)

    and_operators = (
        len(component.children) - 1
        if component.operator == LogicalOperator.AND and len(component.children) > 1
        else 0
    )
    score = children_sum + and_operators + 2 * nesting_depth
    return ComponentComplexity(
        level=complexity_level(score),
        score=score,
        factors=ComplexityFactors(
            children_sum=children_sum,
            and_operators=and_operators,
            nesting_depth=nesting_depth,
        ),
    )


def tree_complexity(node) -> ComponentComplexity:
    """Score a population criteria tree the same way a composite is scored."""
    children_sum = sum(
        atomic_complexity(leaf.timing, leaf.negation).score for leaf in collect_leaves(node)
    )
    and_operators = sum(
        max(len(clause.children) - 1, 0)
        for clause in collect_clauses(node)
        if clause.operator == LogicalOperator.AND
    )
    nesting_depth = max(compute_depth(node) - 1, 0)
    score = children_sum + and_operators + 2 * nesting_depth
    return ComponentComplexity(
        level=complexity_level(score),
        score=score,
        factors=ComplexityFactors(
            children_sum=children_sum,
            and_operators=and_operators,
            nesting_depth=nesting_depth,
        ),
    )
