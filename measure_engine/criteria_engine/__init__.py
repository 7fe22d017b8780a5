"""Criteria Engine.

Identity hashing, component matching, library linking, edit propagation,
component merging and deterministic patient evaluation over recursive
measure criteria trees.
"""

from measure_engine.criteria_engine.exceptions import (
    MalformedInputError,
    ComponentNotFoundError,
    MeasureNotFoundError,
    InvariantViolationError,
    EvaluationAmbiguityError,
)
from measure_engine.criteria_engine.identity import (
    compute_identity,
    element_identity,
    component_identity,
)
from measure_engine.criteria_engine.matcher import (
    MatchResult,
    ComponentDiff,
    find_exact_matches,
    find_similar_components,
    find_match,
    find_match_prioritize_approved,
    compute_component_diff,
)
from measure_engine.criteria_engine.linker import (
    LinkResult,
    link_measure_components,
    rebuild_usage_index,
)
from measure_engine.criteria_engine.sync import (
    SyncResult,
    ForkResult,
    SharedEditResult,
    sync_component_to_measures,
    fork_component,
    handle_shared_edit,
)
from measure_engine.criteria_engine.merge import (
    MergeResult,
    merge_components,
)
from measure_engine.criteria_engine.evaluator import (
    evaluate_measure,
    evaluate_patients,
    summarize_outcomes,
)
from measure_engine.criteria_engine.integrity import (
    check_usage_invariants,
    validate_referential_integrity,
)

__all__ = [
    # Exceptions
    "MalformedInputError",
    "ComponentNotFoundError",
    "MeasureNotFoundError",
    "InvariantViolationError",
    "EvaluationAmbiguityError",
    # Identity
    "compute_identity",
    "element_identity",
    "component_identity",
    # Matcher
    "MatchResult",
    "ComponentDiff",
    "find_exact_matches",
    "find_similar_components",
    "find_match",
    "find_match_prioritize_approved",
    "compute_component_diff",
    # Linker
    "LinkResult",
    "link_measure_components",
    "rebuild_usage_index",
    # Sync
    "SyncResult",
    "ForkResult",
    "SharedEditResult",
    "sync_component_to_measures",
    "fork_component",
    "handle_shared_edit",
    # Merge
    "MergeResult",
    "merge_components",
    # Evaluator
    "evaluate_measure",
    "evaluate_patients",
    "summarize_outcomes",
    # Integrity
    "check_usage_invariants",
    "validate_referential_integrity",
]
