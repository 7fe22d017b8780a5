"""Generic walks over the DataElement / LogicalClause tagged union.

Every function dispatches on ``node.kind``; none of them mutate their input.
"""

from typing import Any, Callable, Dict, Iterator, Optional, Set

from pydantic import TypeAdapter

from measure_engine.models.enums import LogicalOperator
from measure_engine.models.measure_schema import CriteriaNode, DataElement, LogicalClause

_node_adapter = TypeAdapter(CriteriaNode)

NodeFn = Callable[[Any], Any]


def is_clause(node) -> bool:
    return getattr(node, "kind", None) == "clause"


def is_element(node) -> bool:
    return getattr(node, "kind", None) == "element"


def collect_leaves(node) -> Iterator[DataElement]:
    """Data elements, depth-first and left-to-right. Each call starts a fresh walk."""
    if is_element(node):
        yield node
        return
    for child in node.children:
        yield from collect_leaves(child)


def collect_clauses(node) -> Iterator[LogicalClause]:
    """Clauses in pre-order (parent before children)."""
    if not is_clause(node):
        return
    yield node
    for child in node.children:
        yield from collect_clauses(child)


def transform(node, fn: NodeFn):
    """
    Apply ``fn`` to every node bottom-up and return the new tree.

    ``fn`` receives a copy whose children have already been transformed and
    returns the replacement node. Clause ``sibling_connections`` are carried
    over unless ``fn`` rewrites them.
    """
    if is_element(node):
        return fn(node.model_copy(deep=True))
    children = [transform(child, fn) for child in node.children]
    rebuilt = node.model_copy(update={
        "children": children,
        "sibling_connections": [sc.model_copy() for sc in node.sibling_connections],
    })
    return fn(rebuilt)


def compute_depth(node) -> int:
    """Nesting depth; a leaf is 0."""
    if is_element(node):
        return 0
    return 1 + max((compute_depth(child) for child in node.children), default=0)


def count_leaves(node) -> int:
    return sum(1 for _ in collect_leaves(node))


def has_cycle(node, _path: Optional[Set[str]] = None) -> bool:
    """True if a node id repeats on its own ancestor chain."""
    if _path is None:
        _path = set()
    if node.id in _path:
        return True
    if is_element(node):
        return False
    _path.add(node.id)
    try:
        return any(has_cycle(child, _path) for child in node.children)
    finally:
        # Path-scoped: siblings may legitimately reuse a subtree.
        _path.discard(node.id)


def find_node(node, node_id: str):
    """First node with the given id, pre-order; None if absent."""
    if node.id == node_id:
        return node
    if is_clause(node):
        for child in node.children:
            found = find_node(child, node_id)
            if found is not None:
                return found
    return None


def operator_between(clause: LogicalClause, left: int, right: int) -> LogicalOperator:
    """Operator joining two siblings: a sibling override if present, else the clause operator."""
    pair = {left, right}
    for connection in clause.sibling_connections:
        if {connection.from_index, connection.to_index} == pair:
            return connection.operator
    return clause.operator


def _title(element: DataElement) -> str:
    if element.description:
        return element.description
    if element.value_set and element.value_set.name:
        return element.value_set.name
    return element.id


def render_expression(node) -> str:
    """Human-readable expression, e.g. ``(A AND B) OR C`` or ``NOT (A)``."""
    if is_element(node):
        return _title(node)
    parts = []
    for child in node.children:
        text = render_expression(child)
        parts.append(f"({text})" if is_clause(child) and len(child.children) > 1 else text)
    if node.operator == LogicalOperator.NOT:
        return f"NOT ({' AND '.join(parts)})"
    if not parts:
        return ""
    rendered = parts[0]
    for index in range(1, len(parts)):
        rendered += f" {operator_between(node, index - 1, index).value} {parts[index]}"
    return rendered


def tree_to_dict(node) -> Dict[str, Any]:
    """Storage shape of a tree (JSON-safe)."""
    return node.model_dump(mode="json")


def tree_from_dict(data: Dict[str, Any]):
    """Inverse of tree_to_dict; dispatches on ``kind``."""
    return _node_adapter.validate_python(data)
