"""Exceptions for the criteria engine."""


class MalformedInputError(Exception):
    """Element missing identity fields, tree with a cycle, or population without a criteria root."""
    pass


class ComponentNotFoundError(Exception):
    """Referenced library component does not exist."""
    pass


class MeasureNotFoundError(Exception):
    """Referenced measure does not exist."""
    pass


class InvariantViolationError(Exception):
    """usage_count disagrees with the measure_ids set of one or more components."""

    def __init__(self, mismatches):
        self.mismatches = list(mismatches)
        ids = ", ".join(m.component_id for m in self.mismatches)
        super().__init__(f"Usage invariant violated for: {ids}")


class EvaluationAmbiguityError(Exception):
    """A criterion cannot be determined from the supplied patient data."""
    pass
