"""
Universal Measure Schema - population logic as recursive criteria trees

This module defines the structured representation of a clinical quality
measure: populations whose criteria are boolean trees of data elements.

Design Principles:
- Tagged union: a criteria node is either a DataElement (leaf) or a
  LogicalClause (internal node), discriminated by the ``kind`` field
- Stable ids: every node carries an id that is unique within its tree
- Weak references: ``DataElement.library_component_id`` is a lookup key into
  the component library, never an owned object
- Mixed operators: ``sibling_connections`` override the clause operator
  between two specific children (``A AND B OR C``)
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from measure_engine.models.enums import (
    DataElementType,
    LogicalOperator,
    PopulationType,
    ReviewStatus,
    TimingOperator,
    TimingPosition,
    TimingUnit,
)


class CodeReference(BaseModel):
    """A clinical code (ICD-10, SNOMED, CPT, LOINC, RxNorm, CVX, etc.)."""
    code: str = Field(..., description="The code value")
    display: Optional[str] = Field(None, description="Human-readable display name")
    system: str = Field("", description="Code system")

    def __str__(self) -> str:
        return f"{self.system}:{self.code}"


class ValueSetReference(BaseModel):
    """A named value set, usually identified by a VSAC OID."""
    oid: Optional[str] = Field(None, description="Value set OID")
    name: str = Field("", description="Value set name")
    version: Optional[str] = None
    codes: List[CodeReference] = Field(default_factory=list)


class TimingExpression(BaseModel):
    """When an event must occur relative to a reference point."""
    operator: TimingOperator = TimingOperator.DURING
    quantity: Optional[int] = Field(None, description="Quantity for 'within N units' windows")
    unit: Optional[TimingUnit] = None
    position: Optional[TimingPosition] = None
    reference: str = Field("Measurement Period", description="Reference period or index event")
    display_expression: str = Field("", description="Free-text expression as written in the measure")

    def expression(self) -> str:
        """Display expression, or a rendering of the structured fields."""
        if self.display_expression.strip():
            return self.display_expression
        parts = [self.operator.value]
        if self.quantity is not None and self.unit:
            parts.append(f"{self.quantity} {self.unit.value}")
        if self.position:
            parts.append(self.position.value)
        parts.append(self.reference)
        return " ".join(parts)


class Thresholds(BaseModel):
    """Numeric bounds for demographic (age) and result-value criteria."""
    age_min: Optional[float] = None
    age_max: Optional[float] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    unit: Optional[str] = None
    comparator: Optional[Literal[">", ">=", "<", "<=", "=", "!="]] = None


class DataElement(BaseModel):
    """
    A leaf criterion testing ONE clinical fact pattern.

    Examples:
    - "Diagnosis of Colorectal Cancer" (value set + timing)
    - "Absence of colonoscopy within 10 years" (negation)
    - "Most recent HbA1c > 9%" (observation + threshold)
    """
    kind: Literal["element"] = "element"
    id: str = Field(..., description="Unique identifier within the tree")
    type: DataElementType
    description: str = ""
    value_set: Optional[ValueSetReference] = None
    direct_codes: List[CodeReference] = Field(
        default_factory=list,
        description="Codes used when no value set applies"
    )
    timing: Optional[TimingExpression] = None
    negation: bool = Field(False, description="Element represents the absence of the fact")
    thresholds: Optional[Thresholds] = None
    gender_value: Optional[Literal["male", "female"]] = Field(
        None, description="Required administrative sex for demographic elements"
    )
    library_component_id: Optional[str] = Field(
        None, description="Back-reference to the library component this element is linked to"
    )
    review_status: ReviewStatus = ReviewStatus.PENDING

    def all_codes(self) -> List[CodeReference]:
        """Value set codes followed by direct codes."""
        codes = list(self.value_set.codes) if self.value_set else []
        return codes + list(self.direct_codes)


class SiblingConnection(BaseModel):
    """Overrides the clause operator between two specific children."""
    from_index: int
    to_index: int
    operator: LogicalOperator


class LogicalClause(BaseModel):
    """
    An internal node combining children with a logical operator.
    Enables:
    - (A AND B AND C)
    - (A OR B)
    - (A AND (B OR C))
    - A AND B OR C via sibling_connections
    """
    kind: Literal["clause"] = "clause"
    id: str = Field(..., description="Unique identifier within the tree")
    operator: LogicalOperator
    description: str = ""
    children: List["CriteriaNode"] = Field(default_factory=list)
    sibling_connections: List[SiblingConnection] = Field(default_factory=list)
    review_status: ReviewStatus = ReviewStatus.PENDING


CriteriaNode = Annotated[Union[DataElement, LogicalClause], Field(discriminator="kind")]

LogicalClause.model_rebuild()


class PopulationDefinition(BaseModel):
    """One measure population and its criteria root."""
    id: str
    type: PopulationType
    description: str = ""
    criteria: Optional[LogicalClause] = Field(
        None, description="Root clause; a population without one is malformed"
    )


class MeasureMetadata(BaseModel):
    measure_id: str = Field(..., description="Published identifier (e.g., 'CMS130')")
    title: str = ""
    version: Optional[str] = None
    measurement_period_start: Optional[str] = Field(None, description="ISO date")
    measurement_period_end: Optional[str] = Field(None, description="ISO date")


class AgeRange(BaseModel):
    min: int = Field(0, ge=0, description="Youngest eligible age in years")
    max: int = Field(130, ge=0, description="Oldest eligible age in years")


class GlobalConstraints(BaseModel):
    """
    Measure-wide eligibility, checked before any population is evaluated.

    ``age_calculation`` picks the age that must fall in ``age_range``:
    ``at_start`` / ``at_end`` use the age on that period boundary, ``during``
    accepts anyone in range at some point in the period, and ``turns_during``
    also accepts a patient who turns ``max`` within the period.
    """
    age_range: Optional[AgeRange] = None
    gender: Literal["male", "female", "all"] = "all"
    age_calculation: Literal["at_start", "at_end", "during", "turns_during"] = "during"


class UniversalMeasureSpec(BaseModel):
    """
    Complete structured representation of a quality measure.

    Populations are ordered; the well-known six types appear at most once in
    a conformant measure.
    """
    id: str = Field(..., description="Internal measure identifier, used in usage indexes")
    metadata: MeasureMetadata
    global_constraints: Optional[GlobalConstraints] = None
    populations: List[PopulationDefinition] = Field(default_factory=list)
    value_sets: List[ValueSetReference] = Field(default_factory=list)

    def get_population(self, population_type: PopulationType) -> Optional[PopulationDefinition]:
        """First population of the given type."""
        for population in self.populations:
            if population.type == population_type:
                return population
        return None
