"""
Component Library Schema - reusable measure logic blocks

Atomic components hold a single value set + timing + negation; composite
components combine references to other components with AND/OR. Both carry
version/approval info and a usage index (which measures reference them).

Invariant: ``usage.usage_count == len(usage.measure_ids)``. Every write path
goes through ``ComponentUsage.add``/``remove``/``replace``, which recompute the
count from the id set.
"""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from measure_engine.models.enums import (
    ApprovalStatus,
    ComplexityLevel,
    ComponentCategory,
    LogicalOperator,
)
from measure_engine.models.measure_schema import TimingExpression, ValueSetReference


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ComplexityFactors(BaseModel):
    base: int = 0
    timing_clauses: int = 0
    negations: int = 0
    children_sum: Optional[int] = None
    and_operators: Optional[int] = None
    nesting_depth: Optional[int] = None
    zero_codes: bool = False


class ComponentComplexity(BaseModel):
    level: ComplexityLevel = ComplexityLevel.LOW
    score: int = 0
    factors: ComplexityFactors = Field(default_factory=ComplexityFactors)


class VersionHistoryEntry(BaseModel):
    version_id: str
    status: ApprovalStatus
    created_at: str
    created_by: str
    change_description: str = ""
    superseded_by: Optional[str] = None


class ComponentVersionInfo(BaseModel):
    version_id: str = "1.0"
    status: ApprovalStatus = ApprovalStatus.DRAFT
    version_history: List[VersionHistoryEntry] = Field(
        default_factory=list,
        description="Append-only history of versions"
    )
    approved_by: Optional[str] = None
    approved_at: Optional[str] = None
    review_notes: Optional[str] = None


class ComponentUsage(BaseModel):
    """Which measures reference a component."""
    measure_ids: List[str] = Field(
        default_factory=list,
        description="Sorted, de-duplicated measure ids (set semantics)"
    )
    usage_count: int = 0
    last_used_at: Optional[str] = None

    @field_validator("measure_ids")
    @classmethod
    def _as_sorted_set(cls, value: List[str]) -> List[str]:
        return sorted(set(value))

    @property
    def is_consistent(self) -> bool:
        return self.usage_count == len(self.measure_ids)

    def add(self, measure_id: str) -> bool:
        """Add a measure reference; returns False when it was already present."""
        if measure_id in self.measure_ids:
            return False
        self.measure_ids = sorted(set(self.measure_ids) | {measure_id})
        self.usage_count = len(self.measure_ids)
        self.last_used_at = _utcnow_iso()
        return True

    def remove(self, measure_id: str) -> bool:
        """Remove a measure reference; returns False when it was not present."""
        if measure_id not in self.measure_ids:
            return False
        self.measure_ids = [m for m in self.measure_ids if m != measure_id]
        self.usage_count = len(self.measure_ids)
        return True

    def replace(self, measure_ids) -> None:
        """Overwrite the id set and count together."""
        self.measure_ids = sorted(set(measure_ids))
        self.usage_count = len(self.measure_ids)


class ComponentSource(BaseModel):
    origin: Literal["ecqi", "custom", "imported"] = "custom"
    origin_reference: Optional[str] = None
    original_measure_id: Optional[str] = None


class ComponentMetadata(BaseModel):
    created_at: str = Field(default_factory=_utcnow_iso)
    created_by: str = "user"
    updated_at: str = Field(default_factory=_utcnow_iso)
    updated_by: str = "user"
    category: ComponentCategory = ComponentCategory.CLINICAL_OBSERVATIONS
    tags: List[str] = Field(default_factory=list)
    source: ComponentSource = Field(default_factory=ComponentSource)
    category_auto_assigned: bool = False


class ComponentReference(BaseModel):
    """A composite's pointer to a child component, locked to a version."""
    component_id: str
    version_id: str
    display_name: str = ""


class AtomicComponent(BaseModel):
    """A single value set with timing and negation."""
    kind: Literal["atomic"] = "atomic"
    id: str
    name: str
    description: Optional[str] = None
    value_set: ValueSetReference
    timing: TimingExpression = Field(default_factory=TimingExpression)
    negation: bool = False
    complexity: ComponentComplexity = Field(default_factory=ComponentComplexity)
    version_info: ComponentVersionInfo = Field(default_factory=ComponentVersionInfo)
    usage: ComponentUsage = Field(default_factory=ComponentUsage)
    metadata: ComponentMetadata = Field(default_factory=ComponentMetadata)

    @property
    def category(self) -> ComponentCategory:
        return self.metadata.category


class CompositeComponent(BaseModel):
    """Child component references combined with AND/OR."""
    kind: Literal["composite"] = "composite"
    id: str
    name: str
    description: Optional[str] = None
    operator: LogicalOperator = LogicalOperator.AND
    children: List[ComponentReference] = Field(default_factory=list)
    complexity: ComponentComplexity = Field(default_factory=ComponentComplexity)
    version_info: ComponentVersionInfo = Field(default_factory=ComponentVersionInfo)
    usage: ComponentUsage = Field(default_factory=ComponentUsage)
    metadata: ComponentMetadata = Field(default_factory=ComponentMetadata)

    @property
    def category(self) -> ComponentCategory:
        return self.metadata.category


LibraryComponent = Annotated[Union[AtomicComponent, CompositeComponent], Field(discriminator="kind")]

# Insertion-ordered: matching tie-breaks on this order.
ComponentLibrary = Dict[str, Union[AtomicComponent, CompositeComponent]]
