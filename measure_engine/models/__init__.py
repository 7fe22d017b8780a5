"""Data models for the measure engine."""
from .enums import (
    LogicalOperator,
    PopulationType,
    DataElementType,
    ReviewStatus,
    ApprovalStatus,
    ComponentCategory,
    ComplexityLevel,
    TimingOperator,
    TimingUnit,
    TimingPosition,
    MatchType,
    EditAction,
    FactType,
    PopulationOutcome,
)
from .measure_schema import (
    CodeReference,
    ValueSetReference,
    TimingExpression,
    Thresholds,
    DataElement,
    SiblingConnection,
    LogicalClause,
    CriteriaNode,
    PopulationDefinition,
    MeasureMetadata,
    AgeRange,
    GlobalConstraints,
    UniversalMeasureSpec,
)
from .component_library import (
    AtomicComponent,
    CompositeComponent,
    LibraryComponent,
    ComponentLibrary,
    ComponentReference,
    ComponentUsage,
    ComponentVersionInfo,
    VersionHistoryEntry,
    ComponentComplexity,
    ComponentMetadata,
)
from .validation import (
    PatientFact,
    PatientRecord,
    ValidationFact,
    ValidationNode,
    PopulationResult,
    ValidationTrace,
    MeasureScore,
)

__all__ = [
    "LogicalOperator",
    "PopulationType",
    "DataElementType",
    "ReviewStatus",
    "ApprovalStatus",
    "ComponentCategory",
    "ComplexityLevel",
    "TimingOperator",
    "TimingUnit",
    "TimingPosition",
    "MatchType",
    "EditAction",
    "FactType",
    "PopulationOutcome",
    "CodeReference",
    "ValueSetReference",
    "TimingExpression",
    "Thresholds",
    "DataElement",
    "SiblingConnection",
    "LogicalClause",
    "CriteriaNode",
    "PopulationDefinition",
    "MeasureMetadata",
    "AgeRange",
    "GlobalConstraints",
    "UniversalMeasureSpec",
    "AtomicComponent",
    "CompositeComponent",
    "LibraryComponent",
    "ComponentLibrary",
    "ComponentReference",
    "ComponentUsage",
    "ComponentVersionInfo",
    "VersionHistoryEntry",
    "ComponentComplexity",
    "ComponentMetadata",
    "PatientFact",
    "PatientRecord",
    "ValidationFact",
    "ValidationNode",
    "PopulationResult",
    "ValidationTrace",
    "MeasureScore",
]
