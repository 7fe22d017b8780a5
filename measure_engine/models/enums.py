"""Enumeration types for the measure engine."""
from enum import Enum


class LogicalOperator(str, Enum):
    """Logical operators for combining criteria."""
    AND = "AND"
    OR = "OR"
    NOT = "NOT"


class PopulationType(str, Enum):
    """FHIR measure population roles."""
    INITIAL_POPULATION = "initial_population"
    DENOMINATOR = "denominator"
    DENOMINATOR_EXCLUSION = "denominator_exclusion"
    DENOMINATOR_EXCEPTION = "denominator_exception"
    NUMERATOR = "numerator"
    NUMERATOR_EXCLUSION = "numerator_exclusion"


class DataElementType(str, Enum):
    """Clinical category of a leaf criterion."""
    DIAGNOSIS = "diagnosis"
    ENCOUNTER = "encounter"
    PROCEDURE = "procedure"
    MEDICATION = "medication"
    OBSERVATION = "observation"
    DEMOGRAPHIC = "demographic"
    IMMUNIZATION = "immunization"
    ASSESSMENT = "assessment"


class ReviewStatus(str, Enum):
    """Human review state of an extracted criterion."""
    PENDING = "pending"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    FLAGGED = "flagged"


class ApprovalStatus(str, Enum):
    """Lifecycle state of a library component version."""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    ARCHIVED = "archived"


class ComponentCategory(str, Enum):
    """Library browsing categories."""
    DEMOGRAPHICS = "demographics"
    ENCOUNTERS = "encounters"
    CONDITIONS = "conditions"
    PROCEDURES = "procedures"
    MEDICATIONS = "medications"
    ASSESSMENTS = "assessments"
    LABORATORY = "laboratory"
    CLINICAL_OBSERVATIONS = "clinical-observations"
    IMMUNIZATIONS = "immunizations"
    EXCLUSIONS = "exclusions"


class ComplexityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TimingOperator(str, Enum):
    """Temporal relationship between an event and its reference point."""
    DURING = "during"
    BEFORE = "before"
    AFTER = "after"
    WITHIN = "within"
    STARTS_DURING = "starts during"
    ENDS_DURING = "ends during"
    STARTS_BEFORE = "starts before"
    STARTS_AFTER = "starts after"
    ENDS_BEFORE = "ends before"
    ENDS_AFTER = "ends after"
    OVERLAPS = "overlaps"


class TimingUnit(str, Enum):
    YEARS = "years"
    MONTHS = "months"
    WEEKS = "weeks"
    DAYS = "days"
    HOURS = "hours"


class TimingPosition(str, Enum):
    """Which boundary of the reference point a window is anchored to."""
    BEFORE_START_OF = "before start of"
    BEFORE_END_OF = "before end of"
    AFTER_START_OF = "after start of"
    AFTER_END_OF = "after end of"


class MatchType(str, Enum):
    """Result class of a library lookup."""
    EXACT = "exact"
    SIMILAR = "similar"
    NONE = "none"


class EditAction(str, Enum):
    """How an edit to a shared component is applied."""
    UPDATE_ALL = "update_all"
    FORK = "fork"


class FactType(str, Enum):
    """Kinds of clinical facts carried by a test patient."""
    DIAGNOSIS = "diagnosis"
    ENCOUNTER = "encounter"
    PROCEDURE = "procedure"
    OBSERVATION = "observation"
    MEDICATION = "medication"
    IMMUNIZATION = "immunization"
    ASSESSMENT = "assessment"


class PopulationOutcome(str, Enum):
    """Terminal classification of a patient for one measure."""
    IN_NUMERATOR = "in_numerator"
    NOT_IN_NUMERATOR = "not_in_numerator"
    EXCLUDED = "excluded"
    NOT_IN_POPULATION = "not_in_population"
