"""Patient input and validation-trace output models for measure evaluation."""

import datetime as dt
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from measure_engine.models.enums import (
    FactType,
    LogicalOperator,
    PopulationOutcome,
    PopulationType,
)


class PatientFact(BaseModel):
    """One coded clinical fact from a test patient."""
    fact_type: FactType
    code: str
    system: str = ""
    display: str = ""
    date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    value: Optional[float] = Field(None, description="Numeric result for observations")
    unit: Optional[str] = None
    status: Optional[str] = None


class PatientRecord(BaseModel):
    """A synthetic patient: demographics plus an unordered bag of facts."""
    id: str
    name: str = ""
    birth_date: Optional[dt.date] = None
    gender: Optional[str] = None
    facts: List[PatientFact] = Field(default_factory=list)
    index_events: Dict[str, dt.date] = Field(
        default_factory=dict,
        description="Named anchor dates (e.g. 'IPSD') usable as timing references"
    )

    def facts_of(self, *fact_types: FactType) -> List[PatientFact]:
        return [f for f in self.facts if f.fact_type in fact_types]


class ValidationFact(BaseModel):
    code: str
    display: str = ""
    date: Optional[str] = None
    source: Optional[str] = None


class ValidationNode(BaseModel):
    """Evaluation result for one criteria node; clause nodes carry children."""
    id: str
    title: str
    node_type: Literal["element", "clause"]
    operator: Optional[LogicalOperator] = None
    description: str = ""
    met: bool
    determinable: bool = Field(
        True, description="False when the result could not be established from the patient data"
    )
    status: Literal["pass", "fail", "partial", "not_applicable"] = "fail"
    facts: List[ValidationFact] = Field(default_factory=list)
    evidence: List[str] = Field(default_factory=list)
    children: List["ValidationNode"] = Field(default_factory=list)


ValidationNode.model_rebuild()


class PopulationResult(BaseModel):
    population_id: Optional[str] = None
    population_type: PopulationType
    evaluated: bool = True
    met: bool = False
    informational: bool = Field(
        False, description="Recorded in the trace but does not affect classification"
    )
    root: Optional[ValidationNode] = None


class ValidationTrace(BaseModel):
    """Per-patient evaluation output; derived, never used as library input."""
    patient_id: str
    patient_name: str = ""
    measure_id: str
    pre_checks: List[ValidationNode] = Field(
        default_factory=list, description="Measure-wide age and gender checks, evaluated before any population"
    )
    populations: List[PopulationResult] = Field(default_factory=list)
    final_outcome: PopulationOutcome
    how_close: List[str] = Field(
        default_factory=list, description="Unmet criteria that kept the patient out of the next population"
    )
    exclusion_reasons: List[str] = Field(
        default_factory=list, description="Met exclusion criteria when the outcome is excluded"
    )
    narrative: str = ""

    def get_population(self, population_type: PopulationType) -> Optional[PopulationResult]:
        for result in self.populations:
            if result.population_type == population_type:
                return result
        return None


class MeasureScore(BaseModel):
    """Outcome counts for a batch of patients."""
    measure_id: str
    total_patients: int = 0
    in_numerator: int = 0
    not_in_numerator: int = 0
    excluded: int = 0
    not_in_population: int = 0
    performance_rate: Optional[float] = Field(
        None, description="in_numerator / (in_numerator + not_in_numerator)"
    )
