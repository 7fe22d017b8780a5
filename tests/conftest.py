import pytest
import pytest_asyncio

from measure_engine.config.settings import get_settings
from measure_engine.criteria_engine import library_service
from measure_engine.criteria_engine.versioning import create_atomic_component
from measure_engine.models.component_library import ComponentSource
from measure_engine.models.enums import DataElementType, LogicalOperator, PopulationType
from measure_engine.models.measure_schema import (
    CodeReference,
    DataElement,
    LogicalClause,
    MeasureMetadata,
    PopulationDefinition,
    TimingExpression,
    UniversalMeasureSpec,
    ValueSetReference,
)
from measure_engine.storage import database

CRC_OID = "2.16.840.1.113883.3.464.1003.198.12.1011"


def crc_value_set() -> ValueSetReference:
    return ValueSetReference(
        oid=CRC_OID,
        name="Colonoscopy",
        codes=[CodeReference(code="44388", system="CPT", display="Colonoscopy")],
    )


def colonoscopy_element(element_id: str = "el-colonoscopy", **overrides) -> DataElement:
    fields = dict(
        id=element_id,
        type=DataElementType.PROCEDURE,
        description="Colonoscopy",
        value_set=crc_value_set(),
        timing=TimingExpression(display_expression="during measurement period"),
    )
    fields.update(overrides)
    return DataElement(**fields)


def encounter_element(element_id: str = "el-visit") -> DataElement:
    return DataElement(
        id=element_id,
        type=DataElementType.ENCOUNTER,
        description="Office Visit",
        value_set=ValueSetReference(
            oid="2.16.840.1.113883.3.464.1003.101.12.1001",
            name="Office Visit",
            codes=[CodeReference(code="99213", system="CPT")],
        ),
    )


def make_measure(measure_id: str, *populations: PopulationDefinition, title: str = "") -> UniversalMeasureSpec:
    return UniversalMeasureSpec(
        id=measure_id,
        metadata=MeasureMetadata(
            measure_id=measure_id,
            title=title or f"Measure {measure_id}",
            measurement_period_start="2025-01-01",
            measurement_period_end="2025-12-31",
        ),
        populations=list(populations),
    )


def population(pop_type: PopulationType, *children, operator=LogicalOperator.AND, pop_id=None) -> PopulationDefinition:
    pop_id = pop_id or pop_type.value
    return PopulationDefinition(
        id=pop_id,
        type=pop_type,
        criteria=LogicalClause(id=f"{pop_id}-root", operator=operator, children=list(children)),
    )


def numerator_measure(measure_id: str, element: DataElement) -> UniversalMeasureSpec:
    return make_measure(measure_id, population(PopulationType.NUMERATOR, element))


@pytest.fixture
def crc_component():
    """The shared colonoscopy component, already used by M1."""
    component = create_atomic_component(
        name="Colonoscopy",
        value_set=crc_value_set(),
        component_id="comp-colonoscopy",
        source=ComponentSource(origin="ecqi"),
    )
    component.usage.add("M1")
    return component


@pytest.fixture
def linked_measures(crc_component):
    """M1 and M2 both linked to the colonoscopy component."""
    m1 = numerator_measure("M1", colonoscopy_element("m1-colonoscopy", library_component_id=crc_component.id))
    m2 = numerator_measure("M2", colonoscopy_element("m2-colonoscopy", library_component_id=crc_component.id))
    crc_component.usage.add("M2")
    return {"M1": m1, "M2": m2}


@pytest.fixture
def db_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'measure_engine.db'}")
    monkeypatch.delenv("EXTERNAL_DATABASE_URL", raising=False)
    get_settings.cache_clear()
    database._engine = None
    database._async_session_factory = None
    library_service.reset_library_service()
    yield
    database._engine = None
    database._async_session_factory = None
    library_service.reset_library_service()
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def db(db_settings):
    await database.init_db()
    yield
    await database.drop_db()
    await database.dispose_engine()
