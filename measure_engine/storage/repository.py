"""Measure and Component Repositories - persist measures and the component library.

Both repositories store the full pydantic model as a JSON payload and keep an
insertion position so ``list_all`` returns rows in the order they were first
stored (exact matching depends on library insertion order).
"""

import json
import hashlib
from typing import Dict, Iterable, List, Optional

from pydantic import TypeAdapter
from sqlalchemy import delete, func, select

from measure_engine.config.logging_config import get_logger
from measure_engine.models.component_library import ComponentLibrary, LibraryComponent
from measure_engine.models.measure_schema import UniversalMeasureSpec
from measure_engine.storage.database import get_db
from measure_engine.storage.models import LibraryComponentModel, MeasureRecordModel

logger = get_logger(__name__)

_component_adapter = TypeAdapter(LibraryComponent)


def content_hash(payload: dict) -> str:
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True, default=str).encode()
    ).hexdigest()[:16]


async def _next_position(session, model) -> int:
    result = await session.execute(select(func.max(model.position)))
    current = result.scalar()
    return 0 if current is None else current + 1


class MeasureRepository:
    """Async repository for UniversalMeasureSpec documents."""

    async def store(self, measure: UniversalMeasureSpec) -> str:
        await self.store_many([measure])
        return measure.id

    async def store_many(self, measures: Iterable[UniversalMeasureSpec]) -> int:
        """Insert or overwrite measures by id in one transaction."""
        stored = 0
        async with get_db() as session:
            position = await _next_position(session, MeasureRecordModel)
            for measure in measures:
                payload = measure.model_dump(mode="json")
                digest = content_hash(payload)
                existing = await session.get(MeasureRecordModel, measure.id)
                if existing:
                    existing.payload = payload
                    existing.content_hash = digest
                    existing.title = measure.metadata.title
                    existing.version = measure.metadata.version
                else:
                    session.add(MeasureRecordModel(
                        id=measure.id,
                        title=measure.metadata.title,
                        version=measure.metadata.version,
                        position=position,
                        content_hash=digest,
                        payload=payload,
                    ))
                    position += 1
                stored += 1
            # get_db() auto-commits on success

        logger.info("Measures stored", count=stored)
        return stored

    async def load(self, measure_id: str) -> Optional[UniversalMeasureSpec]:
        async with get_db() as session:
            entry = await session.get(MeasureRecordModel, measure_id)
            if entry is None:
                return None
            try:
                return UniversalMeasureSpec.model_validate(entry.payload)
            except Exception as e:
                logger.warning("Corrupted stored measure, treating as missing", measure_id=measure_id, error=str(e))
                return None

    async def list_all(self) -> List[UniversalMeasureSpec]:
        """All measures in insertion order; corrupted rows are skipped."""
        async with get_db() as session:
            result = await session.execute(
                select(MeasureRecordModel).order_by(MeasureRecordModel.position)
            )
            entries = result.scalars().all()

        measures = []
        for entry in entries:
            try:
                measures.append(UniversalMeasureSpec.model_validate(entry.payload))
            except Exception as e:
                logger.warning("Corrupted stored measure, skipping", measure_id=entry.id, error=str(e))
        return measures

    async def load_all(self) -> Dict[str, UniversalMeasureSpec]:
        return {m.id: m for m in await self.list_all()}

    async def delete(self, measure_id: str) -> bool:
        async with get_db() as session:
            result = await session.execute(
                delete(MeasureRecordModel).where(MeasureRecordModel.id == measure_id)
            )
            deleted = result.rowcount > 0
        logger.info("Measure deleted", measure_id=measure_id, deleted=deleted)
        return deleted


class ComponentRepository:
    """Async repository for library components."""

    async def store(self, component) -> str:
        await self.store_many([component])
        return component.id

    async def store_many(self, components: Iterable) -> int:
        """Insert or overwrite components by id; new ids are appended to the library order."""
        stored = 0
        async with get_db() as session:
            position = await _next_position(session, LibraryComponentModel)
            for component in components:
                payload = component.model_dump(mode="json")
                digest = content_hash(payload)
                existing = await session.get(LibraryComponentModel, component.id)
                if existing:
                    if existing.content_hash != digest:
                        existing.payload = payload
                        existing.content_hash = digest
                        existing.name = component.name
                        existing.kind = component.kind
                        existing.status = component.version_info.status.value
                        existing.version_id = component.version_info.version_id
                        existing.usage_count = component.usage.usage_count
                else:
                    session.add(LibraryComponentModel(
                        id=component.id,
                        kind=component.kind,
                        name=component.name,
                        status=component.version_info.status.value,
                        version_id=component.version_info.version_id,
                        usage_count=component.usage.usage_count,
                        position=position,
                        content_hash=digest,
                        payload=payload,
                    ))
                    position += 1
                stored += 1

        logger.info("Components stored", count=stored)
        return stored

    async def save_library(self, library: ComponentLibrary) -> int:
        """Persist a whole library dict, keeping its iteration order for new ids."""
        return await self.store_many(library.values())

    async def load(self, component_id: str):
        async with get_db() as session:
            entry = await session.get(LibraryComponentModel, component_id)
            if entry is None:
                return None
            try:
                return _component_adapter.validate_python(entry.payload)
            except Exception as e:
                logger.warning("Corrupted stored component, treating as missing", component_id=component_id, error=str(e))
                return None

    async def list_all(self) -> List:
        """All components in insertion order; corrupted rows are skipped."""
        async with get_db() as session:
            result = await session.execute(
                select(LibraryComponentModel).order_by(LibraryComponentModel.position)
            )
            entries = result.scalars().all()

        components = []
        for entry in entries:
            try:
                components.append(_component_adapter.validate_python(entry.payload))
            except Exception as e:
                logger.warning("Corrupted stored component, skipping", component_id=entry.id, error=str(e))
        return components

    async def load_library(self) -> ComponentLibrary:
        return {c.id: c for c in await self.list_all()}

    async def delete(self, component_id: str) -> bool:
        async with get_db() as session:
            result = await session.execute(
                delete(LibraryComponentModel).where(LibraryComponentModel.id == component_id)
            )
            deleted = result.rowcount > 0
        logger.info("Component deleted", component_id=component_id, deleted=deleted)
        return deleted
