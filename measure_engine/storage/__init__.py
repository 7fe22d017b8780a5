"""Storage module for measure engine database operations."""
from .database import get_db, init_db, drop_db, dispose_engine
from .repository import MeasureRepository, ComponentRepository

__all__ = [
    "get_db",
    "init_db",
    "drop_db",
    "dispose_engine",
    "MeasureRepository",
    "ComponentRepository",
]
