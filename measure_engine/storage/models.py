"""SQLAlchemy ORM models for measure and component library tables."""
from datetime import datetime, timezone

def _utcnow():
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)

from sqlalchemy import Column, String, Integer, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class MeasureRecordModel(Base):
    """A stored measure: the full UniversalMeasureSpec as JSON."""
    __tablename__ = "measures"

    id = Column(String(100), primary_key=True)
    title = Column(String(500), nullable=True)
    version = Column(String(50), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('ix_measures_position', 'position'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "version": self.version,
            "content_hash": self.content_hash,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class LibraryComponentModel(Base):
    """A stored library component (atomic or composite) as JSON."""
    __tablename__ = "library_components"

    id = Column(String(100), primary_key=True)
    kind = Column(String(20), nullable=False)
    name = Column(String(500), nullable=False)
    status = Column(String(20), nullable=False)
    version_id = Column(String(20), nullable=False)
    usage_count = Column(Integer, nullable=False, default=0)
    position = Column(Integer, nullable=False, default=0)
    content_hash = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('ix_library_components_position', 'position'),
        Index('ix_library_components_status', 'status'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "name": self.name,
            "status": self.status,
            "version_id": self.version_id,
            "usage_count": self.usage_count,
            "content_hash": self.content_hash,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
