from sqlalchemy import Column, String, JSON, DateTime, Index
from sqlalchemy.orm import declarative_base
from datetime import datetime, UTC

Base = declarative_base()

class Document(Base):
    """One document of a logical collection (presence, offers, matches, ...)."""
    __tablename__ = 'documents'
    collection = Column(String(64), primary_key=True)
    doc_id = Column(String(255), primary_key=True)
    data = Column(JSON, nullable=False)
    # Fresh token on every write, compared at commit
    version = Column(String(32), nullable=False)
    # Copied from data["expiresAt"] so the sweeper can range-scan
    expires_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(UTC), onupdate=lambda: datetime.now(UTC))

    __table_args__ = (
        Index('ix_documents_collection_expires_at', 'collection', 'expires_at'),
    )
