from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func  # For default timestamps
from ..database import Base


class StoredDocumentRow(Base):
    __tablename__ = "documents"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(String(512), nullable=False, unique=True, index=True)
    collection = Column(String(480), nullable=False, index=True)
    doc_id = Column(String(128), nullable=False)
    data = Column(JSON, default=dict, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
