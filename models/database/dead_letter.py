"""
Dead letter model - quarantined work awaiting operator attention
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String

from database import Base
from shared.utils import utcnow


class DeadLetterRecord(Base):
    __tablename__ = "dead_letters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    dead_letter_id = Column(String(32), unique=True, nullable=False, index=True)
    kind = Column(String(32), nullable=False, index=True)
    reference_id = Column(String(255), nullable=False, index=True)
    job_id = Column(String(32), nullable=True, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    error_class = Column(String(16), nullable=False)
    error_detail = Column(JSON, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    acknowledged = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
