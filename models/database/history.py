"""
Status history - audit trail of job and transaction transitions
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String

from database import Base
from shared.utils import utcnow


class StatusHistoryRecord(Base):
    __tablename__ = "status_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(16), nullable=False)  # job, transaction
    entity_id = Column(String(32), nullable=False, index=True)
    job_id = Column(String(32), nullable=False, index=True)
    from_status = Column(String(32), nullable=True)
    to_status = Column(String(32), nullable=False)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
