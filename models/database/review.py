"""
Review case model - human review gate
"""

from sqlalchemy import JSON, Column, DateTime, Float, Integer, String

from database import Base
from shared.utils import utcnow


class ReviewCaseRecord(Base):
    """Suspension point waiting for a human decision"""

    __tablename__ = "review_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    case_id = Column(String(32), unique=True, nullable=False, index=True)
    job_id = Column(String(32), nullable=False, index=True)
    transaction_id = Column(String(32), nullable=False, index=True)
    proposed_result = Column(JSON, nullable=False, default=dict)
    confidence = Column(Float, nullable=False)
    decision = Column(String(16), nullable=False, index=True)
    final_result = Column(JSON, nullable=True)
    reviewer = Column(String(255), nullable=True)
    escalation_level = Column(Integer, nullable=False, default=0)
    continuation_token = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    decided_at = Column(DateTime(timezone=True), nullable=True)
