"""
Provider operation handles and suspended workflow continuations
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from database import Base
from shared.utils import utcnow


class ProviderOperationRecord(Base):
    """Outstanding asynchronous call to an external processing provider"""

    __tablename__ = "provider_operations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    handle_id = Column(String(32), unique=True, nullable=False, index=True)
    provider_operation_id = Column(String(255), unique=True, nullable=True, index=True)
    job_id = Column(String(32), nullable=False, index=True)
    transaction_id = Column(String(32), nullable=False, index=True)
    capability = Column(String(32), nullable=False)
    stage = Column(String(32), nullable=False)
    completion_mode = Column(String(16), nullable=False)
    continuation_token = Column(String(32), nullable=False, index=True)
    state = Column(String(16), nullable=False, index=True)
    # "<transaction_id>:<capability>" while LIVE, NULL otherwise; enforces one live handle per pair
    live_key = Column(String(80), unique=True, nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    payload_ref = Column(Text, nullable=False)
    issued_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    deadline_at = Column(DateTime(timezone=True), nullable=False, index=True)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
    outcome = Column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<ProviderOperationRecord(handle_id={self.handle_id}, state={self.state})>"


class ContinuationRecord(Base):
    """Durable resume point for a suspended workflow"""

    __tablename__ = "continuations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(32), unique=True, nullable=False, index=True)
    job_id = Column(String(32), nullable=False, index=True)
    transaction_id = Column(String(32), nullable=True)
    stage = Column(String(32), nullable=False)
    context = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    consumed_at = Column(DateTime(timezone=True), nullable=True)
