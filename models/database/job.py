"""
Job and transaction models - durable workflow state
"""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base
from shared.utils import utcnow


class JobRecord(Base):
    """Caller-visible unit of work, owns one transaction per file"""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(32), unique=True, nullable=False, index=True)
    owner_id = Column(String(255), nullable=False, index=True)
    label = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, index=True)
    capabilities = Column(JSON, nullable=False, default=list)
    failure_policy = Column(String(16), nullable=False)
    total_transactions = Column(Integer, nullable=False, default=0)
    completed_transactions = Column(Integer, nullable=False, default=0)
    failed_transactions = Column(Integer, nullable=False, default=0)
    # Outstanding provider/post-step handles, plus the dispatch guard while starting
    pending_operations = Column(Integer, nullable=False, default=0)
    pending_reviews = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    error_detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utcnow, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    transactions = relationship(
        "TransactionRecord",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="TransactionRecord.id",
    )

    def __repr__(self) -> str:
        return f"<JobRecord(job_id={self.job_id}, status={self.status})>"


class TransactionRecord(Base):
    """One file within a job, the smallest schedulable work item"""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(32), unique=True, nullable=False, index=True)
    job_id = Column(String(32), ForeignKey("jobs.job_id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)
    source_ref = Column(Text, nullable=False)
    results = Column(JSON, nullable=False, default=dict)  # capability -> {result_ref, confidence, detail}
    consolidated_result = Column(JSON, nullable=True)
    error_detail = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utcnow)

    job = relationship("JobRecord", back_populates="transactions")

    def __repr__(self) -> str:
        return f"<TransactionRecord(transaction_id={self.transaction_id}, status={self.status})>"
