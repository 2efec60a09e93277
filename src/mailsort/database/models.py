"""
Database models for mailsort
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored by SQLite"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class StoredRule(Base):
    """One auto-sort rule of an account, kept as its JSON document"""
    __tablename__ = 'auto_sort_rules'

    id = Column(Integer, primary_key=True)
    account_id = Column(String(255), nullable=False, index=True)
    rule_id = Column(String(64), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # order within the account
    enabled = Column(Boolean, nullable=False, default=True)
    data = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('account_id', 'rule_id', name='uix_account_rule'),
    )


class FilterJob(Base):
    """A queued "apply rule to existing mail" pass"""
    __tablename__ = 'filter_jobs'

    id = Column(String(64), primary_key=True)
    account_id = Column(String(255), nullable=False)
    rule_id = Column(String(64), nullable=False)
    status = Column(String(20), nullable=False, default='pending', index=True)  # pending, processing, completed, failed
    created_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    error = Column(Text)

    # Result of the bulk pass
    applied = Column(Integer)
    total = Column(Integer)
    processed = Column(Integer)
    timed_out = Column(Boolean)
