from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import declarative_base

from .clock import utcnow

Base = declarative_base()


class Job(Base):
    """Recurring or on-demand job definition."""

    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False, index=True)
    type = Column(String(50), nullable=False, index=True)
    schedule_expr = Column(String(255), nullable=True)  # cron expression, NULL = on-demand only
    config = Column(JSON, nullable=False, default=dict)  # handler payload
    last_run = Column(DateTime, nullable=True)
    next_run = Column(DateTime, nullable=True, index=True)
    status = Column(String(20), default="active", index=True)  # active, paused, completed, failed
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class JobLog(Base):
    """
    Append-only execution log.

    Each run writes a ``started`` row and one terminal row sharing ``run_id``.
    ``job_id`` carries no foreign key so history outlives the job.
    """

    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(Integer, nullable=False, index=True)
    run_id = Column(String(32), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)  # started, completed, failed
    message = Column(Text, nullable=True)
    error_kind = Column(String(40), nullable=True)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


# Tables below belong to the file-storage application. They are mapped here
# only for the columns the built-in cleanup and duplicate handlers touch.

class File(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    path = Column(Text, nullable=True)
    size = Column(Integer, default=0)
    hash_md5 = Column(String(32), nullable=True, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class ShareLink(Base):
    __tablename__ = "share_links"

    id = Column(Integer, primary_key=True, index=True)
    file_id = Column(Integer, nullable=False, index=True)
    token = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)
