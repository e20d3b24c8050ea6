from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime


class JobCreate(BaseModel):
    """Schema for creating a new job."""
    name: str = Field(..., min_length=1, max_length=255, description="Job name")
    type: str = Field(..., description="Job type (backup, cleanup, virus_scan, duplicate_detection, webhook)")
    schedule_expr: Optional[str] = Field(None, description="Cron expression, e.g. '*/5 * * * *'; omit for on-demand jobs")
    config: Dict[str, Any] = Field(default_factory=dict, description="Handler configuration")
    owner_id: Optional[str] = Field(None, max_length=100, description="Owner identifier")
    is_active: bool = Field(True, description="Whether the job is scheduled")


class JobUpdate(BaseModel):
    """Schema for updating a job. Only the fields sent are changed."""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    schedule_expr: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None

    class Config:
        extra = "forbid"


class JobResponse(BaseModel):
    """Schema for job response."""
    id: int
    owner_id: Optional[str]
    name: str
    type: str
    schedule_expr: Optional[str] = None
    config: Dict[str, Any]
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    status: str
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class JobLogResponse(BaseModel):
    """Schema for execution log entry response."""
    id: int
    job_id: int
    run_id: str
    status: str
    message: Optional[str]
    error_kind: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Schema for job list response."""
    jobs: list[JobResponse]
    total: int
    page: int
    size: int


class JobLogListResponse(BaseModel):
    """Schema for execution log list response."""
    logs: list[JobLogResponse]
    total: int
    page: int
    size: int


class RunAcceptedResponse(BaseModel):
    """Schema for an accepted on-demand run."""
    message: str
    job_id: int
    run_id: str


class SchedulerStatusResponse(BaseModel):
    running: bool
    armed_jobs: int
    firing_jobs: int
    in_flight_jobs: int
