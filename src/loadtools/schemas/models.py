from __future__ import annotations
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

SCHEMA_VERSION = '0.1.0'

class AuditEvent(BaseModel):
    # One audit record emitted by the orchestrator
    schema_version: str = Field(default=SCHEMA_VERSION)
    correlation_id: str
    job_id: str
    event: str
    phase: Optional[str] = None
    timestamp: str
    payload: Dict[str, Any] = Field(default_factory=dict)

class PhaseTiming(BaseModel):
    phase: str
    started: str
    finished: Optional[str] = None
    seconds: Optional[float] = None

class ExecutionSummary(BaseModel):
    # Final outcome of one job execution
    schema_version: str = Field(default=SCHEMA_VERSION)
    correlation_id: str
    job_id: str
    status: str
    completed_with_rejects: bool = False
    input_file: Optional[str] = None
    started: str
    finished: Optional[str] = None
    records_read: int = 0
    records_valid: int = 0
    records_rejected: int = 0
    errors: int = 0
    warnings: int = 0
    threshold_decision: Optional[str] = None
    exit_class: Optional[str] = None
    loader: Dict[str, Any] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)
    phases: List[PhaseTiming] = Field(default_factory=list)
    failure: Optional[str] = None
    failure_type: Optional[str] = None
    artifacts: Dict[str, str] = Field(default_factory=dict)
