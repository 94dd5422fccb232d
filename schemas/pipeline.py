"""
Pydantic schemas for pipeline configuration, state and run results
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import (
    AlertSeverity,
    AlertType,
    PipelineStatus,
    StepType,
    utcnow,
)


# ============================================================================
# Configuration
# ============================================================================

class AlertThresholds(BaseModel):
    """Thresholds evaluated by the monitor after each run"""
    error_rate: float = Field(0.05, ge=0, le=1)
    execution_time_ms: int = Field(3_600_000, gt=0)
    data_freshness_ms: int = Field(86_400_000, gt=0)
    memory_usage_bytes: Optional[int] = Field(None, gt=0)

    class Config:
        frozen = True


class PipelineStep(BaseModel):
    """One step of a pipeline, executed by the capability matching its type"""
    name: str = Field(..., min_length=1, max_length=100)
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[str] = Field(default_factory=list)
    retryable: bool = True
    timeout_ms: Optional[int] = Field(None, gt=0)

    @validator("dependencies", pre=True)
    def clean_dependencies(cls, v):
        """Accept any iterable of names, drop duplicates, keep order"""
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return list(dict.fromkeys(str(d) for d in v))

    class Config:
        frozen = True


class PipelineConfig(BaseModel):
    """
    Pipeline definition. Immutable for the duration of a run.

    Ensures:
    - Step names are unique
    - Every dependency names a step that runs earlier
    """
    name: str = Field(..., min_length=1, max_length=100)
    schedule: str = Field(..., description="Five-field cron expression")
    max_retries: int = Field(3, ge=0)
    retry_delay_ms: int = Field(1_000, ge=0)
    max_retry_delay_ms: int = Field(60_000, ge=0)
    steps: List[PipelineStep] = Field(..., min_length=1)
    alert_thresholds: AlertThresholds = Field(default_factory=AlertThresholds)
    alert_channels: List[str] = Field(default_factory=list)
    enable_alerts: bool = True
    data_max_age_hours: int = Field(48, gt=0)

    @validator("schedule")
    def check_schedule(cls, v):
        """Cron expressions have exactly five fields"""
        if len(v.split()) != 5:
            raise ValueError(f"Schedule must be a 5-field cron expression, got '{v}'")
        return v

    @validator("steps")
    def check_steps(cls, v):
        """Enforce unique names and backward-only dependencies"""
        seen = set()
        for step in v:
            if step.name in seen:
                raise ValueError(f"Duplicate step name: {step.name}")
            missing = [d for d in step.dependencies if d not in seen]
            if missing:
                raise ValueError(
                    f"Step {step.name} depends on steps that do not run before it: {', '.join(missing)}"
                )
            seen.add(step.name)
        return v

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    class Config:
        frozen = True


# ============================================================================
# State
# ============================================================================

class PipelineState(BaseModel):
    """Snapshot of the persisted pipeline state row"""
    pipeline_id: str
    status: PipelineStatus = PipelineStatus.IDLE
    last_run_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    last_run_status: Optional[PipelineStatus] = None
    current_step: Optional[str] = None
    step_data: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    lock_id: Optional[str] = None
    locked_at: Optional[datetime] = None


class StateTransitionInfo(BaseModel):
    """One row of the transition history"""
    id: int
    pipeline_id: str
    from_status: PipelineStatus
    to_status: PipelineStatus
    timestamp: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        from_attributes = True


class RecoveryPoint(BaseModel):
    """Where a failed run can be resumed. Derived, never stored."""
    can_recover: bool = False
    last_completed_step: Optional[str] = None
    next_step: Optional[str] = None
    step_data: Dict[str, Any] = Field(default_factory=dict)


class PipelineHealth(BaseModel):
    status: str = Field(..., description="healthy, degraded or unhealthy")
    last_success_time: Optional[datetime] = None
    success_rate: float = 0.0
    recent_errors: int = 0


# ============================================================================
# Run metrics and results
# ============================================================================

class StepMetrics(BaseModel):
    """Metrics of the latest attempt of one step"""
    duration_ms: int = 0
    records_processed: int = 0
    success: bool


class StepResult(BaseModel):
    """Outcome of one step including all of its attempts"""
    step_name: str
    success: bool
    start_time: datetime
    end_time: datetime
    duration_ms: int
    records_processed: int = 0
    attempts: int = 1
    error: Optional[str] = None
    data: Any = None


class Alert(BaseModel):
    """Threshold breach detected by the monitor"""
    type: AlertType
    severity: AlertSeverity
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PipelineWarning(BaseModel):
    """Non-fatal observation attached to a run result"""
    type: str
    message: str


class PipelineResult(BaseModel):
    """Structured result of PipelineOrchestrator.execute()"""
    success: bool
    run_id: str = ""
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    steps_completed: int = 0
    total_steps: int = 0
    error: Optional[str] = None
    warnings: List[PipelineWarning] = Field(default_factory=list)
    alerts: List[Alert] = Field(default_factory=list)
    metrics: Optional[Dict[str, Any]] = None


class PerformanceAnalysis(BaseModel):
    is_anomalous: bool = False
    deviation_from_baseline: float = 0.0
    current_duration_ms: Optional[int] = None
    baseline_mean_ms: Optional[float] = None
    baseline_stddev_ms: Optional[float] = None
    recommendation: Optional[str] = None


class DashboardMetrics(BaseModel):
    current_status: str
    total_runs: int = 0
    success_rate: float = 1.0
    average_execution_time_ms: float = 0.0
    recent_errors: List[Dict[str, Any]] = Field(default_factory=list)
    active_alerts: List[Alert] = Field(default_factory=list)
    data_freshness: Optional[datetime] = None
