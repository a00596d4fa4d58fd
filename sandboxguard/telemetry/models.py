"""Records and request payloads of the telemetry collector."""

from __future__ import annotations

from typing import Annotated, Any
from uuid import UUID

from pydantic import AwareDatetime, BaseModel, Field

Int32 = Annotated[int, Field(ge=-(2**31), le=2**31 - 1)]
Int64 = Annotated[int, Field(ge=-(2**63), le=2**63 - 1)]


class SandboxRun(BaseModel):
    """A stored record of one sandbox execution."""

    id: UUID
    sandbox_id: str
    provider: str
    language: str
    exit_code: Int32
    duration_ms: Int64
    cost: float
    cpu_requested: float | None = None
    memory_requested: Int32 | None = None
    has_gpu: bool
    timeout_ms: Int64 | None = None
    success: bool
    created_at: AwareDatetime


class SandboxRunRequest(BaseModel):
    """A report of a finished sandbox execution."""

    sandbox_id: str
    provider: str
    language: str
    exit_code: Int32
    duration_ms: Int64
    cost: float
    cpu_requested: float | None = None
    memory_requested: Int32 | None = None
    has_gpu: bool
    timeout_ms: Int64 | None = None
    spec: Any
    result: Any


class TrainingData(BaseModel):
    """Features and observed outcome of a run, kept for model training."""

    id: UUID
    features: Any
    actual_cost: float
    actual_latency: float
    success: bool
    provider: str
    created_at: AwareDatetime


class TrainingDataRequest(BaseModel):
    sandbox_result: Any
    features: Any
    timestamp: AwareDatetime


class Prediction(BaseModel):
    """A stored prediction, with the actual outcome once known."""

    id: UUID
    provider: str
    predicted_cost: float
    predicted_latency: float
    confidence: float
    model_version: str
    actual_cost: float | None = None
    actual_latency: float | None = None
    actual_success: bool | None = None
    created_at: AwareDatetime


class PredictionData(BaseModel):
    provider: str
    predicted_cost: float
    predicted_latency: float
    confidence: float
    model_version: str


class ActualData(BaseModel):
    cost: float
    latency: float
    success: bool


class PredictionRequest(BaseModel):
    prediction: PredictionData
    actual: ActualData | None = None
    timestamp: AwareDatetime


class ProviderStats(BaseModel):
    avg_latency: float
    avg_cost: float
    success_rate: float
    total_runs: Int64


class ModelPerformance(BaseModel):
    total_predictions: Int64
    avg_cost_error: float
    avg_latency_error: float
    provider_accuracy: float


class TimeRange(BaseModel):
    """A time window; an open end means up to now."""

    start: AwareDatetime
    end: AwareDatetime | None = None