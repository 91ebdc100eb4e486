"""Pydantic response schemas for the SnapSense API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from snapsense.analysis.session import SessionSnapshot


class Prediction(BaseModel):
    """A single label with its (possibly jittered) probability."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)


class FinalResultOut(BaseModel):
    """Top entry of the final, unperturbed prediction."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)
    text: str = Field(description="Display form, e.g. 'healthy: 0.93'")


class SessionResponse(BaseModel):
    """Presenter view of the current analysis session."""

    session_id: str
    mode: str = Field(description="'camera' or 'upload'")
    state: str = Field(description="'idle', 'running', 'finalizing' or 'done'")
    is_running: bool
    started_at: datetime | None
    elapsed_seconds: float | None = Field(description="Seconds since the analysis started, two decimals")
    predictions: list[Prediction]
    final_result: FinalResultOut | None
    result_status: str = Field(description="'pending', 'available' or 'unavailable'")
    tick_count: int
    skipped_ticks: int
    dropped_results: int = Field(description="Tick results discarded as stale or late")
    error: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> SessionResponse:
        final = snapshot.final_result
        return cls(
            session_id=snapshot.session_id,
            mode=str(snapshot.mode),
            state=str(snapshot.state),
            is_running=snapshot.is_running,
            started_at=snapshot.started_at,
            elapsed_seconds=snapshot.elapsed_seconds,
            predictions=[Prediction(label=p.label, probability=p.probability) for p in snapshot.predictions],
            final_result=(
                FinalResultOut(label=final.label, probability=final.probability, text=final.format())
                if final is not None
                else None
            ),
            result_status=str(snapshot.result_status),
            tick_count=snapshot.tick_count,
            skipped_ticks=snapshot.skipped_ticks,
            dropped_results=snapshot.dropped_results,
            error=snapshot.error,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    model_config = ConfigDict(protected_namespaces=())

    status: str = "ok"
    gpu: bool
    model_status: str = Field(description="'pending', 'loading', 'ready' or 'failed'")
    model_error: str | None = None
    session_state: str | None = None
    concurrent_requests: int
    queue_depth: int


class ModelResponse(BaseModel):
    """Information about the loaded classifier."""

    model_config = ConfigDict(protected_namespaces=())

    labels: list[str]
    model_url: str
    metadata_url: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
