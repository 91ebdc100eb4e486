"""Analysis session state and the read-only snapshot handed to presenters."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from snapsense.ml.classifier import PredictionEntry
from snapsense.sources.base import SourceMode


class AnalysisState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    FINALIZING = "finalizing"
    DONE = "done"


class ResultStatus(StrEnum):
    PENDING = "pending"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FinalResult:
    """Top entry of the unperturbed final prediction."""

    label: str
    probability: float

    @classmethod
    def from_predictions(cls, entries: list[PredictionEntry]) -> FinalResult:
        """Pick the entry with the highest probability; the first one wins ties."""
        if not entries:
            raise ValueError("Cannot pick a final result from an empty prediction")
        top = entries[0]
        for entry in entries[1:]:
            if entry.probability > top.probability:
                top = entry
        return cls(label=top.label, probability=top.probability)

    def format(self) -> str:
        return f"{self.label}: {self.probability:.2f}"


@dataclass
class AnalysisSession:
    """Mutable state of one analysis run. Only the prediction loop writes to it."""

    mode: SourceMode
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: AnalysisState = AnalysisState.IDLE
    started_at: float | None = None
    started_at_utc: datetime | None = None
    elapsed_seconds: float | None = None
    latest_predictions: list[PredictionEntry] = field(default_factory=list)
    final_result: FinalResult | None = None
    tick_count: int = 0
    skipped_ticks: int = 0
    dropped_results: int = 0
    error: str | None = None

    @property
    def is_running(self) -> bool:
        return self.state in (AnalysisState.RUNNING, AnalysisState.FINALIZING)

    def mark_started(self, now: float) -> None:
        self.state = AnalysisState.RUNNING
        self.started_at = now
        self.started_at_utc = datetime.now(UTC)

    def elapsed_at(self, now: float) -> float | None:
        """Elapsed seconds, fixed once done and live while running."""
        if self.elapsed_seconds is not None:
            return self.elapsed_seconds
        if self.started_at is None:
            return None
        return round(max(0.0, now - self.started_at), 2)

    def snapshot(self, now: float) -> SessionSnapshot:
        done = self.state is AnalysisState.DONE
        if not done:
            result_status = ResultStatus.PENDING
        elif self.final_result is not None:
            result_status = ResultStatus.AVAILABLE
        else:
            result_status = ResultStatus.UNAVAILABLE

        return SessionSnapshot(
            session_id=self.session_id,
            mode=self.mode,
            state=self.state,
            is_running=self.is_running,
            started_at=self.started_at_utc,
            elapsed_seconds=self.elapsed_at(now),
            predictions=list(self.latest_predictions),
            final_result=self.final_result if done else None,
            result_status=result_status,
            tick_count=self.tick_count,
            skipped_ticks=self.skipped_ticks,
            dropped_results=self.dropped_results,
            error=self.error,
        )


@dataclass(frozen=True)
class SessionSnapshot:
    """Point-in-time view of a session for display."""

    session_id: str
    mode: SourceMode
    state: AnalysisState
    is_running: bool
    started_at: datetime | None
    elapsed_seconds: float | None
    predictions: list[PredictionEntry]
    final_result: FinalResult | None
    result_status: ResultStatus
    tick_count: int
    skipped_ticks: int
    dropped_results: int
    error: str | None
