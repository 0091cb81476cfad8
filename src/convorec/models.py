"""Data model shared by the capture pipeline and the persister."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


class RecordingState(enum.Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"
    UPLOADING = "uploading"
    FAILED = "failed"


class ConversationStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    TRANSCRIBED = "transcribed"
    ANALYZED = "analyzed"
    ERROR = "error"


@dataclass(frozen=True)
class AudioChunk:
    """A closed, immutable segment of one continuous recording."""
    index: int
    payload: bytes
    duration_seconds: float
    sample_rate: int
    channels: int
    content_type: str = "audio/wav"
    extension: str = "wav"


@dataclass
class TranscriptSegment:
    """Cumulative recognizer output for one transcription run."""
    text: str = ""
    is_final: bool = False
    offset_seconds: float = 0.0

    def update(self, text: str, is_final: bool = False) -> None:
        if self.is_final:
            raise ValueError("Final transcript segments are immutable")
        self.text = text
        self.is_final = is_final


@dataclass
class RecordingSession:
    """In-memory state of one recording, owned by the state machine."""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: RecordingState = RecordingState.IDLE
    started_at: Optional[datetime] = None
    paused_seconds: float = 0.0
    chunks: list[AudioChunk] = field(default_factory=list)
    segments: list[TranscriptSegment] = field(default_factory=list)
    live: Optional[TranscriptSegment] = None

    def append_chunk(self, chunk: AudioChunk) -> None:
        expected = len(self.chunks)
        if chunk.index != expected:
            raise ValueError(
                f"Chunk index {chunk.index} out of sequence (expected {expected})"
            )
        self.chunks.append(chunk)

    def apply_partial(self, text: str, offset_seconds: float) -> None:
        if self.live is None:
            self.live = TranscriptSegment(offset_seconds=offset_seconds)
        self.live.update(text)

    def apply_final(self, text: str, offset_seconds: float) -> None:
        if self.live is None:
            self.live = TranscriptSegment(offset_seconds=offset_seconds)
        self.live.update(text, is_final=True)
        if self.live.text.strip():
            self.segments.append(self.live)
        self.live = None

    @property
    def transcript(self) -> str:
        parts = [seg.text.strip() for seg in self.segments]
        if self.live is not None:
            parts.append(self.live.text.strip())
        return " ".join(p for p in parts if p)

    @property
    def audio_seconds(self) -> float:
        return sum(c.duration_seconds for c in self.chunks)


@dataclass
class RecordingBundle:
    """Finalized artifacts of a stopped recording, ready for persistence."""
    chunks: list[AudioChunk]
    transcript: str
    duration_seconds: float


@dataclass
class AnalysisResult:
    tone: str
    response_quality: str
    misbehavior_detected: bool = False
    red_flags: list[str] = field(default_factory=list)
    sentiment_score: float = 0.0
    recommendation: str = ""

    def to_dict(self) -> dict:
        return {
            "tone": self.tone,
            "response_quality": self.response_quality,
            "misbehavior_detected": self.misbehavior_detected,
            "red_flags": list(self.red_flags),
            "sentiment_score": self.sentiment_score,
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AnalysisResult:
        return cls(
            tone=data.get("tone", ""),
            response_quality=data.get("response_quality", ""),
            misbehavior_detected=bool(data.get("misbehavior_detected", False)),
            red_flags=list(data.get("red_flags", [])),
            sentiment_score=float(data.get("sentiment_score", 0.0)),
            recommendation=data.get("recommendation", ""),
        )


@dataclass
class ConversationRecord:
    """A persisted conversation: audio references, transcript and analysis."""
    id: str
    owner_id: str
    participant_id: Optional[str]
    audio_refs: list[str]
    transcript: str
    duration_seconds: float
    status: ConversationStatus = ConversationStatus.PENDING
    error_message: Optional[str] = None
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated: Optional[str] = None
    task_id: Optional[str] = None
    analysis: Optional[AnalysisResult] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "participant_id": self.participant_id,
            "audio_refs": list(self.audio_refs),
            "transcript": self.transcript,
            "duration_seconds": self.duration_seconds,
            "status": self.status.value,
            "error_message": self.error_message,
            "created": self.created,
            "updated": self.updated,
            "task_id": self.task_id,
            "analysis": self.analysis.to_dict() if self.analysis else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ConversationRecord:
        analysis = data.get("analysis")
        return cls(
            id=data["id"],
            owner_id=data["owner_id"],
            participant_id=data.get("participant_id"),
            audio_refs=list(data.get("audio_refs", [])),
            transcript=data.get("transcript", ""),
            duration_seconds=float(data.get("duration_seconds", 0.0)),
            status=ConversationStatus(data.get("status", "pending")),
            error_message=data.get("error_message"),
            created=data.get("created", ""),
            updated=data.get("updated"),
            task_id=data.get("task_id"),
            analysis=AnalysisResult.from_dict(analysis) if analysis else None,
        )
