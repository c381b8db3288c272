"""
Pydantic models for transcript fragments and their durable batches
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_temp_id() -> str:
    return f"temp-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}"


class Speaker(str, Enum):
    PRIMARY = "primary"      # clinician
    SECONDARY = "secondary"  # patient


class SpeakerSource(str, Enum):
    HEURISTIC = "heuristic"
    PROVIDER = "provider"


class ConfidenceBucket(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ConnectionHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    OFFLINE = "offline"


class Alternative(BaseModel):
    text: str
    confidence: float = Field(ge=0.0, le=1.0)


class Fragment(BaseModel):
    """One recognized span of speech"""
    id: str = Field(default_factory=new_temp_id, description="Local id until persisted, store id afterwards")
    session_id: str
    text: str
    speaker: Speaker = Field(default=Speaker.PRIMARY, description="Provisional until confirmed by diarization")
    speaker_source: SpeakerSource = Field(default=SpeakerSource.HEURISTIC)
    is_final: bool = Field(default=True)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    start_offset_ms: int = Field(default=0, ge=0)
    end_offset_ms: int = Field(default=0, ge=0)
    provider_id: str = Field(default="unknown")
    alternatives: List[Alternative] = Field(default_factory=list)
    pending: bool = Field(default=True, description="True until durably written")
    created_at: datetime = Field(default_factory=_utcnow)


class BatchStatus(str, Enum):
    QUEUED = "queued"
    WRITING = "writing"
    SAVED = "saved"
    FAILED = "failed"


class Batch(BaseModel):
    """Bounded, ordered group of fragments written in one durable insert"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    session_id: str
    fragments: List[Fragment]
    status: BatchStatus = Field(default=BatchStatus.QUEUED)
    attempts: int = Field(default=0)
    created_at: datetime = Field(default_factory=_utcnow)
    error: Optional[str] = Field(default=None)


class IngestionStats(BaseModel):
    total_chunks: int = 0
    saved_chunks: int = 0
    pending_chunks: int = 0
    failed_chunks: int = 0
    average_latency_ms: int = 0
    average_confidence: float = 0.0
    confidence_histogram: Dict[ConfidenceBucket, int] = Field(
        default_factory=lambda: {bucket: 0 for bucket in ConfidenceBucket}
    )
    connection_health: ConnectionHealth = ConnectionHealth.HEALTHY


class SyncWarning(BaseModel):
    """User-visible notice that transcript data is cached and will sync later"""
    session_id: str
    batch_id: str
    fragment_count: int
    message: str
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)
