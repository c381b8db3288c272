"""
Pydantic Models for API Requests
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from scribeflow.models.transcript import Alternative


class CreateSessionRequest(BaseModel):
    """Starts a recording session"""
    provider: str = Field(
        default="auto",
        description="Requested provider id (assemblyai, openai, browser) or 'auto'"
    )
    session_id: Optional[str] = Field(default=None, description="Client-chosen session id")


class RecognitionEventRequest(BaseModel):
    """A recognition result or error relayed from the client's own recognizer"""
    text: Optional[str] = Field(default=None, description="Recognized text")
    is_final: bool = Field(default=True)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    start_offset_ms: Optional[int] = Field(default=None, ge=0)
    end_offset_ms: Optional[int] = Field(default=None, ge=0)
    speaker_label: Optional[str] = Field(default=None)
    alternatives: List[Alternative] = Field(default_factory=list)
    error: Optional[str] = Field(
        default=None,
        description="Recognizer error code (no-speech, audio-capture, not-allowed, network, aborted)"
    )


class StepRunRequest(BaseModel):
    """Input for re-running a single workflow step"""
    transcript: Optional[str] = Field(default=None, description="Transcript for note generation")
    note: Optional[str] = Field(default=None, description="Clinical note for task extraction and code suggestion")

    def to_data(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)
