"""
Pydantic Models für API Responses
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, Field

from scribeflow.models.transcript import IngestionStats
from scribeflow.models.workflow import WorkflowState


class SessionResponse(BaseModel):
    """Antwort auf Provider-Kommandos einer Session"""
    session_id: str = Field(description="Session-ID")
    success: bool = Field(description="Ob das Kommando ausgeführt wurde")
    provider_id: Optional[str] = Field(default=None, description="Aktiver Provider")
    state: Optional[str] = Field(default=None, description="Provider-Zustand")
    message: str = Field(default="", description="Statusmeldung")


class AudioAcceptedResponse(BaseModel):
    """Bestätigung eines hochgeladenen Audio-Chunks"""
    session_id: str
    accepted: bool = Field(description="False, wenn der Provider pausiert ist")
    offset_ms: int


class SyncResponse(BaseModel):
    """Ergebnis einer manuellen Nachsynchronisation"""
    session_id: str
    resynced: int = Field(description="Anzahl erneut gespeicherter Fragmente")
    stats: IngestionStats


class SessionStatusResponse(BaseModel):
    """Queue-Statistiken, Circuit-Zustände und Workflow-Stand einer Session"""
    session_id: str
    provider_id: Optional[str] = None
    provider_state: Optional[str] = None
    available_providers: List[str] = Field(default_factory=list)
    restarts: int = 0
    stopped: bool = False
    interim_text: Optional[str] = None
    stats: IngestionStats
    circuits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    workflow: WorkflowState
    warnings: int = 0


class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str = Field(description="Service Status (healthy/unhealthy)")
    timestamp: datetime = Field(description="Check-Zeitpunkt")
    version: str = Field(description="Service-Version")
    uptime_seconds: int = Field(description="Uptime in Sekunden")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Detaillierte Gesundheitsinformationen"
    )


class ErrorResponse(BaseModel):
    """Standardisierte Fehlerantwort"""
    error: str = Field(description="Fehlertyp")
    message: str = Field(description="Fehlerbeschreibung")
    details: Optional[Dict[str, Any]] = Field(default=None, description="Zusätzliche Fehlerdetails")
    request_id: Optional[str] = Field(default=None, description="Request-ID für Debugging")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")


class RateLimitResponse(BaseModel):
    """Rate Limit Exceeded Response"""
    error: str = Field(default="rate_limit_exceeded")
    message: str = Field(description="Rate Limit Fehlermeldung")
    retry_after: int = Field(description="Sekunden bis zum nächsten Versuch")
    limit: int = Field(description="Request-Limit")
    window: int = Field(description="Zeitfenster in Sekunden")
    timestamp: datetime = Field(description="Fehlerzeitpunkt")
