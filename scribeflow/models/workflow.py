"""
Pydantic models for the post-recording workflow and its generation outputs
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class StepName(str, Enum):
    TRANSCRIPTION = "transcription"
    NOTE_GENERATION = "note-generation"
    TASK_EXTRACTION = "task-extraction"
    CODE_SUGGESTION = "code-suggestion"


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStep(BaseModel):
    name: StepName
    label: str
    status: StepStatus = StepStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    message: str = "Waiting..."
    error: Optional[str] = None
    mandatory: bool = False


class WorkflowState(BaseModel):
    session_id: Optional[str] = None
    current_step: int = 0
    is_running: bool = False
    steps: List[WorkflowStep]


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ClinicalNote(BaseModel):
    """Structured clinical note generated from a transcript"""
    content: str = Field(description="The full note text")
    format: str = Field(default="SOAP", description="Note layout, e.g. SOAP")


class ExtractedTask(BaseModel):
    title: str = Field(description="Short actionable task title")
    description: str = Field(default="", description="Optional task details")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    category: str = Field(default="general", description="diagnostic, follow-up, referral, medication, patient_education or administrative")


class TaskList(BaseModel):
    tasks: List[ExtractedTask] = Field(default_factory=list)


class CodeSuggestion(BaseModel):
    code: str = Field(description="Diagnosis code, e.g. J06.9")
    system: str = Field(default="ICD-10-CM")
    label: str = Field(description="Human readable description of the code")
    confidence: float = Field(ge=0.0, le=1.0)


class CodeSuggestionList(BaseModel):
    codes: List[CodeSuggestion] = Field(default_factory=list)


class WorkflowResult(BaseModel):
    success: bool
    note: Optional[ClinicalNote] = None
    tasks: List[ExtractedTask] = Field(default_factory=list)
    codes: List[CodeSuggestion] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)


class StepResult(BaseModel):
    success: bool
    step: Optional[StepName] = None
    note: Optional[ClinicalNote] = None
    tasks: Optional[List[ExtractedTask]] = None
    codes: Optional[List[CodeSuggestion]] = None
    error: Optional[str] = None
