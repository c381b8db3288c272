"""
LLM Service for clinical documentation
Generates notes, follow-up tasks and diagnosis code suggestions from a
finished transcript using structured outputs.
"""
from typing import Optional

import instructor
from openai import AsyncOpenAI

from scribeflow.config import Settings, ModelName
from scribeflow.core.circuit import CircuitBreakerRegistry
from scribeflow.core.logging import get_logger
from scribeflow.models.workflow import ClinicalNote, CodeSuggestionList, TaskList

logger = get_logger(__name__)

NOTE_TEMPLATES = {
    "soap": {
        "subjective": "Chief complaint, HPI, ROS, relevant history",
        "objective": "Vital signs, physical exam findings, test results",
        "assessment": "Diagnoses, clinical impressions, differential diagnoses",
        "plan": "Treatment plan, medications, follow-up, patient education",
    },
    "hpi": {
        "hpi": "History of Present Illness with timeline, relevant positives and negatives",
        "physical_exam": "Physical examination findings organized by system",
        "assessment": "Clinical assessment, probable diagnosis, differential diagnoses",
        "plan": "Diagnostic workup, treatment plan, medications, referrals, patient education",
    },
    "progress": {
        "interval_history": "Changes since last visit, response to treatment",
        "current_status": "Current symptoms, vital signs, functional status",
        "assessment": "Updated clinical assessment",
        "plan": "Changes to treatment plan, new orders, follow-up",
    },
}

DETAIL_INSTRUCTIONS = {
    "low": "Be concise. Focus only on key findings and essential clinical information.",
    "medium": "Provide standard clinical documentation with appropriate detail for continuity of care.",
    "high": "Be comprehensive. Include detailed observations, relevant negatives, and thorough documentation.",
}

TASK_SYSTEM_PROMPT = """
Extract actionable follow-up tasks from clinical notes with high precision.

TASK CATEGORIES:
- diagnostic: Lab work, imaging, tests
- follow-up: Appointments, check-ins, monitoring
- referral: Specialist consultations
- medication: Prescriptions, refills, adjustments
- patient_education: Instructions, resources, counseling
- administrative: Paperwork, insurance, documentation

PRIORITY ASSESSMENT:
- high: Urgent, time-sensitive, safety-critical
- medium: Important but not urgent
- low: Routine, non-critical

Extract tasks that are explicitly mentioned in the note or clinically necessary
based on its findings. Every task must be actionable and specific.
"""


class GenerationService:
    """Service for turning transcripts into clinical documentation using LLMs."""

    def __init__(
        self,
        api_key: str,
        resilience: CircuitBreakerRegistry,
        model: str = ModelName.GPT_4_1_NANO.value,
        temperature: float = 0.0,
        max_tokens: int = 2000,
        coding_region: str = "US",
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.resilience = resilience
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.coding_region = coding_region
        self.timeout = timeout
        self._client = None

    @classmethod
    def from_settings(cls, settings: Settings, resilience: CircuitBreakerRegistry) -> "GenerationService":
        return cls(
            api_key=settings.openai_api_key,
            resilience=resilience,
            model=settings.default_llm_model.value,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            coding_region=settings.coding_region,
            timeout=settings.llm_timeout,
        )

    @property
    def client(self):
        # Patched lazily so the service can be constructed without a key
        if self._client is None:
            self._client = instructor.patch(AsyncOpenAI(api_key=self.api_key, timeout=self.timeout))
        return self._client

    @property
    def code_system(self) -> str:
        return "ICD-10-CM" if self.coding_region.upper() == "US" else "ICD-10"

    async def _complete(self, operation: str, response_model, system_prompt: str, user_prompt: str):
        async def call():
            return await self.client.chat.completions.create(
                model=self.model,
                response_model=response_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )

        logger.info(f"Starting {operation} with model: {self.model}")
        result = await self.resilience.call(f"llm:{operation}", call)
        logger.info(f"{operation} completed successfully.")
        return result

    async def generate_note(
        self,
        transcript: str,
        template: str = "soap",
        detail_level: str = "medium",
    ) -> ClinicalNote:
        """
        Generate a structured clinical note from the transcript
        """
        if not transcript or not transcript.strip():
            raise ValueError("Transcript is empty, insufficient context for note generation")

        note = await self._complete(
            "note-generation",
            ClinicalNote,
            self._build_note_prompt(template, detail_level),
            f"Generate a clinical note from this transcript:\n\n{transcript}",
        )
        if not note.format:
            note.format = template.upper()
        return note

    async def extract_tasks(self, note: ClinicalNote) -> TaskList:
        return await self._complete(
            "task-extraction",
            TaskList,
            TASK_SYSTEM_PROMPT,
            f"Extract follow-up tasks from this clinical note:\n\n{note.content}",
        )

    async def suggest_codes(self, note: ClinicalNote) -> CodeSuggestionList:
        codes = await self._complete(
            "code-suggestion",
            CodeSuggestionList,
            self._build_coding_prompt(),
            f"Suggest {self.code_system} diagnosis codes for this clinical note:\n\n{note.content}",
        )
        # Low-confidence codes lack documentation
        codes.codes = [code for code in codes.codes if code.confidence >= 0.5]
        return codes

    def _build_note_prompt(self, template: str, detail_level: str) -> str:
        """Builds the system prompt for note generation"""
        structure = NOTE_TEMPLATES.get(template.lower(), NOTE_TEMPLATES["soap"])
        sections = "\n".join(f"- {key}: {description}" for key, description in structure.items())
        detail = DETAIL_INSTRUCTIONS.get(detail_level, DETAIL_INSTRUCTIONS["medium"])

        prompt = f"""
You are an expert medical scribe. Convert the following conversation between a
clinician and a patient into a professional clinical note.

Use these sections:
{sections}

{detail}

Only document what was said in the conversation. Do not invent findings.
Write the whole note into `content` and set `format` to '{template.upper()}'.
"""
        return prompt

    def _build_coding_prompt(self) -> str:
        system = self.code_system
        return f"""
You are a certified medical coding expert specializing in {system} diagnosis coding.

CODING GUIDELINES:
1. Identify all diagnoses explicitly stated or clinically implied
2. Code to the highest specificity level available
3. Follow official ICD-10 coding guidelines and conventions
4. Include both primary and secondary diagnoses

CONFIDENCE SCORING:
- 0.9-1.0: Explicitly stated diagnosis with clear documentation
- 0.7-0.89: Strongly implied by clinical findings
- 0.5-0.69: Possible diagnosis requiring clarification
- <0.5: Insufficient documentation (exclude)

Use '{system}' as the code system for every suggestion.
"""
