"""
Provisional speaker assignment for providers without native diarization.

The heuristic assumes a two-party clinical conversation that starts with the
clinician. A speaker label delivered by the provider always wins over it.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional

from scribeflow.config import Settings
from scribeflow.models.transcript import Speaker

QUESTION_OPENERS = (
    "what", "when", "where", "why", "how", "who", "which", "whose",
    "do you", "does", "did you", "are you", "is it", "is there", "is that",
    "can you", "could you", "would you", "will you", "should",
    "have you", "has it", "any ", "tell me",
)

_QUESTION_START = re.compile(
    r"^\s*(?:" + "|".join(re.escape(opener.strip()) + (r"\b" if not opener.endswith(" ") else r"\s") for opener in QUESTION_OPENERS) + ")",
    re.IGNORECASE,
)


def is_question(text: str) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    return stripped.endswith("?") or bool(_QUESTION_START.match(stripped))


@dataclass
class TurnDetectorConfig:
    pause_threshold_ms: int = 2000
    sentence_count_before_switch: int = 2
    initial_speaker: Speaker = Speaker.PRIMARY

    @classmethod
    def from_settings(cls, settings: Settings) -> "TurnDetectorConfig":
        return cls(
            pause_threshold_ms=settings.pause_threshold_ms,
            sentence_count_before_switch=settings.sentence_count_before_switch,
        )


class TurnDetector:
    """One instance per fragment stream."""

    def __init__(self, config: Optional[TurnDetectorConfig] = None):
        self.config = config or TurnDetectorConfig()
        self.reset()

    def reset(self) -> None:
        self.current_speaker = self.config.initial_speaker
        self.last_speech_timestamp: Optional[int] = None
        self.consecutive_turns = 0

    def _other(self, speaker: Speaker) -> Speaker:
        return Speaker.SECONDARY if speaker == Speaker.PRIMARY else Speaker.PRIMARY

    def _switch(self) -> None:
        self.current_speaker = self._other(self.current_speaker)
        self.consecutive_turns = 0

    def assign_speaker(self, text: str, timestamp: int, end_timestamp: Optional[int] = None) -> Speaker:
        """
        Returns the speaker for a finalized fragment starting at ``timestamp`` (ms).

        Rules, first match wins:
        1. a pause longer than ``pause_threshold_ms`` switches speaker
        2. a question while the non-initial speaker holds the turn switches speaker
        3. after ``sentence_count_before_switch`` consecutive fragments the speaker switches
        """
        paused = (
            self.last_speech_timestamp is not None
            and timestamp - self.last_speech_timestamp > self.config.pause_threshold_ms
        )
        if paused:
            self._switch()
        elif is_question(text) and self.current_speaker != self.config.initial_speaker:
            self._switch()
        elif self.consecutive_turns >= self.config.sentence_count_before_switch:
            self._switch()

        self.consecutive_turns += 1
        self.last_speech_timestamp = end_timestamp if end_timestamp is not None else timestamp
        return self.current_speaker

    def observe(self, speaker: Speaker, timestamp: int, end_timestamp: Optional[int] = None) -> None:
        """Syncs state with a speaker label that came from the provider."""
        if speaker == self.current_speaker:
            self.consecutive_turns += 1
        else:
            self.current_speaker = speaker
            self.consecutive_turns = 1
        self.last_speech_timestamp = end_timestamp if end_timestamp is not None else timestamp


ROLE_WORDS: Dict[str, Speaker] = {
    "primary": Speaker.PRIMARY,
    "provider": Speaker.PRIMARY,
    "doctor": Speaker.PRIMARY,
    "clinician": Speaker.PRIMARY,
    "practitioner": Speaker.PRIMARY,
    "secondary": Speaker.SECONDARY,
    "patient": Speaker.SECONDARY,
    "client": Speaker.SECONDARY,
}


class SpeakerLabelMap:
    """Maps native diarization labels ("A", "B", "speaker_0") to speaker roles."""

    def __init__(self):
        self._seen: Dict[str, Speaker] = {}

    def resolve(self, label: Optional[str]) -> Optional[Speaker]:
        if not label:
            return None
        key = label.strip().lower()
        if key in ROLE_WORDS:
            return ROLE_WORDS[key]
        if key not in self._seen:
            # Opaque labels: first seen is the primary role, the rest secondary
            self._seen[key] = Speaker.PRIMARY if not self._seen else Speaker.SECONDARY
        return self._seen[key]
