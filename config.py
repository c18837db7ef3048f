"""
config.py — Voice Chat · Runtime Configuration
===============================================
Pydantic models for every tunable parameter across the assistant.
Serialises to / deserialises from JSON.  Used by:
  • server.py — GET/PUT /config endpoints, builds the Groq-backed services
  • bot.py    — loads config from --config, wires the orchestrator
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

log = logging.getLogger("voice_chat.config")

# ---------------------------------------------------------------------------
# Default prompts (kept here so config.py is the single source of truth)
# ---------------------------------------------------------------------------

DEFAULT_SYSTEM_PROMPT = """\
You are a friendly conversational voice assistant.
Keep responses concise, conversational, and natural for voice (no markdown, no lists).
"""

DEFAULT_STARTER_PROMPT = (
    "Hello, I want to practice speaking English. Can you pretend to be an English "
    "teacher and help me practice speaking English? Limit your response to be at "
    "most 2 sentences"
)

APOLOGY_TEXT = "Sorry, I encountered an error. Please try again later."

VOICE_TEST_TEXT = (
    "This is a test of my voice. How do I sound? I hope you enjoy chatting "
    "with me using this realistic voice."
)

DEFAULT_VOICE_ID = "troy"


# ---------------------------------------------------------------------------
# Per-service config sections
# ---------------------------------------------------------------------------

class GroqConfig(BaseModel):
    """Groq chat completion parameters (passed to AsyncGroq.chat.completions.create)."""
    model: str = Field(default="llama-3.3-70b-versatile", description="Groq model ID")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0, description="Randomness (0.0–2.0)")
    top_p: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Nucleus sampling")
    max_tokens: Optional[int] = Field(default=None, ge=1, description="Max response tokens")
    seed: Optional[int] = Field(default=None, description="Deterministic sampling seed")
    timeout_sec: float = Field(default=30.0, gt=0.0, le=300.0, description="Request timeout (seconds)")


class VoiceOption(BaseModel):
    id: str
    name: str
    lang: str = "en-US"


class NeuralVoiceConfig(BaseModel):
    """Primary (neural) TTS parameters (passed to audio.speech.create)."""
    model: str = Field(default="canopylabs/orpheus-v1-english", description="TTS model")
    voice_id: str = Field(default=DEFAULT_VOICE_ID, description="Default voice")
    voices: list[VoiceOption] = Field(
        default_factory=lambda: [
            VoiceOption(id="troy", name="Troy"),
            VoiceOption(id="autumn", name="Autumn"),
            VoiceOption(id="diana", name="Diana"),
            VoiceOption(id="hannah", name="Hannah"),
            VoiceOption(id="austin", name="Austin"),
            VoiceOption(id="daniel", name="Daniel"),
        ],
        description="Voice catalogue offered to the user",
    )
    response_format: str = Field(default="wav", description="Audio container")
    max_chars: int = Field(default=200, ge=1, le=10000, description="Input cap per request; longer text is sent in sentence chunks")
    timeout_sec: float = Field(default=10.0, gt=0.0, le=120.0, description="Synthesis timeout (seconds)")


class SystemVoiceConfig(BaseModel):
    """Fallback (native) TTS parameters (passed to pyttsx3)."""
    locale: str = Field(default="en-US", description="Locale / voice tag")
    rate: Optional[int] = Field(default=None, ge=50, le=400, description="Words per minute")
    volume: Optional[float] = Field(default=None, ge=0.0, le=1.0, description="Output volume")


class TranscriptionConfig(BaseModel):
    """Speech input parameters (microphone capture + Whisper transcription)."""
    model: str = Field(default="whisper-large-v3-turbo", description="Groq transcription model")
    language: Optional[str] = Field(default="en", description="Force language code")
    sample_rate: int = Field(default=16000, ge=8000, le=48000, description="Capture sample rate (Hz)")


class BackendInitConfig(BaseModel):
    """Neural backend initialization policy."""
    max_attempts: int = Field(default=5, ge=1, le=20, description="Retry ceiling before forcing degraded-ready")
    load_timeout_sec: float = Field(default=5.0, gt=0.0, le=60.0, description="Per-attempt load timeout (seconds)")
    retry_delay_sec: float = Field(default=1.0, ge=0.0, le=30.0, description="Delay between attempts (seconds)")
    auto_enable_degraded: bool = Field(default=True, description="Auto-enable the backend after a forced degraded-ready")


class TurnConfig(BaseModel):
    """Turn-taking behaviour."""
    apology_text: str = Field(default=APOLOGY_TEXT, description="Reply used when the chat request fails")
    starter_prompt: str = Field(default=DEFAULT_STARTER_PROMPT, description="Canned prompt for Start Conversation")
    voice_test_text: str = Field(default=VOICE_TEST_TEXT, description="Phrase spoken by the voice test")
    max_history_pairs: int = Field(default=10, ge=1, le=100, description="User+assistant pairs kept in context")
    speak_stale_replies: bool = Field(default=True, description="Speak replies that arrive after the turn was superseded")
    max_turns_kept: int = Field(default=50, ge=1, le=1000, description="Finished turns kept in the session history")


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------

class VoiceChatConfig(BaseModel):
    """Complete runtime configuration for the voice chat assistant."""
    groq: GroqConfig = Field(default_factory=GroqConfig)
    neural_voice: NeuralVoiceConfig = Field(default_factory=NeuralVoiceConfig)
    system_voice: SystemVoiceConfig = Field(default_factory=SystemVoiceConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    backend_init: BackendInitConfig = Field(default_factory=BackendInitConfig)
    turns: TurnConfig = Field(default_factory=TurnConfig)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT, description="System prompt for the LLM")

    # -- Persistence -----------------------------------------------------------

    @classmethod
    def load(cls, path: str | Path) -> "VoiceChatConfig":
        """Load config from a JSON file.  Returns defaults if file doesn't exist."""
        p = Path(path)
        if not p.exists():
            log.info("event=config_load_defaults path=%s", p)
            return cls()
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
            config = cls.model_validate(data)
            log.info("event=config_loaded path=%s", p)
            return config
        except Exception as exc:
            log.warning("event=config_load_error path=%s error=%s — using defaults", p, exc)
            return cls()

    def save(self, path: str | Path) -> None:
        """Persist config to a JSON file (pretty-printed)."""
        p = Path(path)
        p.write_text(
            self.model_dump_json(indent=2, exclude_none=True),
            encoding="utf-8",
        )
        log.info("event=config_saved path=%s", p)

    def merge_patch(self, patch: dict) -> "VoiceChatConfig":
        """Return a new config with `patch` merged over `self`.

        Supports nested partial updates, e.g.:
            {"backend_init": {"max_attempts": 3}}
        only changes backend_init.max_attempts, leaving everything else intact.
        """
        base = self.model_dump()
        _deep_merge(base, patch)
        return VoiceChatConfig.model_validate(base)


def _deep_merge(base: dict, patch: dict) -> None:
    """Recursively merge `patch` into `base` in-place."""
    for key, value in patch.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
