"""Turn and speech-backend state for a single voice chat session."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from contracts import ChatMessageDict, InvalidTransition

log = logging.getLogger("voice_chat.turns")


class TurnPhase(Enum):
    IDLE           = "Idle"
    LISTENING      = "Listening"
    TRANSCRIBED    = "Transcribed"
    AWAITING_REPLY = "AwaitingReply"
    SPEAKING       = "Speaking"
    DONE           = "Done"
    FAILED         = "Failed"


# Forward order of phases.  Speaking -> Failed -> Speaking is the one allowed
# revisit (primary backend failed, fallback re-enters Speaking).
_ORDER = {
    TurnPhase.IDLE:           0,
    TurnPhase.LISTENING:      1,
    TurnPhase.TRANSCRIBED:    2,
    TurnPhase.AWAITING_REPLY: 3,
    TurnPhase.SPEAKING:       4,
    TurnPhase.DONE:           5,
    TurnPhase.FAILED:         5,
}

TERMINAL_PHASES = frozenset({TurnPhase.DONE, TurnPhase.FAILED})


@dataclass
class Turn:
    """One user-utterance / assistant-reply cycle.

    A Turn is created in TRANSCRIBED once a non-empty utterance (or a canned
    prompt) is finalized.  `user_text` and `reply_text` are write-once.
    """
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    phase: TurnPhase = TurnPhase.TRANSCRIBED
    visible: bool = False
    backend: Optional[str] = None            # "primary" | "fallback" once spoken
    error: Optional[str] = None              # chat failure that produced the apology
    created_at: float = field(default_factory=time.time)
    _user_text: Optional[str] = field(default=None, repr=False)
    _reply_text: Optional[str] = field(default=None, repr=False)
    _fallback_reentered: bool = field(default=False, repr=False)

    @property
    def user_text(self) -> Optional[str]:
        return self._user_text

    @user_text.setter
    def user_text(self, text: str) -> None:
        if self._user_text is not None:
            raise InvalidTransition(f"turn {self.id}: user_text already set")
        self._user_text = text

    @property
    def reply_text(self) -> Optional[str]:
        return self._reply_text

    @reply_text.setter
    def reply_text(self, text: str) -> None:
        if self._reply_text is not None:
            raise InvalidTransition(f"turn {self.id}: reply_text already set")
        self._reply_text = text

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def advance(self, new_phase: TurnPhase) -> None:
        """Move strictly forward, allowing a single Failed -> Speaking re-entry."""
        prev = self.phase
        if prev == TurnPhase.FAILED and new_phase == TurnPhase.SPEAKING:
            if self._fallback_reentered:
                raise InvalidTransition(f"turn {self.id}: fallback already re-entered Speaking")
            self._fallback_reentered = True
        elif prev in TERMINAL_PHASES:
            raise InvalidTransition(f"turn {self.id}: {prev.value} is terminal")
        elif _ORDER[new_phase] <= _ORDER[prev]:
            raise InvalidTransition(f"turn {self.id}: {prev.value} -> {new_phase.value}")
        self.phase = new_phase
        log.debug("event=turn_phase turn_id=%s from=%s to=%s", self.id, prev.value, new_phase.value)

    def reveal(self) -> None:
        if not self.visible:
            self.visible = True
            log.debug("event=turn_visible turn_id=%s phase=%s", self.id, self.phase.value)


@dataclass
class SpeechBackendState:
    """Process-wide readiness of the optional neural speech backend.

    Once ready (fully or degraded) the state never returns to not-ready, and
    `primary_enabled` can only be switched on after readiness.
    """
    max_attempts: int = 5
    primary_ready: bool = False
    primary_enabled: bool = False
    degraded: bool = False
    init_attempts: int = 0
    status: str = ""

    def record_attempt(self) -> bool:
        """Count an initialization attempt.  False once the ceiling is reached."""
        if self.init_attempts >= self.max_attempts:
            return False
        self.init_attempts += 1
        return True

    @property
    def attempts_exhausted(self) -> bool:
        return self.init_attempts >= self.max_attempts

    def mark_ready(self, *, degraded: bool) -> bool:
        """One-shot transition to ready.  Returns False if already ready."""
        if self.primary_ready:
            log.debug("event=backend_ready_ignored degraded=%s", degraded)
            return False
        self.primary_ready = True
        self.degraded = degraded
        log.info("event=backend_ready degraded=%s attempts=%d", degraded, self.init_attempts)
        return True

    def set_enabled(self, enabled: bool) -> bool:
        """Toggle the neural backend.  Rejected while not ready."""
        if not self.primary_ready:
            log.info("event=backend_toggle_rejected reason=not_ready requested=%s", enabled)
            return False
        self.primary_enabled = bool(enabled)
        log.info("event=backend_toggle enabled=%s", self.primary_enabled)
        return True

    @property
    def use_primary(self) -> bool:
        return self.primary_ready and self.primary_enabled


class Conversation:
    """In-memory message history: optional system prompt + rolling pairs."""

    def __init__(self, system_prompt: str = "", max_history_pairs: int = 10) -> None:
        self._system = system_prompt.strip()
        self._max_history_pairs = max_history_pairs
        self._history: list[ChatMessageDict] = []

    def add_user(self, text: str) -> None:
        self._history.append({"role": "user", "content": text})
        self._trim()

    def add_assistant(self, text: str) -> None:
        self._history.append({"role": "assistant", "content": text})
        self._trim()

    def messages(self) -> list[ChatMessageDict]:
        """Build [system] + rolling history, ready for the chat service."""
        system: list[ChatMessageDict] = (
            [{"role": "system", "content": self._system}] if self._system else []
        )
        return system + [dict(m) for m in self._history]  # type: ignore[misc]

    def __len__(self) -> int:
        return len(self._history)

    def _trim(self) -> None:
        max_msgs = self._max_history_pairs * 2
        if len(self._history) > max_msgs:
            self._history = self._history[-max_msgs:]
            log.debug("event=history_trimmed history_len=%d", len(self._history))
