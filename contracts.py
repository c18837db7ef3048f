"""
contracts.py — Voice Chat · Collaborator Contracts
===================================================
Interfaces the TurnOrchestrator consumes, plus the exception hierarchy shared
by every module.  Concrete implementations live in chat_service.py and
speech.py; tests supply fakes that satisfy the same Protocols.
"""

from __future__ import annotations

from typing import Callable, Optional, Protocol, Sequence, TypedDict


# --------- Errors ---------

class VoiceChatError(Exception):
    """Base class for every error raised by this project."""


class ChatServiceError(VoiceChatError):
    """Chat request failed (non-2xx status or transport error)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SynthesisError(VoiceChatError):
    """Speech synthesis failed."""


class PlaybackError(VoiceChatError):
    """Audio payload could not be decoded or played."""


class CapabilityUnavailable(VoiceChatError):
    """Speech recognition or microphone access is missing.

    Fatal to the session view: the host must show a blocking explanation
    instead of attempting degraded operation.
    """

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class InvalidTransition(VoiceChatError):
    """A Turn was asked to move backwards or to overwrite an immutable field."""


# --------- Types ---------

class ChatMessageDict(TypedDict):
    role: str
    """
    One of "user", "assistant", "system".
    """
    content: str


class VoiceDescriptor(TypedDict, total=False):
    id: str
    name: str
    lang: str


class Capability(TypedDict):
    supported: bool
    """
    Whether the input can be used at all in this session.
    """
    reason: str
    """
    "ok", "no-recognition" or "no-microphone".
    """
    message: str


ProgressCallback = Callable[[int, int], None]
"""
Called with (loaded, total) bytes while a voice model downloads.
"""


# --------- Protocols ---------

class SpeechInput(Protocol):
    def probe(self) -> Capability: ...
    """
    Capability check, called once at mount.
    """
    async def start(self) -> None: ...
    """
    Begin continuous transcript accumulation.
    """
    async def stop(self) -> str: ...
    """
    Stop capturing and return the final transcript (may be empty).
    """


class ChatService(Protocol):
    async def reply(self, messages: Sequence[ChatMessageDict]) -> str: ...
    """
    Send the ordered conversation and return the assistant reply text.
    Raises ChatServiceError on non-2xx responses and transport errors.
    """


class SpeechOutputPrimary(Protocol):
    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> Optional[bytes]: ...
    """
    Return a WAV payload, or None when nothing could be generated.
    """
    async def voices(self) -> list[VoiceDescriptor]: ...
    """
    Enumerate available voices.  An empty list is tolerated.
    """
    async def stored(self) -> list[str]: ...
    """
    Voice ids whose model is already available locally.
    """
    async def download(self, voice_id: str, progress: Optional[ProgressCallback] = None) -> None: ...


class SpeechOutputFallback(Protocol):
    async def speak(self, text: str, locale: str) -> None: ...
    """
    Fire-and-forget: returns once the utterance has been queued.
    """
    def cancel(self) -> None: ...


class AudioPlayer(Protocol):
    """The single process-wide playback handle."""

    async def play(self, audio: bytes) -> None: ...
    """
    Start playback and return once it has begun.  Raises PlaybackError.
    """
    def stop(self) -> None: ...

    @property
    def is_playing(self) -> bool: ...
