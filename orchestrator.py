"""
orchestrator.py — Voice Chat · Turn Orchestrator
=================================================
Sequences one conversational turn:

    listen → transcribe → send → receive → synthesize → speak → idle

and decides which speech backend speaks the reply.

Phase contract
──────────────
  IDLE / LISTENING            orchestrator-level; no Turn exists yet
  TRANSCRIBED                 Turn created from a non-empty transcript
  AWAITING_REPLY              chat request in flight
  SPEAKING                    synthesis / playback attempt
  DONE | FAILED               terminal for that Turn

Fallback
────────
  primary enabled + ready  → synthesize → play  (reply revealed at playback start)
  synthesis None / raises  ─┐
  playback raises          ─┴→ FAILED → one fallback.speak() → SPEAKING → DONE
  primary disabled         → fallback.speak() → DONE

Chat failures never propagate: the reply becomes the apology text, is revealed
immediately, and is spoken through the same pipeline.

Audio handle
────────────
A single AudioPlayer is shared across turns.  Before a new turn (or a voice
preview) speaks, the previous playback is stopped and any pending fallback
utterance cancelled, so audio from two turns never overlaps.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable, Optional

from backend_loader import BackendAvailability, BackendFactory, BackendLoader, NullSynthesizer
from config import VoiceChatConfig
from contracts import (
    AudioPlayer,
    CapabilityUnavailable,
    ChatService,
    SpeechInput,
    SpeechOutputFallback,
    SpeechOutputPrimary,
    VoiceDescriptor,
)
from turns import Conversation, SpeechBackendState, Turn, TurnPhase

log = logging.getLogger("voice_chat.orchestrator")

TurnCallback = Callable[[Turn], None]
StatusCallback = Callable[[str], None]

STATUS_GENERATING = "Generating speech..."
STATUS_GENERATED  = "Speech generated"
STATUS_GEN_FAILED = "Speech generation failed"


class TurnOrchestrator:
    """Owns turn state and the listen/send/speak cycle.

    Collaborators are injected; the optional neural backend is supplied as a
    factory and installed by BackendLoader once it settles, behind the same
    SpeechOutputPrimary interface as the NullSynthesizer placeholder used
    until then.
    """

    def __init__(
        self,
        *,
        speech_input: SpeechInput,
        chat: ChatService,
        fallback: SpeechOutputFallback,
        player: AudioPlayer,
        primary_factory: Optional[BackendFactory] = None,
        config: Optional[VoiceChatConfig] = None,
        state: Optional[SpeechBackendState] = None,
        on_turn: Optional[TurnCallback] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._config = config or VoiceChatConfig()
        self._input = speech_input
        self._chat = chat
        self._fallback = fallback
        self._player = player
        self._on_turn = on_turn
        self._on_status = on_status

        self._state = state or SpeechBackendState(max_attempts=self._config.backend_init.max_attempts)
        self._primary: SpeechOutputPrimary = NullSynthesizer()
        self._loader: Optional[BackendLoader] = None
        if primary_factory is not None:
            self._loader = BackendLoader(
                primary_factory,
                self._state,
                init_config=self._config.backend_init,
                voice_config=self._config.neural_voice,
                on_status=self._status,
            )
        self._init_task: Optional[asyncio.Task] = None

        self._voices: list[VoiceDescriptor] = []
        self._voice_id = self._config.neural_voice.voice_id
        self._locale = self._config.system_voice.locale

        self._conversation = Conversation(
            self._config.system_prompt,
            max_history_pairs=self._config.turns.max_history_pairs,
        )
        self._listening = False
        self._active: Optional[Turn] = None
        self._turns: deque[Turn] = deque(maxlen=self._config.turns.max_turns_kept)
        self._audio_owner: Optional[str] = None

    # -----------------------------------------------------------------------
    # Read-only views
    # -----------------------------------------------------------------------

    @property
    def phase(self) -> TurnPhase:
        if self._listening:
            return TurnPhase.LISTENING
        if self._active is not None and not self._active.is_terminal:
            return self._active.phase
        return TurnPhase.IDLE

    @property
    def busy(self) -> bool:
        return self._active is not None and not self._active.is_terminal

    @property
    def listening(self) -> bool:
        return self._listening

    @property
    def active_turn(self) -> Optional[Turn]:
        return self._active

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def backend_state(self) -> SpeechBackendState:
        return self._state

    @property
    def voice_id(self) -> str:
        return self._voice_id

    def messages(self) -> list[dict]:
        return self._conversation.messages()  # type: ignore[return-value]

    # -----------------------------------------------------------------------
    # Session lifecycle
    # -----------------------------------------------------------------------

    def mount(self) -> None:
        """Probe input capability and kick off neural backend initialization.

        Raises CapabilityUnavailable when speech recognition or the microphone
        is missing; the host must present a blocking state.
        """
        capability = self._input.probe()
        if not capability["supported"]:
            log.error("event=capability_unavailable reason=%s", capability["reason"])
            raise CapabilityUnavailable(capability["reason"], capability["message"])
        log.info("event=mounted primary_factory=%s", self._loader is not None)

        if self._loader is not None and self._init_task is None:
            self._init_task = asyncio.create_task(
                self.initialize_backend(),
                name="neural_backend_init",
            )

    async def initialize_backend(self) -> Optional[BackendAvailability]:
        """Run the loader to completion and install whatever it settled on."""
        if self._loader is None:
            return None
        availability = await self._loader.initialize()
        self._primary = availability.backend
        self._voices = list(availability.voices)
        log.info(
            "event=primary_installed backend=%s degraded=%s enabled=%s",
            type(availability.backend).__name__,
            availability.degraded,
            self._state.primary_enabled,
        )
        return availability

    async def close(self) -> None:
        """Stop audio, listening and backend initialization.

        An in-flight chat request is not cancelled; its reply is handled by
        the stale-reply policy.
        """
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        if self._listening:
            self._listening = False
            try:
                await self._input.stop()
            except Exception as exc:
                log.warning("event=input_stop_error error=%s", exc)
        self._release_audio()
        self._active = None
        log.info("event=orchestrator_closed turns=%d", len(self._turns))

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    async def start_listening(self) -> bool:
        if self._listening:
            return True
        if self.busy:
            log.info("event=start_listening_rejected phase=%s", self.phase.value)
            return False
        try:
            await self._input.start()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=input_error op=start error=%s", exc)
            return False
        self._listening = True
        log.info("event=phase_change new=LISTENING")
        return True

    async def stop_listening_and_submit(self) -> Optional[Turn]:
        """Finalize the transcript and run a Turn for it.

        Whitespace-only transcripts return to IDLE without creating a Turn.
        """
        if not self._listening:
            log.debug("event=stop_listening_ignored reason=not_listening")
            return None
        self._listening = False
        try:
            transcript = await self._input.stop()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=input_error op=stop error=%s", exc)
            return None
        if not transcript or not transcript.strip():
            log.info("event=empty_transcript → IDLE")
            return None
        return await self._submit(transcript)

    async def submit_canned_prompt(self, text: str) -> Optional[Turn]:
        if not text or not text.strip():
            log.info("event=canned_prompt_rejected reason=empty")
            return None
        return await self._submit(text)

    async def start_conversation(self) -> Optional[Turn]:
        return await self.submit_canned_prompt(self._config.turns.starter_prompt)

    def set_primary_backend_enabled(self, enabled: bool) -> bool:
        return self._state.set_enabled(enabled)

    def voices(self) -> list[VoiceDescriptor]:
        if self._voices:
            return list(self._voices)
        return [{"id": v.id, "name": v.name, "lang": v.lang} for v in self._config.neural_voice.voices]

    def select_voice(self, voice_id: str) -> bool:
        known = {v.get("id") for v in self.voices()}
        if voice_id not in known:
            log.info("event=voice_select_rejected voice=%s", voice_id)
            return False
        self._voice_id = voice_id
        log.info("event=voice_selected voice=%s", voice_id)
        return True

    async def preview_voice(self) -> None:
        """Speak the voice-test phrase without creating a Turn."""
        self._release_audio()
        await self._speak(self._config.turns.voice_test_text, None)

    # -----------------------------------------------------------------------
    # Turn pipeline
    # -----------------------------------------------------------------------

    async def _submit(self, text: str) -> Optional[Turn]:
        if self.busy:
            log.info("event=submit_rejected phase=%s", self.phase.value)
            return None

        # a new turn never overlaps audio from the previous one
        self._release_audio()

        turn = Turn()
        turn.user_text = text
        self._active = turn
        self._turns.append(turn)
        log.info("event=turn_created turn_id=%s transcript_len=%d", turn.id, len(text))
        self._notify(turn)

        await self._run_turn(turn)
        return turn

    async def _run_turn(self, turn: Turn) -> None:
        try:
            turn.advance(TurnPhase.AWAITING_REPLY)
            self._notify(turn)
            self._conversation.add_user(turn.user_text or "")

            reply, failed = await self._request_reply(turn)
            turn.reply_text = reply
            self._conversation.add_assistant(reply)
            if failed:
                turn.reveal()

            if self._active is not turn:
                log.info(
                    "event=stale_reply turn_id=%s speak=%s",
                    turn.id, self._config.turns.speak_stale_replies,
                )
                if not self._config.turns.speak_stale_replies:
                    turn.reveal()
                    turn.advance(TurnPhase.DONE)
                    return

            turn.advance(TurnPhase.SPEAKING)
            self._notify(turn)
            await self._speak(reply, turn)
            turn.advance(TurnPhase.DONE)
            log.info("event=turn_done turn_id=%s backend=%s", turn.id, turn.backend)

        except asyncio.CancelledError:
            turn.reveal()
            if not turn.is_terminal:
                turn.advance(TurnPhase.FAILED)
            raise
        except Exception as exc:
            log.error("event=turn_error turn_id=%s error=%s", turn.id, exc, exc_info=True)
            turn.reveal()
            if not turn.is_terminal:
                turn.advance(TurnPhase.FAILED)
        finally:
            self._notify(turn)

    async def _request_reply(self, turn: Turn) -> tuple[str, bool]:
        """Return (reply_text, failed).  Chat errors become the apology."""
        messages = self._conversation.messages()
        log.info("event=chat_request turn_id=%s messages=%d", turn.id, len(messages))
        try:
            reply = await self._chat.reply(messages)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=chat_failed turn_id=%s error=%s", turn.id, exc)
            turn.error = str(exc) or type(exc).__name__
            return self._config.turns.apology_text, True
        reply = reply or ""
        log.info("event=chat_reply turn_id=%s reply_len=%d", turn.id, len(reply))
        return reply, False

    async def _speak(self, text: str, turn: Optional[Turn]) -> None:
        if not text.strip():
            log.info("event=speak_skipped reason=empty_text")
            if turn is not None:
                turn.reveal()
            return

        if self._state.use_primary:
            if await self._speak_primary(text, turn):
                return
            if turn is not None:
                turn.advance(TurnPhase.FAILED)
                self._notify(turn)
                turn.advance(TurnPhase.SPEAKING)
                self._notify(turn)

        await self._speak_fallback(text, turn)

    async def _speak_primary(self, text: str, turn: Optional[Turn]) -> bool:
        audio = await self._synthesize(text)
        if not audio:
            return False

        owner = turn.id if turn is not None else "preview"
        self._acquire_audio(owner)
        try:
            await self._player.play(audio)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=playback_error owner=%s error=%s", owner, exc)
            self._audio_owner = None
            return False

        log.info("event=playback_start owner=%s bytes=%d", owner, len(audio))
        if turn is not None:
            turn.backend = "primary"
            turn.reveal()
            self._notify(turn)
        return True

    async def _synthesize(self, text: str) -> Optional[bytes]:
        self._status(STATUS_GENERATING)
        try:
            audio = await self._primary.synthesize(text, self._voice_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=synthesis_error voice=%s error=%s", self._voice_id, exc)
            self._status(STATUS_GEN_FAILED)
            return None
        if not audio:
            log.warning("event=synthesis_empty voice=%s", self._voice_id)
            self._status(STATUS_GEN_FAILED)
            return None
        self._status(STATUS_GENERATED)
        return audio

    async def _speak_fallback(self, text: str, turn: Optional[Turn]) -> None:
        if turn is not None:
            turn.backend = "fallback"
            turn.reveal()
            self._notify(turn)
        log.info("event=fallback_speech locale=%s text_len=%d", self._locale, len(text))
        try:
            await self._fallback.speak(text, self._locale)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # the fallback backend fails silently; the turn still completes
            log.warning("event=fallback_speech_error error=%s", exc)

    # -----------------------------------------------------------------------
    # Shared audio handle
    # -----------------------------------------------------------------------

    def _acquire_audio(self, owner: str) -> None:
        if self._audio_owner is not None and self._audio_owner != owner:
            self._release_audio()
        self._audio_owner = owner

    def _release_audio(self) -> None:
        if self._player.is_playing:
            log.info("event=playback_interrupted owner=%s", self._audio_owner)
        self._player.stop()
        self._fallback.cancel()
        self._audio_owner = None

    # -----------------------------------------------------------------------
    # Hooks
    # -----------------------------------------------------------------------

    def _notify(self, turn: Turn) -> None:
        if self._on_turn is None:
            return
        try:
            self._on_turn(turn)
        except Exception as exc:
            log.warning("event=turn_callback_error turn_id=%s error=%s", turn.id, exc)

    def _status(self, text: str) -> None:
        self._state.status = text
        if self._on_status is None:
            return
        try:
            self._on_status(text)
        except Exception as exc:
            log.warning("event=status_callback_error error=%s", exc)
