"""
backend_loader.py — Voice Chat · Neural Speech Backend Initialization
=====================================================================
Capability-probe-then-inject for the optional neural TTS backend.

  probe_backend()   — construct the backend once under a timeout and report
                      a typed BackendProbe instead of raising.
  BackendLoader     — retry policy on top of probe_backend(): enumerate
                      voices, make sure the default voice model is stored,
                      and settle SpeechBackendState into exactly one of
                      ready / ready-degraded.

Retry policy
------------
Every attempt (timeout, import failure, model failure) counts toward
`max_attempts`.  Once the ceiling is reached the backend is force-marked
ready-degraded: the last loaded instance is kept if there was one, otherwise
a NullSynthesizer stands in so synthesis returns None and the orchestrator
takes the fallback path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from config import BackendInitConfig, NeuralVoiceConfig
from contracts import ProgressCallback, SpeechOutputPrimary, VoiceDescriptor
from turns import SpeechBackendState

log = logging.getLogger("voice_chat.backend_loader")

BackendFactory = Callable[[], Awaitable[SpeechOutputPrimary]]
StatusCallback = Callable[[str], None]

STATUS_LOADING      = "Loading speech engine..."
STATUS_INIT_FAILED  = "Speech engine initialization failed"
STATUS_MODEL_FAILED = "Voice model preparation failed"
STATUS_READY        = "Ready to speak"
STATUS_DEGRADED     = "Ready with limited capability"


class ProbeStatus(str, Enum):
    AVAILABLE    = "available"
    IMPORT_ERROR = "import-error"
    NOT_FOUND    = "not-found"
    TIMEOUT      = "timeout"


@dataclass(frozen=True)
class BackendProbe:
    status: ProbeStatus
    backend: Optional[SpeechOutputPrimary] = None
    detail: str = ""

    @property
    def available(self) -> bool:
        return self.status is ProbeStatus.AVAILABLE


@dataclass
class BackendAvailability:
    ready: bool
    degraded: bool
    backend: SpeechOutputPrimary
    attempts: int
    voices: list[VoiceDescriptor] = field(default_factory=list)


class NullSynthesizer:
    """Stand-in primary backend that never produces audio."""

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> Optional[bytes]:
        return None

    async def voices(self) -> list[VoiceDescriptor]:
        return []

    async def stored(self) -> list[str]:
        return []

    async def download(self, voice_id: str, progress: Optional[ProgressCallback] = None) -> None:
        return None


async def probe_backend(factory: BackendFactory, timeout_sec: float = 5.0) -> BackendProbe:
    """Construct the backend once, bounded by `timeout_sec`.  Never raises
    (except for cancellation)."""
    try:
        backend = await asyncio.wait_for(factory(), timeout=timeout_sec)
    except asyncio.TimeoutError:
        log.warning("event=backend_probe_timeout timeout_sec=%.1f", timeout_sec)
        return BackendProbe(ProbeStatus.TIMEOUT, detail=f"Import timed out after {timeout_sec:g} seconds")
    except asyncio.CancelledError:
        raise
    except ModuleNotFoundError as exc:
        log.warning("event=backend_probe_not_found error=%s", exc)
        return BackendProbe(ProbeStatus.NOT_FOUND, detail=str(exc))
    except Exception as exc:
        log.warning("event=backend_probe_error error=%s", exc)
        return BackendProbe(ProbeStatus.IMPORT_ERROR, detail=str(exc) or type(exc).__name__)

    if backend is None:
        log.warning("event=backend_probe_empty")
        return BackendProbe(ProbeStatus.IMPORT_ERROR, detail="Backend factory returned None")

    log.info("event=backend_probe_ok backend=%s", type(backend).__name__)
    return BackendProbe(ProbeStatus.AVAILABLE, backend=backend)


class BackendLoader:
    """Retrying initializer that settles a SpeechBackendState."""

    def __init__(
        self,
        factory: BackendFactory,
        state: SpeechBackendState,
        *,
        init_config: Optional[BackendInitConfig] = None,
        voice_config: Optional[NeuralVoiceConfig] = None,
        on_status: Optional[StatusCallback] = None,
    ) -> None:
        self._factory = factory
        self._state = state
        self._init = init_config or BackendInitConfig()
        self._voice = voice_config or NeuralVoiceConfig()
        self._on_status = on_status
        self._availability: Optional[BackendAvailability] = None

        # the state carries the ceiling so record_attempt() can enforce it
        self._state.max_attempts = self._init.max_attempts

    @property
    def availability(self) -> Optional[BackendAvailability]:
        return self._availability

    async def initialize(self) -> BackendAvailability:
        if self._availability is not None:
            return self._availability

        last_backend: Optional[SpeechOutputPrimary] = None
        voices: list[VoiceDescriptor] = []

        while self._state.record_attempt():
            attempt = self._state.init_attempts
            log.info("event=backend_init_attempt attempt=%d/%d", attempt, self._init.max_attempts)
            self._status(STATUS_LOADING)

            probe = await probe_backend(self._factory, self._init.load_timeout_sec)
            if not probe.available or probe.backend is None:
                log.warning(
                    "event=backend_init_failed attempt=%d status=%s detail=%s",
                    attempt, probe.status.value, probe.detail,
                )
                self._status(STATUS_INIT_FAILED)
                await self._backoff()
                continue

            backend = probe.backend
            last_backend = backend
            voices = await self._load_voices(backend)

            try:
                await self._prepare_model(backend)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("event=backend_model_error attempt=%d error=%s", attempt, exc)
                self._status(STATUS_MODEL_FAILED)
                await self._backoff()
                continue

            return self._settle(backend, voices, degraded=False)

        log.warning(
            "event=backend_init_ceiling attempts=%d loaded=%s",
            self._state.init_attempts, last_backend is not None,
        )
        return self._settle(last_backend or NullSynthesizer(), voices, degraded=True)

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    def default_voices(self) -> list[VoiceDescriptor]:
        return [{"id": v.id, "name": v.name, "lang": v.lang} for v in self._voice.voices] or [
            {"id": self._voice.voice_id, "name": self._voice.voice_id, "lang": "en-US"}
        ]

    async def _load_voices(self, backend: SpeechOutputPrimary) -> list[VoiceDescriptor]:
        try:
            voices = await backend.voices()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.warning("event=backend_voices_error error=%s fallback=default_voices", exc)
            return self.default_voices()
        if not voices or not isinstance(voices, list):
            log.info("event=backend_voices_empty fallback=default_voices")
            return self.default_voices()
        log.info("event=backend_voices count=%d", len(voices))
        return voices

    async def _prepare_model(self, backend: SpeechOutputPrimary) -> None:
        voice_id = self._voice.voice_id
        stored = await backend.stored()
        if stored and voice_id in stored:
            log.info("event=voice_model_stored voice=%s", voice_id)
            return

        log.info("event=voice_model_download_start voice=%s", voice_id)
        self._status("Downloading voice model...")

        def _progress(loaded: int, total: int) -> None:
            if total <= 0:
                return
            pct = round(loaded * 100 / total)
            self._status(f"Downloading voice model: {pct}%")

        await backend.download(voice_id, _progress)
        log.info("event=voice_model_download_done voice=%s", voice_id)

    def _settle(
        self,
        backend: SpeechOutputPrimary,
        voices: list[VoiceDescriptor],
        *,
        degraded: bool,
    ) -> BackendAvailability:
        self._state.mark_ready(degraded=degraded)
        if not degraded or self._init.auto_enable_degraded:
            self._state.set_enabled(True)
        self._status(STATUS_DEGRADED if degraded else STATUS_READY)
        self._availability = BackendAvailability(
            ready=True,
            degraded=degraded,
            backend=backend,
            attempts=self._state.init_attempts,
            voices=voices or self.default_voices(),
        )
        return self._availability

    async def _backoff(self) -> None:
        if not self._state.attempts_exhausted and self._init.retry_delay_sec > 0:
            await asyncio.sleep(self._init.retry_delay_sec)

    def _status(self, text: str) -> None:
        self._state.status = text
        if self._on_status is None:
            return
        try:
            self._on_status(text)
        except Exception as exc:
            log.warning("event=status_callback_error error=%s", exc)
