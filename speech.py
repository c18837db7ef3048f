"""
speech.py — Voice Chat · Local Audio Collaborators
===================================================
Device-bound speech input/output used by the console session (bot.py).

  SystemSpeech           fallback native TTS (pyttsx3, fire-and-forget)
  SoundDevicePlayer      the shared playback handle (soundfile + sounddevice)
  MicrophoneSpeechInput  push-to-talk capture + Groq Whisper transcription
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import numpy as np
import pyttsx3
import sounddevice as sd
import soundfile as sf
from groq import APIError, Groq

from config import SystemVoiceConfig, TranscriptionConfig
from contracts import Capability, PlaybackError

log = logging.getLogger("voice_chat.speech")

MIN_UTTERANCE_SEC = 0.2


# ---------------------------------------------------------------------------
# Fallback: native system TTS
# ---------------------------------------------------------------------------

class SystemSpeech:
    """pyttsx3 driven from one dedicated worker thread.

    speak() queues the utterance and returns; cancel() drops queued work and
    marks everything queued so far as cancelled.  pyttsx3 is not thread-safe, so engine.stop() is only
    ever called on the worker thread, from the engine's own utterance and word
    callbacks.  An utterance whose last word has already started plays out.
    Engine errors are logged, never raised.
    """

    def __init__(self, config: Optional[SystemVoiceConfig] = None) -> None:
        self._config = config or SystemVoiceConfig()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="system_speech")
        self._engine = None
        self._pending: list[Future] = []
        self._lock = threading.Lock()
        self._queued = 0           # sequence number of the last speak()
        self._cancelled_through = 0
        self._current = 0

    # -- worker thread --

    def _get_engine(self):
        if self._engine is None:
            engine = pyttsx3.init()
            if self._config.rate is not None:
                engine.setProperty("rate", self._config.rate)
            if self._config.volume is not None:
                engine.setProperty("volume", self._config.volume)
            engine.connect("started-utterance", self._stop_if_requested)
            engine.connect("started-word", self._stop_if_requested)
            self._engine = engine
        return self._engine

    def _select_voice(self, engine, locale: str) -> None:
        wanted = locale.lower().replace("-", "_")
        for voice in engine.getProperty("voices") or []:
            tags = [str(lang).lower().replace("-", "_") for lang in (getattr(voice, "languages", None) or [])]
            haystack = " ".join(tags + [str(voice.id).lower(), str(voice.name).lower()])
            if wanted in haystack or wanted.split("_")[0] in tags:
                engine.setProperty("voice", voice.id)
                return

    def _stop_if_requested(self, **_event) -> None:
        if self._current <= self._cancelled_through:
            self._engine.stop()
            log.debug("event=system_speech_stopped")

    def _run(self, text: str, locale: str, seq: int) -> None:
        if seq <= self._cancelled_through:
            return
        self._current = seq
        engine = self._get_engine()
        self._select_voice(engine, locale)
        engine.say(text)
        engine.runAndWait()

    def _on_done(self, fut: Future) -> None:
        with self._lock:
            if fut in self._pending:
                self._pending.remove(fut)
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is not None:
            log.warning("event=system_speech_error error=%s", exc)

    # -- SpeechOutputFallback --

    async def speak(self, text: str, locale: str) -> None:
        if not text.strip():
            return
        with self._lock:
            self._queued += 1
            fut = self._executor.submit(self._run, text, locale or self._config.locale, self._queued)
            self._pending.append(fut)
        fut.add_done_callback(self._on_done)
        log.debug("event=system_speech_queued locale=%s chars=%d", locale, len(text))

    def cancel(self) -> None:
        with self._lock:
            pending = list(self._pending)
            if not pending:
                return
            self._cancelled_through = self._queued
        for fut in pending:
            fut.cancel()
        log.info("event=system_speech_cancelled pending=%d", len(pending))

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Playback handle
# ---------------------------------------------------------------------------

class SoundDevicePlayer:
    """Non-blocking WAV playback on the default output device."""

    def __init__(self) -> None:
        self._active = False
        self._started_at = 0.0
        self._duration_sec = 0.0

    async def play(self, audio: bytes) -> None:
        samples, samplerate = self._decode_wav_bytes(audio)
        try:
            sd.play(samples, samplerate)
        except sd.PortAudioError as exc:
            raise PlaybackError(f"Audio device error: {exc}") from exc
        self._active = True
        self._started_at = time.monotonic()
        self._duration_sec = len(samples) / float(samplerate)

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        try:
            sd.stop()
        except sd.PortAudioError as exc:
            log.debug("event=playback_stop_error error=%s", exc)

    @property
    def is_playing(self) -> bool:
        if self._active and time.monotonic() - self._started_at >= self._duration_sec:
            self._active = False
        return self._active

    @staticmethod
    def _decode_wav_bytes(wav_bytes: bytes) -> tuple[np.ndarray, int]:
        """Decode WAV bytes to a float32 mono array in-memory."""
        try:
            data, samplerate = sf.read(io.BytesIO(wav_bytes), dtype="float32")
        except (RuntimeError, sf.LibsndfileError) as exc:
            raise PlaybackError(f"Could not decode audio: {exc}") from exc
        if data.ndim == 2:
            data = data[:, 0]  # mono
        if data.size == 0:
            raise PlaybackError("Audio payload is empty")
        return data, samplerate


# ---------------------------------------------------------------------------
# Speech input
# ---------------------------------------------------------------------------

class MicrophoneSpeechInput:
    """Continuous capture between start() and stop(), transcribed on stop().

    Audio callback runs on the PortAudio thread; chunks are appended under a
    lock and joined once when the user stops.
    """

    def __init__(
        self,
        config: Optional[TranscriptionConfig] = None,
        *,
        client: Optional[Groq] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._config = config or TranscriptionConfig()
        self._client = client
        self._api_key = api_key
        self._stream: Optional[sd.InputStream] = None
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()

    def _get_client(self) -> Groq:
        if self._client is None:
            self._client = Groq(api_key=self._api_key or os.environ["GROQ_API_KEY"])
        return self._client

    def probe(self) -> Capability:
        if self._client is None and not (self._api_key or os.getenv("GROQ_API_KEY")):
            return {
                "supported": False,
                "reason": "no-recognition",
                "message": "Speech recognition is not available. Set GROQ_API_KEY to enable transcription.",
            }
        try:
            sd.query_devices(kind="input")
        except (ValueError, sd.PortAudioError) as exc:
            log.warning("event=no_input_device error=%s", exc)
            return {
                "supported": False,
                "reason": "no-microphone",
                "message": "Please allow microphone access to use voice chat features.",
            }
        return {"supported": True, "reason": "ok", "message": ""}

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            log.warning("event=capture_status status=%s", status)
        with self._lock:
            self._chunks.append(indata[:, 0].copy())

    async def start(self) -> None:
        if self._stream is not None:
            return
        with self._lock:
            self._chunks.clear()
        self._stream = sd.InputStream(
            samplerate=self._config.sample_rate,
            channels=1,
            dtype="int16",
            blocksize=1280,
            callback=self._callback,
        )
        self._stream.start()
        log.info("event=capture_start sample_rate=%d", self._config.sample_rate)

    async def stop(self) -> str:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()
        with self._lock:
            samples = np.concatenate(self._chunks) if self._chunks else np.zeros(0, dtype=np.int16)
            self._chunks.clear()

        duration = samples.size / float(self._config.sample_rate)
        log.info("event=capture_stop duration_sec=%.2f", duration)
        if duration < MIN_UTTERANCE_SEC:
            return ""

        buf = io.BytesIO()
        sf.write(buf, samples, self._config.sample_rate, format="WAV", subtype="PCM_16")
        wav = buf.getvalue()
        return await self._transcribe(wav)

    async def _transcribe(self, wav: bytes) -> str:
        client = self._get_client()
        cfg = self._config
        loop = asyncio.get_running_loop()
        kwargs = {"model": cfg.model}
        if cfg.language:
            kwargs["language"] = cfg.language
        try:
            result = await loop.run_in_executor(
                None,
                lambda: client.audio.transcriptions.create(file=("speech.wav", wav), **kwargs),
            )
        except APIError as exc:
            log.warning("event=transcription_error error=%s", exc)
            return ""
        text = (getattr(result, "text", "") or "").strip()
        log.info("event=transcript_final text=%.80s", text)
        return text
