"""
synthesis.py — Voice Chat · Neural Speech Synthesis
====================================================
Primary (neural) voice backends behind the SpeechOutputPrimary interface.

  GroqSpeechSynthesizer  Groq audio.speech, WAV out
  HttpSpeechSynthesizer  the control plane's POST /api/tts
  groq_voice_factory / http_voice_factory
                         backend factories handed to BackendLoader

Replies longer than the per-request limit are synthesized sentence by sentence
and joined into one WAV.  The blocking Groq SDK call is offloaded to the
default executor and guarded by asyncio.wait_for, so the event loop never
stalls on network I/O.
"""

from __future__ import annotations

import asyncio
import io
import logging
import os
import re
from typing import Optional

import httpx
import numpy as np
import soundfile as sf
from groq import APIError, Groq

from backend_loader import BackendFactory
from config import NeuralVoiceConfig
from contracts import ProgressCallback, SynthesisError, VoiceDescriptor

log = logging.getLogger("voice_chat.synthesis")


def _catalogue(config: NeuralVoiceConfig) -> list[VoiceDescriptor]:
    return [{"id": v.id, "name": v.name, "lang": v.lang} for v in config.voices]


_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def split_for_speech(text: str, max_chars: int) -> list[str]:
    """Pack whole sentences into chunks of at most max_chars.

    A sentence longer than max_chars is split at word boundaries, and a single
    word longer than that is cut hard.
    """
    pieces: list[str] = []
    for sentence in _SENTENCE_END.split(text.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        if len(sentence) <= max_chars:
            pieces.append(sentence)
            continue
        line = ""
        for word in sentence.split():
            while len(word) > max_chars:
                if line:
                    pieces.append(line)
                    line = ""
                pieces.append(word[:max_chars])
                word = word[max_chars:]
            if not word:
                continue
            if line and len(line) + 1 + len(word) > max_chars:
                pieces.append(line)
                line = word
            else:
                line = f"{line} {word}" if line else word
        if line:
            pieces.append(line)

    chunks: list[str] = []
    for piece in pieces:
        if chunks and len(chunks[-1]) + 1 + len(piece) <= max_chars:
            chunks[-1] = f"{chunks[-1]} {piece}"
        else:
            chunks.append(piece)
    return chunks


def join_wav(parts: list[bytes]) -> bytes:
    """Concatenate WAV payloads that share one sample rate into a single WAV."""
    arrays = []
    samplerate = None
    for i, part in enumerate(parts):
        try:
            data, sr = sf.read(io.BytesIO(part), dtype="int16")
        except (RuntimeError, sf.LibsndfileError) as exc:
            raise SynthesisError(f"Could not decode audio chunk {i + 1}: {exc}") from exc
        if samplerate is None:
            samplerate = sr
        elif sr != samplerate:
            raise SynthesisError(f"Sample rate mismatch: {sr} != {samplerate}")
        if data.ndim == 2:
            data = data[:, 0]
        arrays.append(data)

    buf = io.BytesIO()
    sf.write(buf, np.concatenate(arrays), samplerate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


class GroqSpeechSynthesizer:
    """Hosted neural voice.  Models live server-side, so every catalogue voice
    counts as stored and download() only reports completion."""

    def __init__(
        self,
        config: Optional[NeuralVoiceConfig] = None,
        *,
        client: Optional[Groq] = None,
        api_key: Optional[str] = None,
    ) -> None:
        self._config = config or NeuralVoiceConfig()
        self._client = client
        self._api_key = api_key

    def _get_client(self) -> Groq:
        if self._client is None:
            self._client = Groq(api_key=self._api_key or os.environ["GROQ_API_KEY"])
        return self._client

    async def warm_up(self) -> None:
        """One tiny synthesis so the first real reply doesn't pay cold-start latency."""
        log.info("event=tts_prewarm status=starting")
        audio = await self.synthesize("Hello.")
        if not audio:
            raise SynthesisError("Warm-up synthesis returned no audio")
        log.info("event=tts_prewarm status=complete bytes=%d", len(audio))

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> Optional[bytes]:
        text = text.strip()
        if not text:
            return None
        cfg = self._config
        voice = voice_id or cfg.voice_id
        chunks = split_for_speech(text, cfg.max_chars)

        log.debug("event=tts_request voice=%s chars=%d chunks=%d", voice, len(text), len(chunks))
        parts = []
        for chunk in chunks:
            audio = await self._synthesize_chunk(chunk, voice)
            if not audio:
                if len(chunks) == 1:
                    return None
                raise SynthesisError(f"No audio for chunk {len(parts) + 1} of {len(chunks)}")
            parts.append(audio)

        if len(parts) == 1:
            return parts[0]
        return join_wav(parts)

    async def _synthesize_chunk(self, chunk: str, voice: str) -> bytes:
        cfg = self._config
        client = self._get_client()
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: client.audio.speech.create(
                        model=cfg.model,
                        voice=voice,
                        input=chunk,
                        response_format=cfg.response_format,
                    ).read(),
                ),
                timeout=cfg.timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            log.warning("event=timeout scope=tts limit=%.1fs", cfg.timeout_sec)
            raise SynthesisError(f"Synthesis timed out after {cfg.timeout_sec:g}s") from exc
        except APIError as exc:
            log.warning("event=tts_error voice=%s error=%s", voice, exc)
            raise SynthesisError(str(exc)) from exc

    async def voices(self) -> list[VoiceDescriptor]:
        return _catalogue(self._config)

    async def stored(self) -> list[str]:
        return [v.id for v in self._config.voices]

    async def download(self, voice_id: str, progress: Optional[ProgressCallback] = None) -> None:
        if progress is not None:
            progress(1, 1)


class HttpSpeechSynthesizer:
    """Neural voice through the control plane's POST /api/tts."""

    def __init__(
        self,
        base_url: str,
        config: Optional[NeuralVoiceConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._config = config or NeuralVoiceConfig()
        self._client = client

    async def _post(self, path: str, payload: dict) -> httpx.Response:
        url = f"{self._base_url}{path}"
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self._config.timeout_sec)
        async with httpx.AsyncClient(timeout=self._config.timeout_sec) as client:
            return await client.post(url, json=payload)

    async def warm_up(self) -> None:
        url = f"{self._base_url}/health"
        async with httpx.AsyncClient(timeout=self._config.timeout_sec) as client:
            resp = await client.get(url)
        resp.raise_for_status()

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> Optional[bytes]:
        if not text.strip():
            return None
        voice = voice_id or self._config.voice_id
        try:
            resp = await self._post("/api/tts", {"text": text, "voice": voice})
        except httpx.HTTPError as exc:
            raise SynthesisError(f"Transport error: {exc}") from exc
        if not resp.is_success:
            log.warning("event=http_tts_error status=%d", resp.status_code)
            return None
        return resp.content or None

    async def voices(self) -> list[VoiceDescriptor]:
        return _catalogue(self._config)

    async def stored(self) -> list[str]:
        return [v.id for v in self._config.voices]

    async def download(self, voice_id: str, progress: Optional[ProgressCallback] = None) -> None:
        if progress is not None:
            progress(1, 1)


def groq_voice_factory(config: Optional[NeuralVoiceConfig] = None, api_key: Optional[str] = None) -> BackendFactory:
    """Backend factory for BackendLoader: construct + warm up the Groq voice."""
    async def _load() -> GroqSpeechSynthesizer:
        synth = GroqSpeechSynthesizer(config, api_key=api_key)
        await synth.warm_up()
        return synth
    return _load


def http_voice_factory(base_url: str, config: Optional[NeuralVoiceConfig] = None) -> BackendFactory:
    async def _load() -> HttpSpeechSynthesizer:
        synth = HttpSpeechSynthesizer(base_url, config)
        await synth.warm_up()
        return synth
    return _load

