import asyncio
import io
import json
import time
from types import SimpleNamespace

import groq
import httpx
import numpy as np
import pytest
import soundfile as sf

from config import NeuralVoiceConfig
from contracts import SynthesisError
from synthesis import GroqSpeechSynthesizer, HttpSpeechSynthesizer, split_for_speech

from tests.fakes import WAV

BASE = "http://voice.test"


class FakeSpeech:
    def __init__(self, audio=WAV, error=None, delay=0.0):
        self.audio = audio
        self.error = error
        self.delay = delay
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(read=lambda: self.audio)


def groq_synth(speech, **config):
    client = SimpleNamespace(audio=SimpleNamespace(speech=speech))
    return GroqSpeechSynthesizer(NeuralVoiceConfig(**config), client=client)


def test_groq_synthesize_returns_wav():
    speech = FakeSpeech()
    audio = asyncio.run(groq_synth(speech).synthesize("Hi there", "diana"))
    assert audio == WAV
    assert speech.calls == [{
        "model": "canopylabs/orpheus-v1-english",
        "voice": "diana",
        "input": "Hi there",
        "response_format": "wav",
    }]


def test_groq_uses_default_voice():
    speech = FakeSpeech()
    asyncio.run(groq_synth(speech).synthesize("abcdefghij"))
    assert speech.calls[0]["voice"] == "troy"
    assert speech.calls[0]["input"] == "abcdefghij"


def tone_wav(frames, samplerate=24000):
    buf = io.BytesIO()
    samples = (np.sin(np.arange(frames) / 8.0) * 8000).astype(np.int16)
    sf.write(buf, samples, samplerate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


LONG_REPLY = (
    "This is sentence one of a longer answer about the weather today. "
    "The morning starts cool and cloudy, with a light breeze from the west. "
    "By noon the clouds break up and the temperature climbs to about twenty degrees. "
    "In the afternoon there is a small chance of a passing shower near the hills. "
    "The evening stays mild and clear, so it is a good night for a walk. "
    "That is the end of this longer answer."
)


def test_groq_long_reply_is_sent_in_sentence_chunks():
    speech = FakeSpeech(audio=tone_wav(100))
    audio = asyncio.run(groq_synth(speech).synthesize(LONG_REPLY))

    inputs = [call["input"] for call in speech.calls]
    assert len(LONG_REPLY) > 200
    assert len(inputs) > 1
    assert all(len(chunk) <= 200 for chunk in inputs)
    assert all(chunk.endswith(".") for chunk in inputs)
    assert " ".join(inputs) == LONG_REPLY.strip()

    data, samplerate = sf.read(io.BytesIO(audio), dtype="int16")
    assert samplerate == 24000
    assert len(data) == 100 * len(inputs)


def test_groq_overlong_sentence_splits_on_words():
    speech = FakeSpeech(audio=tone_wav(10))
    asyncio.run(groq_synth(speech, max_chars=5).synthesize("abc defg hijklmn"))
    assert [call["input"] for call in speech.calls] == ["abc", "defg", "hijkl", "mn"]


def test_groq_undecodable_chunk_raises_synthesis_error():
    speech = FakeSpeech(audio=WAV)
    with pytest.raises(SynthesisError, match="decode"):
        asyncio.run(groq_synth(speech, max_chars=20).synthesize("First sentence here. Second one here."))
    assert len(speech.calls) == 2


def test_groq_empty_chunk_audio_raises_synthesis_error():
    speech = FakeSpeech(audio=b"")
    with pytest.raises(SynthesisError):
        asyncio.run(groq_synth(speech, max_chars=20).synthesize("First sentence here. Second one here."))


def test_split_for_speech_packs_short_sentences():
    assert split_for_speech("Hi. How are you? Fine!", 200) == ["Hi. How are you? Fine!"]
    assert split_for_speech("Hi. How are you? Fine!", 12) == ["Hi.", "How are you?", "Fine!"]


def test_groq_blank_text_skips_request():
    speech = FakeSpeech()
    assert asyncio.run(groq_synth(speech).synthesize("   ")) is None
    assert speech.calls == []


def test_groq_empty_audio_is_none():
    assert asyncio.run(groq_synth(FakeSpeech(audio=b"")).synthesize("hello")) is None


def test_groq_api_error_raises_synthesis_error():
    request = httpx.Request("POST", "https://api.groq.com/openai/v1/audio/speech")
    speech = FakeSpeech(error=groq.APIConnectionError(request=request))
    with pytest.raises(SynthesisError):
        asyncio.run(groq_synth(speech).synthesize("hello"))


def test_groq_timeout_raises_synthesis_error():
    speech = FakeSpeech(delay=0.3)
    with pytest.raises(SynthesisError, match="timed out"):
        asyncio.run(groq_synth(speech, timeout_sec=0.05).synthesize("hello"))


def test_groq_warm_up_requires_audio():
    with pytest.raises(SynthesisError):
        asyncio.run(groq_synth(FakeSpeech(audio=b"")).warm_up())


def test_groq_catalogue_is_stored():
    synth = groq_synth(FakeSpeech())
    progress = []

    async def exercise():
        voices = await synth.voices()
        stored = await synth.stored()
        await synth.download("troy", lambda loaded, total: progress.append((loaded, total)))
        return voices, stored

    voices, stored = asyncio.run(exercise())
    assert voices[0] == {"id": "troy", "name": "Troy", "lang": "en-US"}
    assert stored == [v["id"] for v in voices]
    assert progress == [(1, 1)]


def test_http_synthesize_posts_text_and_voice():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=WAV, headers={"content-type": "audio/wav"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    audio = asyncio.run(HttpSpeechSynthesizer(BASE, client=client).synthesize("Hi", "autumn"))
    assert audio == WAV
    assert seen["url"] == f"{BASE}/api/tts"
    assert seen["body"] == {"text": "Hi", "voice": "autumn"}


def test_http_synthesize_error_status_is_none():
    def handler(request):
        return httpx.Response(500, json={"error": "Speech synthesis failed"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    assert asyncio.run(HttpSpeechSynthesizer(BASE, client=client).synthesize("Hi")) is None


def test_http_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    with pytest.raises(SynthesisError):
        asyncio.run(HttpSpeechSynthesizer(BASE, client=client).synthesize("Hi"))
