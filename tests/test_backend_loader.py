import asyncio

from backend_loader import (
    STATUS_DEGRADED,
    STATUS_INIT_FAILED,
    STATUS_LOADING,
    STATUS_READY,
    BackendLoader,
    NullSynthesizer,
    ProbeStatus,
    probe_backend,
)
from config import BackendInitConfig, NeuralVoiceConfig
from turns import SpeechBackendState

from tests.fakes import FakeSynth

FAST = BackendInitConfig(retry_delay_sec=0.0, load_timeout_sec=0.2)


class CountingFactory:
    """Fails the first `failures` calls, then returns `backend`."""

    def __init__(self, backend=None, failures=0, error=RuntimeError("backend unavailable")):
        self.backend = backend or FakeSynth()
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.backend


def make_loader(factory, init=FAST, voice=None):
    state = SpeechBackendState()
    statuses = []
    loader = BackendLoader(factory, state, init_config=init, voice_config=voice, on_status=statuses.append)
    return loader, state, statuses


def test_probe_reports_available():
    synth = FakeSynth()

    async def factory():
        return synth

    result = asyncio.run(probe_backend(factory))
    assert result.available
    assert result.status is ProbeStatus.AVAILABLE
    assert result.backend is synth


def test_probe_maps_missing_module_to_not_found():
    async def factory():
        raise ModuleNotFoundError("No module named 'neural_voice'")

    result = asyncio.run(probe_backend(factory))
    assert result.status is ProbeStatus.NOT_FOUND
    assert "neural_voice" in result.detail
    assert result.backend is None


def test_probe_maps_other_errors_to_import_error():
    async def factory():
        raise ValueError("bad key")

    result = asyncio.run(probe_backend(factory))
    assert result.status is ProbeStatus.IMPORT_ERROR
    assert result.detail == "bad key"


def test_probe_treats_none_as_import_error():
    async def factory():
        return None

    assert asyncio.run(probe_backend(factory)).status is ProbeStatus.IMPORT_ERROR


def test_probe_times_out():
    async def factory():
        await asyncio.sleep(5)

    result = asyncio.run(probe_backend(factory, timeout_sec=0.05))
    assert result.status is ProbeStatus.TIMEOUT
    assert not result.available


def test_first_attempt_success():
    factory = CountingFactory()
    loader, state, statuses = make_loader(factory)

    availability = asyncio.run(loader.initialize())

    assert availability.ready and not availability.degraded
    assert availability.backend is factory.backend
    assert availability.attempts == 1
    assert state.primary_ready and state.primary_enabled and not state.degraded
    assert statuses[0] == STATUS_LOADING
    assert statuses[-1] == STATUS_READY
    assert state.status == STATUS_READY


def test_recovers_after_transient_failures():
    factory = CountingFactory(failures=2)
    loader, state, statuses = make_loader(factory)

    availability = asyncio.run(loader.initialize())

    assert not availability.degraded
    assert state.init_attempts == 3
    assert statuses.count(STATUS_INIT_FAILED) == 2


def test_ceiling_forces_degraded_ready():
    factory = CountingFactory(failures=100)
    loader, state, statuses = make_loader(factory)

    availability = asyncio.run(loader.initialize())

    assert factory.calls == 5
    assert state.init_attempts == 5
    assert availability.ready and availability.degraded
    assert isinstance(availability.backend, NullSynthesizer)
    assert state.primary_ready and state.degraded
    assert state.primary_enabled  # auto-enabled by default
    assert statuses[-1] == STATUS_DEGRADED


def test_degraded_auto_enable_can_be_turned_off():
    factory = CountingFactory(failures=100)
    init = BackendInitConfig(retry_delay_sec=0.0, max_attempts=2, auto_enable_degraded=False)
    loader, state, _ = make_loader(factory, init=init)

    asyncio.run(loader.initialize())

    assert state.init_attempts == 2
    assert state.primary_ready and not state.primary_enabled
    assert state.set_enabled(True) is True


def test_timeouts_count_toward_ceiling():
    async def slow_factory():
        await asyncio.sleep(5)

    init = BackendInitConfig(retry_delay_sec=0.0, load_timeout_sec=0.05, max_attempts=2)
    loader, state, _ = make_loader(slow_factory, init=init)

    availability = asyncio.run(loader.initialize())

    assert state.init_attempts == 2
    assert availability.degraded


def test_model_failure_keeps_last_loaded_backend():
    class BrokenDownload(FakeSynth):
        async def download(self, voice_id, progress=None):
            raise OSError("disk full")

    synth = BrokenDownload(stored=[])
    factory = CountingFactory(backend=synth)
    loader, state, _ = make_loader(factory)

    availability = asyncio.run(loader.initialize())

    assert availability.degraded
    assert availability.backend is synth
    assert state.init_attempts == 5


def test_missing_model_is_downloaded_with_progress():
    synth = FakeSynth(stored=[])
    loader, _, statuses = make_loader(CountingFactory(backend=synth))

    asyncio.run(loader.initialize())

    assert synth.downloads == ["troy"]
    assert "Downloading voice model: 50%" in statuses
    assert "Downloading voice model: 100%" in statuses


def test_stored_model_skips_download():
    synth = FakeSynth(stored=["troy"])
    loader, _, _ = make_loader(CountingFactory(backend=synth))
    asyncio.run(loader.initialize())
    assert synth.downloads == []


def test_voice_enumeration_failure_uses_defaults():
    synth = FakeSynth(voices=RuntimeError("no voices"))
    voice = NeuralVoiceConfig()
    loader, _, _ = make_loader(CountingFactory(backend=synth), voice=voice)

    availability = asyncio.run(loader.initialize())

    assert [v["id"] for v in availability.voices] == [v.id for v in voice.voices]


def test_empty_voice_list_uses_defaults():
    synth = FakeSynth(voices=[])
    loader, _, _ = make_loader(CountingFactory(backend=synth))
    availability = asyncio.run(loader.initialize())
    assert availability.voices
    assert availability.voices[0]["id"] == "troy"


def test_initialize_is_cached():
    factory = CountingFactory()
    loader, state, _ = make_loader(factory)

    async def run_twice():
        first = await loader.initialize()
        second = await loader.initialize()
        return first, second

    first, second = asyncio.run(run_twice())
    assert first is second
    assert factory.calls == 1
    assert state.init_attempts == 1


def test_null_synthesizer_never_produces_audio():
    null = NullSynthesizer()

    async def exercise():
        return await null.synthesize("hello"), await null.voices(), await null.stored()

    assert asyncio.run(exercise()) == (None, [], [])
