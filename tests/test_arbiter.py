import asyncio

import pytest

from inference.arbiter import ResourceArbiter
from inference.errors import ResourceExhaustedError
from inference.types import CapabilityKind

from conftest import FakeHandle

STT = CapabilityKind.TRANSCRIPTION
CHAT = CapabilityKind.GENERATION
TTS = CapabilityKind.SYNTHESIS


def make_setup(kind, log, **kwargs):
    def setup():
        log.append(("setup", kind))
        return FakeHandle(kind, log, **kwargs)
    return setup


@pytest.mark.asyncio
async def test_same_kind_is_free():
    log = []
    arbiter = ResourceArbiter()
    first = await arbiter.acquire(STT, make_setup(STT, log))
    second = await arbiter.acquire(STT, make_setup(STT, log))
    assert first is second
    assert log == [("setup", STT)]


@pytest.mark.asyncio
async def test_switch_disposes_before_setup():
    log = []
    arbiter = ResourceArbiter()
    first = await arbiter.acquire(STT, make_setup(STT, log))
    await arbiter.acquire(CHAT, make_setup(CHAT, log))
    assert log == [("setup", STT), ("dispose", STT), ("setup", CHAT)]
    assert first.closed
    assert arbiter.resident_kind == CHAT


@pytest.mark.asyncio
async def test_at_most_one_resident_across_sequence():
    log = []
    arbiter = ResourceArbiter()
    live = set()
    for kind in (STT, CHAT, TTS, TTS, STT, CHAT):
        handle = await arbiter.acquire(kind, make_setup(kind, log))
        live = {h for h in live if not h.closed} | {handle}
        assert len(live) == 1


@pytest.mark.asyncio
async def test_closed_resident_is_rebuilt():
    log = []
    arbiter = ResourceArbiter()
    first = await arbiter.acquire(TTS, make_setup(TTS, log))
    first.dispose()
    second = await arbiter.acquire(TTS, make_setup(TTS, log))
    assert second is not first
    assert not second.closed


@pytest.mark.asyncio
async def test_dispose_failure_is_only_a_warning(caplog):
    log = []
    arbiter = ResourceArbiter()
    await arbiter.acquire(STT, make_setup(STT, log, fail_dispose=True))
    handle = await arbiter.acquire(CHAT, make_setup(CHAT, log))
    assert handle.kind == CHAT
    assert "Cleanup warning" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("exc", [
    MemoryError(),
    RuntimeError("CUDA out of memory. Tried to allocate 2.00 GiB"),
    RuntimeError("std::bad_alloc"),
    RuntimeError("model requires more system memory (8 GiB) than is available"),
])
async def test_out_of_memory_is_classified(exc):
    arbiter = ResourceArbiter()
    await arbiter.acquire(STT, make_setup(STT, []))

    def setup():
        raise exc

    with pytest.raises(ResourceExhaustedError) as info:
        await arbiter.acquire(TTS, setup)
    assert "close other applications using the accelerator" in str(info.value).lower()
    assert info.value.__cause__ is exc
    # Residency was cleared before the error surfaced
    assert arbiter.resident_kind is None
    assert arbiter.resident is None


@pytest.mark.asyncio
async def test_other_errors_propagate_unchanged():
    arbiter = ResourceArbiter()

    def setup():
        raise FileNotFoundError("vocoder.onnx")

    with pytest.raises(FileNotFoundError):
        await arbiter.acquire(TTS, setup)


@pytest.mark.asyncio
async def test_concurrent_acquires_are_serialized():
    log = []
    arbiter = ResourceArbiter()
    results = await asyncio.gather(
        arbiter.acquire(STT, make_setup(STT, log)),
        arbiter.acquire(STT, make_setup(STT, log)),
        arbiter.acquire(CHAT, make_setup(CHAT, log)),
    )
    assert results[0] is results[1]
    assert log == [("setup", STT), ("dispose", STT), ("setup", CHAT)]


@pytest.mark.asyncio
async def test_lifecycle_events_and_release():
    events = []
    arbiter = ResourceArbiter(on_event=lambda kind, phase: events.append((kind, phase)))
    handle = await arbiter.acquire(STT, make_setup(STT, []))
    await arbiter.release()
    assert handle.closed
    assert arbiter.resident_kind is None
    assert events == [(STT, "initializing"), (STT, "ready"), (STT, "released")]
    # Nothing resident: release is a no-op
    await arbiter.release()
    assert len(events) == 3


@pytest.mark.asyncio
async def test_lease_blocks_switch_until_released():
    log = []
    arbiter = ResourceArbiter()
    async with arbiter.use(STT, make_setup(STT, log)) as handle:
        switch = asyncio.create_task(arbiter.acquire(CHAT, make_setup(CHAT, log)))
        await asyncio.sleep(0.05)
        assert arbiter.busy
        assert not switch.done()
        assert not handle.closed
    await switch
    assert handle.closed
    assert log == [("setup", STT), ("dispose", STT), ("setup", CHAT)]


@pytest.mark.asyncio
async def test_lease_reuses_resident_handle():
    log = []
    arbiter = ResourceArbiter()
    async with arbiter.use(TTS, make_setup(TTS, log)) as first:
        pass
    async with arbiter.use(TTS, make_setup(TTS, log)) as second:
        assert second is first
    assert not arbiter.busy
    assert log == [("setup", TTS)]


@pytest.mark.asyncio
async def test_listeners_subscribe_and_unsubscribe():
    first, second = [], []
    arbiter = ResourceArbiter(on_event=lambda kind, phase: first.append(phase))

    def listener(kind, phase):
        second.append(phase)

    arbiter.subscribe(listener)
    await arbiter.acquire(STT, make_setup(STT, []))
    arbiter.unsubscribe(listener)
    arbiter.unsubscribe(listener)  # already gone: no-op
    await arbiter.release()
    assert first == ["initializing", "ready", "released"]
    assert second == ["initializing", "ready"]
