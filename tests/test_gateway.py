import numpy as np
import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from assistant.config import Settings
from gateway.messages import to_service_message
from gateway.server import create_app, to_wire
from inference.audio import decode_samples, encode_samples
from inference.types import CapabilityKind

from conftest import FakeGenerator, FakeSynth, FakeTranscriber, write_voice

STREAMED = ("state", "partial", "audio_chunk", "complete", "error")


@pytest.fixture
def settings(tmp_path):
    write_voice(tmp_path / "voice_styles", "M3")
    return Settings(_env_file=None, auth_token="secret", tts_assets_dir=tmp_path / "onnx")


@pytest_asyncio.fixture
async def client(settings):
    client = TestClient(TestServer(create_app(settings)))
    await client.start_server()
    yield client
    await client.close()


@pytest_asyncio.fixture
async def fake_client(settings):
    factories = {
        CapabilityKind.TRANSCRIPTION: lambda progress: FakeTranscriber("hello there"),
        CapabilityKind.GENERATION: lambda progress: FakeGenerator(),
        CapabilityKind.SYNTHESIS: lambda progress: FakeSynth(),
    }
    client = TestClient(TestServer(create_app(settings, factories=factories)))
    await client.start_server()
    yield client
    await client.close()


async def say_hello(client):
    ws = await client.ws_connect("/ws")
    await ws.send_json({"type": "hello", "token": "secret"})
    assert (await ws.receive_json())["type"] == "hello_ack"
    return ws


async def collect(ws, done):
    """Read events until done(event) holds. Returns them all."""
    events = []
    while True:
        event = await ws.receive_json(timeout=5)
        events.append(event)
        if done(event):
            return events


def test_audio_events_go_out_as_base64():
    samples = np.array([0.5, -0.5], dtype=np.float32)
    wire = to_wire({"type": "audio_chunk", "samples": samples, "sample_rate": 44100})
    assert wire["sample_rate"] == 44100
    np.testing.assert_array_equal(decode_samples(wire["samples"]), samples)
    assert to_wire({"type": "partial", "text": "x"}) == {"type": "partial", "text": "x"}


@pytest.mark.asyncio
async def test_status_page(client):
    resp = await client.get("/")
    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "ok"
    assert data["resident"] is None


@pytest.mark.asyncio
async def test_hello_lists_voices_and_ping(client):
    ws = await client.ws_connect("/ws")
    await ws.send_json({"type": "hello", "token": "secret"})
    ack = await ws.receive_json()
    assert ack["type"] == "hello_ack"
    assert [v["id"] for v in ack["voices"]] == ["M3"]

    await ws.send_json({"type": "ping"})
    assert (await ws.receive_json()) == {"type": "pong"}

    await ws.send_json({"type": "dance"})
    error = await ws.receive_json()
    assert error["type"] == "error" and "Unknown type" in error["message"]

    await ws.send_json({"type": "turn"})
    error = await ws.receive_json()
    assert error["type"] == "error" and "audio" in error["message"]
    await ws.close()


@pytest.mark.asyncio
async def test_bad_token_closes(client):
    ws = await client.ws_connect("/ws")
    await ws.send_json({"type": "hello", "token": "wrong"})
    error = await ws.receive_json()
    assert error["message"] == "Bad token"
    msg = await ws.receive()
    assert ws.closed or msg.type.name in ("CLOSE", "CLOSED", "CLOSING")


@pytest.mark.asyncio
async def test_commands_require_hello(client):
    ws = await client.ws_connect("/ws")
    await ws.send_json({"type": "ping"})
    error = await ws.receive_json()
    assert error["message"] == "Say hello first"
    await ws.close()


def test_commands_are_validated():
    samples = np.array([0.1, 0.2], dtype=np.float32)
    msg = to_service_message({"type": "transcribe", "audio": encode_samples(samples), "sample_rate": 8000})
    np.testing.assert_array_equal(msg["audio"], samples)
    assert msg["sample_rate"] == 8000

    turns = [{"role": "user", "content": "hi"}]
    assert to_service_message({"type": "generate", "conversation": turns})["conversation"] == turns
    assert to_service_message({"type": "generate", "text": "hi"})["conversation"] == "hi"

    with pytest.raises(ValueError):
        to_service_message({"type": "synthesize", "text": ""})
    with pytest.raises(ValueError):
        to_service_message({"type": "generate", "conversation": [{"role": "robot", "content": "x"}]})
    with pytest.raises(ValueError):
        to_service_message({"type": "transcribe", "audio": encode_samples(samples), "sample_rate": 0})


@pytest.mark.asyncio
async def test_turn_streams_every_stage_in_order(fake_client):
    ws = await say_hello(fake_client)
    audio = encode_samples(np.ones(160, dtype=np.float32))
    await ws.send_json({"type": "turn", "audio": audio, "sample_rate": 16000, "voice": "M3"})
    events = await collect(ws, lambda e: e == {"type": "state", "state": "idle"})

    streamed = [e for e in events if e["type"] in STREAMED]
    summary = [(e["type"], e.get("state") or e.get("task") or e.get("text")) for e in streamed]
    assert summary == [
        ("state", "transcribing"),
        ("partial", "transcribe"),
        ("partial", "transcribe"),
        ("complete", "transcribe"),
        ("state", "generating"),
        ("partial", "generate"),
        ("partial", "generate"),
        ("partial", "generate"),
        ("complete", "generate"),
        ("state", "synthesizing"),
        ("audio_chunk", None),
        ("complete", "synthesize"),
        ("state", "idle"),
    ]
    assert streamed[3]["text"] == "hello there"
    assert streamed[8]["text"] == "Hi there."
    chunk = streamed[10]
    assert chunk["sample_rate"] == 1000
    assert decode_samples(chunk["samples"]).size == 100

    lifecycle = [(e["kind"], e["phase"]) for e in events if e["type"] == "lifecycle"]
    assert lifecycle[:2] == [("stt", "initializing"), ("stt", "ready")]
    assert ("stt", "released") in lifecycle
    await ws.close()


@pytest.mark.asyncio
async def test_commands_back_to_back_run_one_at_a_time(fake_client):
    ws = await say_hello(fake_client)
    audio = encode_samples(np.ones(160, dtype=np.float32))
    await ws.send_json({"type": "transcribe", "audio": audio})
    await ws.send_json({"type": "synthesize", "text": "Hello.", "voice": "M3"})
    events = await collect(ws, lambda e: e["type"] == "complete" and e["task"] == "synthesize")

    assert not [e for e in events if e["type"] == "error"]
    streamed = [(e["type"], e.get("task")) for e in events if e["type"] in STREAMED]
    assert streamed == [
        ("partial", "transcribe"),
        ("partial", "transcribe"),
        ("complete", "transcribe"),
        ("audio_chunk", None),
        ("complete", "synthesize"),
    ]
    transcript = next(e for e in events if e["type"] == "complete" and e["task"] == "transcribe")
    assert transcript["chunks"] == [{"text": "hello there", "timestamp": [0.0, 1.0]}]
    await ws.close()
