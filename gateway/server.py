"""Gateway server: HTTP status + WebSocket command channel."""

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path

from aiohttp import web
from dotenv import load_dotenv

load_dotenv()  # Must be before settings import so they see .env vars

from assistant.config import Settings, settings
from assistant.orchestrator import SessionOrchestrator
from gateway.messages import AudioCommand, to_service_message
from inference.arbiter import ResourceArbiter
from inference.audio import encode_samples
from inference.conversation import ConversationHistory
from inference.service import InferenceService, error_event

log = logging.getLogger("gateway")

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"

SETTINGS = web.AppKey("settings", Settings)
ARBITER = web.AppKey("arbiter", ResourceArbiter)
SERVICE = web.AppKey("service", InferenceService)
FACTORIES = web.AppKey("factories", dict)


def to_wire(event: dict) -> dict:
    """Make an event JSON-safe: audio goes out as base64 float32."""
    if event.get("type") == "audio_chunk":
        return {
            "type": "audio_chunk",
            "samples": encode_samples(event["samples"]),
            "sample_rate": event["sample_rate"],
        }
    return event


# ── HTTP routes ───────────────────────────────────────────────

async def handle_index(request: web.Request) -> web.Response:
    service: InferenceService = request.app[SERVICE]
    return web.json_response({"status": "ok", **service.status()})


# ── WebSocket handler ─────────────────────────────────────────

async def _sender(ws: web.WebSocketResponse, queue: asyncio.Queue):
    """Forward queued events to the socket in order."""
    while True:
        event = await queue.get()
        if event is None:
            break
        if ws.closed:
            continue
        try:
            await ws.send_json(to_wire(event))
        except ConnectionResetError:
            log.warning("Client went away, dropping %s", event.get("type"))


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    app = request.app
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    log.info("WebSocket connected from %s", request.remote)

    queue: asyncio.Queue = asyncio.Queue()
    sender = asyncio.create_task(_sender(ws, queue))
    service = InferenceService(
        transcription=app[SETTINGS].transcription_config(),
        generation=app[SETTINGS].generation_config(),
        synthesis=app[SETTINGS].synthesis_config(),
        arbiter=app[ARBITER],
        emit=queue.put_nowait,
        factories=app[FACTORIES],
    )
    history = ConversationHistory(service.generation.system_prompt, app[SETTINGS].max_history_turns)
    orchestrator = SessionOrchestrator(service, history, language=app[SETTINGS].speech_language)
    authed = False
    tasks = set()

    def spawn(coro):
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def run_turn(audio, sample_rate):
        try:
            await orchestrator.process_audio(audio, sample_rate)
        except Exception as e:
            # Already reported as an error event by the orchestrator
            log.error("Turn failed: %s", e)

    async for raw in ws:
        if raw.type != web.WSMsgType.TEXT:
            continue
        try:
            msg = json.loads(raw.data)
        except json.JSONDecodeError:
            await queue.put({"type": "error", "kind": "unclassified", "message": "Invalid JSON"})
            continue

        msg_type = msg.get("type")
        log.debug("WS recv: %s", msg_type)

        if msg_type == "hello":
            if msg.get("token", "") != app[SETTINGS].auth_token:
                await ws.send_json({"type": "error", "kind": "unclassified", "message": "Bad token"})
                await ws.close()
                break
            authed = True
            await queue.put({
                "type": "hello_ack",
                "voices": [asdict(v) for v in service.list_voices()],
                **service.status(),
            })
            continue

        if not authed:
            await ws.send_json({"type": "error", "kind": "unclassified", "message": "Say hello first"})
            continue

        if msg_type == "ping":
            await queue.put({"type": "pong"})

        elif msg_type in ("interrupt", "reset"):
            # Handled inline so they reach an in-flight generation
            if msg_type == "reset":
                orchestrator.reset()
            else:
                service.interrupt()

        elif msg_type == "turn":
            try:
                cmd = AudioCommand.model_validate(msg)
                audio = cmd.samples()
            except ValueError as e:
                await queue.put(error_event(e))
                continue
            if orchestrator.busy:
                log.info("Turn in progress, dropping segment")
                continue
            if "voice" in msg:
                orchestrator.voice = cmd.voice
            spawn(run_turn(audio, cmd.sample_rate))

        elif msg_type in ("transcribe", "generate", "synthesize", "preload"):
            try:
                command = to_service_message(msg)
            except ValueError as e:
                await queue.put(error_event(e))
                continue
            spawn(service.handle(command))

        else:
            await queue.put({"type": "error", "kind": "unclassified", "message": f"Unknown type: {msg_type}"})

    # Cleanup on disconnect
    service.interrupt()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    service.detach()
    await queue.put(None)
    await sender
    log.info("WebSocket disconnected")
    return ws


# ── App setup ─────────────────────────────────────────────────

async def _release_on_shutdown(app: web.Application):
    await app[ARBITER].release()


def create_app(config=None, factories=None) -> web.Application:
    app = web.Application()
    app[SETTINGS] = config or settings
    app[FACTORIES] = factories or {}
    # One accelerator, one arbiter, shared by every connection
    app[ARBITER] = ResourceArbiter()
    app[SERVICE] = InferenceService(
        transcription=app[SETTINGS].transcription_config(),
        generation=app[SETTINGS].generation_config(),
        synthesis=app[SETTINGS].synthesis_config(),
        arbiter=app[ARBITER],
        factories=app[FACTORIES],
    )
    app.router.add_get("/", handle_index)
    app.router.add_get("/ws", handle_ws)
    app.on_shutdown.append(_release_on_shutdown)
    return app


def main() -> None:
    LOG_DIR.mkdir(exist_ok=True)
    log_file = LOG_DIR / "server.log"

    fmt = logging.Formatter("%(asctime)s %(name)-12s %(levelname)-8s %(message)s")

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(fmt)

    filelog = logging.FileHandler(log_file)
    filelog.setLevel(logging.INFO)
    filelog.setFormatter(fmt)

    logging.basicConfig(level=logging.INFO, handlers=[console, filelog])

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)
    log.info("Logging to %s", log_file)

    app = create_app()
    log.info("Serving on http://0.0.0.0:%d", settings.port)
    web.run_app(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
