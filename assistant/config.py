"""Settings for the voice loop.

Uses pydantic-settings to load from the project's .env file, with type
validation and defaults for a local Ollama + faster-whisper setup. The
inference package never reads the environment; everything it needs is
handed over as one of the config dataclasses built here.
"""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

from inference.llm import DEFAULT_SYSTEM_PROMPT, GenerationConfig
from inference.runtime import RuntimeConfig
from inference.stt import TranscriptionConfig
from inference.tts import SynthesisConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    # Ollama connection
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "qwen3:0.6b"
    ollama_timeout: float = 60.0
    keep_alive: str = "30m"
    max_new_tokens: int = 512
    temperature: float = 0.7
    top_k: int = 20
    enable_thinking: bool = False
    system_prompt: str = ""

    # Transcription
    whisper_model: str = "large-v3-turbo"
    whisper_device: str = "auto"
    whisper_compute_type: str = "default"
    speech_language: str = "en"  # not "language": LANGUAGE is a locale variable
    beam_size: int = 5

    # Synthesis
    tts_assets_dir: Path = PROJECT_ROOT / "assets" / "onnx"
    voice_styles_dir: Optional[Path] = None
    default_voice: str = "M3"
    tts_total_step: int = 10
    tts_speed: float = 1.0
    tts_seed: Optional[int] = None

    # onnxruntime
    onnx_providers: str = ""    # comma-separated, empty = auto-detect
    onnx_threads: int = 0

    # History / gateway
    max_history_turns: int = 10
    port: int = 8080
    auth_token: str = ""

    model_config = {
        "env_file": str(PROJECT_ROOT / ".env"),
        "extra": "ignore",
    }

    def runtime_config(self) -> RuntimeConfig:
        providers = tuple(p.strip() for p in self.onnx_providers.split(",") if p.strip())
        return RuntimeConfig(providers=providers or None, intra_op_threads=self.onnx_threads)

    def transcription_config(self) -> TranscriptionConfig:
        return TranscriptionConfig(
            model=self.whisper_model,
            device=self.whisper_device,
            compute_type=self.whisper_compute_type,
            language=self.speech_language,
            beam_size=self.beam_size,
        )

    def generation_config(self) -> GenerationConfig:
        return GenerationConfig(
            url=self.ollama_url.rstrip("/"),
            model=self.ollama_model,
            system_prompt=self.system_prompt or DEFAULT_SYSTEM_PROMPT,
            timeout=self.ollama_timeout,
            keep_alive=self.keep_alive,
            max_new_tokens=self.max_new_tokens,
            temperature=self.temperature,
            top_k=self.top_k,
            enable_thinking=self.enable_thinking,
        )

    def synthesis_config(self) -> SynthesisConfig:
        return SynthesisConfig(
            assets_dir=self.tts_assets_dir,
            voice_styles_dir=self.voice_styles_dir,
            default_voice=self.default_voice,
            language=self.speech_language,
            total_step=self.tts_total_step,
            speed=self.tts_speed,
            seed=self.tts_seed,
            runtime=self.runtime_config(),
        )


settings = Settings()
