"""Inbound WebSocket command payloads.

Each command is validated with a Pydantic model before it reaches the
inference service. A ValidationError is a ValueError, so the gateway
reports it like any other bad request.
"""

from typing import Literal, Optional, Union

import numpy as np
from pydantic import BaseModel, Field

from inference.audio import decode_samples


class ChatTurn(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str = ""


class AudioCommand(BaseModel):
    """transcribe / turn: base64 little-endian float32 mono audio."""

    audio: str = Field(min_length=1)
    sample_rate: int = Field(16000, gt=0)
    language: Optional[str] = None
    voice: Optional[str] = None

    def samples(self) -> np.ndarray:
        return decode_samples(self.audio)


class GenerateCommand(BaseModel):
    conversation: Union[str, list[ChatTurn]] = ""
    text: str = ""

    def turns(self) -> Union[str, list[dict]]:
        if isinstance(self.conversation, list) and self.conversation:
            return [t.model_dump() for t in self.conversation]
        if isinstance(self.conversation, str) and self.conversation.strip():
            return self.conversation
        if not self.text.strip():
            raise ValueError("Nothing to generate from")
        return self.text


class SynthesizeCommand(BaseModel):
    text: str = Field(min_length=1)
    voice: Optional[str] = None


def to_service_message(msg: dict) -> dict:
    """Validate a raw command and turn it into an InferenceService message."""
    kind = msg.get("type")
    if kind == "transcribe":
        cmd = AudioCommand.model_validate(msg)
        return {"type": kind, "audio": cmd.samples(), "language": cmd.language,
                "sample_rate": cmd.sample_rate}
    if kind == "generate":
        return {"type": kind, "conversation": GenerateCommand.model_validate(msg).turns()}
    if kind == "synthesize":
        cmd = SynthesizeCommand.model_validate(msg)
        return {"type": kind, "text": cmd.text, "voice": cmd.voice}
    return {"type": kind}
