#!/usr/bin/env python3
from __future__ import annotations

import json
from dataclasses import dataclass

from .engine_client import EngineClient
from .errors import STAGE_SYNTHESIS
from .query_codec import SynthesisQuery, to_engine_synthesis_payload
from .utterance import VoiceSelector


@dataclass(frozen=True)
class SynthesisResult:
    audio_bytes: bytes
    attempts: int


@dataclass
class SynthesisExecutor:
    """Render a canonical query to audio via the engine's `/synthesis` endpoint."""

    client: EngineClient

    def synthesize(self, voice: VoiceSelector, query: SynthesisQuery, *, audio_key: str) -> SynthesisResult:
        body = json.dumps(to_engine_synthesis_payload(query), ensure_ascii=False).encode("utf-8")
        response = self.client.request(
            "/synthesis",
            stage=STAGE_SYNTHESIS,
            audio_key=audio_key,
            params={"speaker": voice.style_id},
            body=body,
            content_type="application/json",
        )
        return SynthesisResult(audio_bytes=response.body, attempts=response.attempts)
