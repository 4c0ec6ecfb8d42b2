#!/usr/bin/env python3
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from .query_codec import SynthesisQuery


@dataclass(frozen=True)
class VoiceSelector:
    """Engine voice/style that renders an utterance."""

    engine_id: str
    speaker_id: str
    style_id: int

    def to_manifest(self) -> Dict[str, object]:
        return {
            "engineId": self.engine_id,
            "speakerId": self.speaker_id,
            "styleId": self.style_id,
        }


EMPTY_VOICE = VoiceSelector(engine_id="", speaker_id="", style_id=0)


@dataclass(frozen=True)
class Utterance:
    """One unit of text addressed by a stable audio key.

    `missing` marks a key listed in the track order that has no item behind
    it; such utterances fail at the query stage without any engine call.
    """

    audio_key: str
    text: str
    voice: VoiceSelector
    query: Optional[SynthesisQuery] = None
    missing: bool = False

    @staticmethod
    def missing_item(audio_key: str) -> "Utterance":
        return Utterance(audio_key=audio_key, text="", voice=EMPTY_VOICE, missing=True)
