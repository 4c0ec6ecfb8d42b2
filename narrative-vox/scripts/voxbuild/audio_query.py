#!/usr/bin/env python3
from __future__ import annotations

import json
from dataclasses import dataclass

from .engine_client import EngineClient
from .errors import (
    ERROR_KIND_MALFORMED_RESPONSE,
    ERROR_KIND_MISSING_ITEM,
    STAGE_AUDIO_QUERY,
    EngineRequestError,
    MalformedQueryError,
)
from .logging_utils import Logger
from .query_codec import SynthesisQuery, count_moras, normalize_query_response
from .utterance import Utterance


QUERY_SOURCE_SUPPLIED = "supplied"
QUERY_SOURCE_ENGINE = "engine"


@dataclass(frozen=True)
class ResolvedQuery:
    query: SynthesisQuery
    source: str
    attempts: int


@dataclass
class AudioQueryResolver:
    """Produce the synthesis query for an utterance.

    A query carried by the utterance is used as-is and costs no engine call;
    otherwise the engine's `/audio_query` endpoint is asked for one.
    """

    client: EngineClient
    logger: Logger

    def resolve(self, utterance: Utterance) -> ResolvedQuery:
        if utterance.missing:
            raise EngineRequestError(
                f"Missing audio item for key: {utterance.audio_key}",
                stage=STAGE_AUDIO_QUERY,
                audio_key=utterance.audio_key,
                endpoint="",
                attempts=1,
                error_kind=ERROR_KIND_MISSING_ITEM,
            )
        if utterance.query is not None:
            return ResolvedQuery(query=utterance.query, source=QUERY_SOURCE_SUPPLIED, attempts=0)

        response = self.client.request(
            "/audio_query",
            stage=STAGE_AUDIO_QUERY,
            audio_key=utterance.audio_key,
            params={"text": utterance.text, "speaker": utterance.voice.style_id},
        )
        try:
            query = normalize_query_response(json.loads(response.body.decode("utf-8")))
        except (ValueError, MalformedQueryError) as exc:
            # JSONDecodeError and UnicodeDecodeError are both ValueError.
            raise EngineRequestError(
                f"Engine audio_query returned an unusable query for {utterance.audio_key}: {exc}",
                stage=STAGE_AUDIO_QUERY,
                audio_key=utterance.audio_key,
                endpoint=response.endpoint,
                attempts=response.attempts,
                status_code=response.status_code,
                error_kind=ERROR_KIND_MALFORMED_RESPONSE,
            ) from exc
        self.logger.debug(
            "audio_query_resolved",
            audio_key=utterance.audio_key,
            attempts=response.attempts,
            accent_phrases=len(query.accent_phrases),
            moras=count_moras(query),
        )
        return ResolvedQuery(query=query, source=QUERY_SOURCE_ENGINE, attempts=response.attempts)
