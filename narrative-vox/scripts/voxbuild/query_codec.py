#!/usr/bin/env python3
from __future__ import annotations

"""Canonical synthesis-query model and its engine wire mappings.

The engine answers `/audio_query` with either camelCase or snake_case keys
for the accent-phrase list and mora lengths. `parse_query` folds both into
one frozen dataclass tree. `to_engine_synthesis_payload` walks the tree back
out in the shape `/synthesis` expects; `query_to_dict` writes the camelCase
form project files carry.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from .errors import MalformedQueryError


ENGINE_DEFAULT_SAMPLING_RATE = "engineDefault"
DEFAULT_ENGINE_OUTPUT_SAMPLING_RATE = 24000


@dataclass(frozen=True)
class Mora:
    text: str
    vowel: str
    vowel_length: float
    pitch: float
    consonant: Optional[str] = None
    consonant_length: Optional[float] = None


@dataclass(frozen=True)
class AccentPhrase:
    moras: Tuple[Mora, ...]
    accent: int
    pause_mora: Optional[Mora] = None
    is_interrogative: Optional[bool] = None


@dataclass(frozen=True)
class SynthesisQuery:
    accent_phrases: Tuple[AccentPhrase, ...]
    speed_scale: float = 1.0
    pitch_scale: float = 0.0
    intonation_scale: float = 1.0
    volume_scale: float = 1.0
    pause_length_scale: float = 1.0
    pre_phoneme_length: float = 0.1
    post_phoneme_length: float = 0.1
    output_sampling_rate: Union[int, str] = ENGINE_DEFAULT_SAMPLING_RATE
    output_stereo: bool = False
    kana: Optional[str] = None


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _number(value: Any, default: float) -> float:
    return value if _is_number(value) else default


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    """Return the first non-None value among alternative spellings of a key."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _parse_mora(raw: Mapping[str, Any]) -> Mora:
    text = raw.get("text")
    vowel = raw.get("vowel")
    consonant = raw.get("consonant")
    consonant_length = _first_present(raw, "consonantLength", "consonant_length")
    return Mora(
        text="" if text is None else str(text),
        vowel="" if vowel is None else str(vowel),
        vowel_length=_number(_first_present(raw, "vowelLength", "vowel_length"), 0),
        pitch=_number(raw.get("pitch"), 0),
        consonant=consonant if isinstance(consonant, str) else None,
        consonant_length=consonant_length if _is_number(consonant_length) else None,
    )


def _parse_accent_phrase(raw: Mapping[str, Any]) -> AccentPhrase:
    moras = raw.get("moras")
    pause_mora = _first_present(raw, "pauseMora", "pause_mora")
    is_interrogative: Optional[bool] = None
    for key in ("isInterrogative", "is_interrogative"):
        if isinstance(raw.get(key), bool):
            is_interrogative = raw[key]
            break
    accent = raw.get("accent")
    return AccentPhrase(
        moras=tuple(_parse_mora(_as_mapping(m)) for m in moras) if isinstance(moras, list) else (),
        accent=accent if _is_number(accent) else 1,
        pause_mora=_parse_mora(pause_mora) if isinstance(pause_mora, Mapping) else None,
        is_interrogative=is_interrogative,
    )


def _parse_sampling_rate(value: Any) -> Union[int, str]:
    if value == ENGINE_DEFAULT_SAMPLING_RATE:
        return ENGINE_DEFAULT_SAMPLING_RATE
    if _is_number(value) and value > 0 and float(value).is_integer():
        return int(value)
    return ENGINE_DEFAULT_SAMPLING_RATE


def parse_query(raw: Any) -> SynthesisQuery:
    """Fold a query object in either naming convention into `SynthesisQuery`.

    Missing or non-numeric scalars fall back to engine defaults. No content
    validation happens here; see `normalize_query_response`.
    """
    source = _as_mapping(raw)
    phrases = _first_present(source, "accentPhrases", "accent_phrases")
    kana = source.get("kana")
    output_stereo = source.get("outputStereo")
    return SynthesisQuery(
        accent_phrases=(
            tuple(_parse_accent_phrase(_as_mapping(p)) for p in phrases) if isinstance(phrases, list) else ()
        ),
        speed_scale=_number(source.get("speedScale"), 1),
        pitch_scale=_number(source.get("pitchScale"), 0),
        intonation_scale=_number(source.get("intonationScale"), 1),
        volume_scale=_number(source.get("volumeScale"), 1),
        pause_length_scale=_number(source.get("pauseLengthScale"), 1),
        pre_phoneme_length=_number(source.get("prePhonemeLength"), 0.1),
        post_phoneme_length=_number(source.get("postPhonemeLength"), 0.1),
        output_sampling_rate=_parse_sampling_rate(source.get("outputSamplingRate")),
        output_stereo=output_stereo if isinstance(output_stereo, bool) else False,
        kana=kana if isinstance(kana, str) else None,
    )


def normalize_query_response(raw: Any) -> SynthesisQuery:
    """Normalize an `/audio_query` response body.

    Raises `MalformedQueryError` when the engine produced no accent phrases,
    which means it could not segment the text.
    """
    query = parse_query(raw)
    if not query.accent_phrases:
        raise MalformedQueryError("Engine audio_query produced empty accent phrases")
    return query


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    return name


def _mora_to_dict(mora: Mora, key: Callable[[str], str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "text": mora.text,
        "vowel": mora.vowel,
        key("vowel_length"): mora.vowel_length,
        "pitch": mora.pitch,
    }
    if mora.consonant is not None:
        out["consonant"] = mora.consonant
    if mora.consonant_length is not None:
        out[key("consonant_length")] = mora.consonant_length
    return out


def _accent_phrase_to_dict(phrase: AccentPhrase, key: Callable[[str], str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "moras": [_mora_to_dict(m, key) for m in phrase.moras],
        "accent": phrase.accent,
    }
    if phrase.pause_mora is not None:
        out[key("pause_mora")] = _mora_to_dict(phrase.pause_mora, key)
    if phrase.is_interrogative is not None:
        out[key("is_interrogative")] = phrase.is_interrogative
    return out


def _scalars_to_dict(query: SynthesisQuery) -> Dict[str, Any]:
    return {
        "speedScale": query.speed_scale,
        "pitchScale": query.pitch_scale,
        "intonationScale": query.intonation_scale,
        "volumeScale": query.volume_scale,
        "pauseLengthScale": query.pause_length_scale,
        "prePhonemeLength": query.pre_phoneme_length,
        "postPhonemeLength": query.post_phoneme_length,
        "outputSamplingRate": query.output_sampling_rate,
        "outputStereo": query.output_stereo,
    }


def query_to_dict(query: SynthesisQuery) -> Dict[str, Any]:
    """Serialize a canonical query in project-file (camelCase) form.

    The `engineDefault` sampling-rate sentinel is kept as is.
    """
    out: Dict[str, Any] = {"accentPhrases": [_accent_phrase_to_dict(p, _camel) for p in query.accent_phrases]}
    out.update(_scalars_to_dict(query))
    if query.kana is not None:
        out["kana"] = query.kana
    return out


def to_engine_synthesis_payload(query: SynthesisQuery) -> Dict[str, Any]:
    """Serialize a canonical query into the `/synthesis` request body."""
    sampling_rate = query.output_sampling_rate
    if sampling_rate == ENGINE_DEFAULT_SAMPLING_RATE:
        sampling_rate = DEFAULT_ENGINE_OUTPUT_SAMPLING_RATE
    payload: Dict[str, Any] = {"accent_phrases": [_accent_phrase_to_dict(p, _snake) for p in query.accent_phrases]}
    payload.update(_scalars_to_dict(query))
    payload["outputSamplingRate"] = sampling_rate
    if query.kana is not None:
        payload["kana"] = query.kana
    return payload


def count_moras(query: SynthesisQuery) -> int:
    return sum(len(p.moras) for p in query.accent_phrases)
