#!/usr/bin/env python3
from __future__ import annotations

"""RIFF/WAVE chunk parsing and same-format concatenation.

Works purely on byte buffers; nothing here knows about utterances.
"""

import struct
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import ERROR_KIND_INVALID_INPUT, WavFormatError, WavMergeError


MIN_WAV_BYTES = 44
FMT_CHUNK_MIN_BYTES = 16
_CHUNK_HEADER = struct.Struct("<4sI")
_FMT_FIELDS = struct.Struct("<HHIIHH")


@dataclass(frozen=True)
class WavFormat:
    audio_format: int
    num_channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int

    def describe(self) -> str:
        return (
            f"format={self.audio_format} channels={self.num_channels} rate={self.sample_rate} "
            f"bits={self.bits_per_sample}"
        )


@dataclass(frozen=True)
class AudioSegment:
    fmt_chunk: bytes
    data_chunk: bytes
    format: WavFormat


def parse_wav(data: bytes) -> AudioSegment:
    """Locate the `fmt ` and `data` chunks of a WAV buffer.

    Unknown chunks are skipped, odd-sized chunks consume one pad byte, and a
    chunk whose declared size runs past the buffer ends the walk.
    """
    buf = bytes(data)
    if len(buf) < MIN_WAV_BYTES:
        raise WavFormatError("WAV data is too short")
    if buf[0:4] != b"RIFF" or buf[8:12] != b"WAVE":
        raise WavFormatError("Invalid WAV header")

    fmt_chunk = None
    data_chunk = None
    wav_format = None
    offset = 12
    while offset + _CHUNK_HEADER.size <= len(buf):
        chunk_id, chunk_size = _CHUNK_HEADER.unpack_from(buf, offset)
        start = offset + _CHUNK_HEADER.size
        end = start + chunk_size
        if end > len(buf):
            break
        if chunk_id == b"fmt ":
            if chunk_size < FMT_CHUNK_MIN_BYTES:
                raise WavFormatError("Invalid WAV fmt chunk")
            fmt_chunk = buf[start:end]
            wav_format = WavFormat(*_FMT_FIELDS.unpack_from(fmt_chunk, 0))
        elif chunk_id == b"data":
            data_chunk = buf[start:end]
        offset = end + (chunk_size & 1)

    if fmt_chunk is None or data_chunk is None or wav_format is None:
        raise WavFormatError("WAV fmt/data chunk was not found")
    return AudioSegment(fmt_chunk=fmt_chunk, data_chunk=data_chunk, format=wav_format)


def _chunk(chunk_id: bytes, content: bytes) -> bytes:
    """Serialize one chunk; the pad byte after odd-sized content is not counted in its size."""
    pad = b"\x00" if len(content) & 1 else b""
    return _CHUNK_HEADER.pack(chunk_id, len(content)) + content + pad


def merge_wav_segments(segments: Sequence[AudioSegment]) -> bytes:
    """Concatenate segment payloads into one WAV container, in input order.

    The `fmt ` chunk is taken from the first segment; every other segment
    must carry an identical format descriptor.
    """
    if not segments:
        raise WavMergeError("No WAV segments to merge", error_kind=ERROR_KIND_INVALID_INPUT)
    first = segments[0]
    for index, segment in enumerate(segments[1:], start=1):
        if segment.format != first.format:
            raise WavMergeError(
                "WAV segments have different audio formats and cannot be merged "
                f"(segment 0: {first.format.describe()}; segment {index}: {segment.format.describe()})"
            )

    payload = b"".join(segment.data_chunk for segment in segments)
    body = b"WAVE" + _chunk(b"fmt ", first.fmt_chunk) + _chunk(b"data", payload)
    return b"RIFF" + struct.pack("<I", len(body)) + body


def merge_wav_bytes(chunks: Iterable[bytes]) -> bytes:
    return merge_wav_segments([parse_wav(chunk) for chunk in chunks])
