from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator, Final

import numpy as np

PCM16_MAX: Final[int] = 32767
PCM16_MIN: Final[int] = -32768
MEDIA_ENCODING: Final[str] = "pcm"


def encode_pcm16_frame(frame: np.ndarray) -> bytes:
    """Float samples in [-1, 1] to signed 16-bit little-endian PCM.

    Out-of-range samples are clamped first, so 1.5 encodes as 32767 rather
    than wrapping. Negative samples scale by 32768 and positive ones by 32767,
    which maps -1.0 and +1.0 onto the two extremes of the int16 range.
    """
    samples = np.clip(np.asarray(frame, dtype=np.float64).reshape(-1), -1.0, 1.0)
    scaled = np.where(samples < 0, samples * -PCM16_MIN, samples * PCM16_MAX)
    quantized = np.clip(np.rint(scaled), PCM16_MIN, PCM16_MAX)
    return quantized.astype("<i2").tobytes()


def decode_pcm16(chunk: bytes) -> np.ndarray:
    pcm = np.frombuffer(chunk, dtype="<i2").astype(np.float32)
    return np.where(pcm < 0, pcm / -PCM16_MIN, pcm / PCM16_MAX).astype(np.float32)


def resample_pcm16(chunk: bytes, source_rate: int, target_rate: int) -> bytes:
    if source_rate == target_rate or not chunk:
        return chunk
    pcm = np.frombuffer(chunk, dtype="<i2").astype(np.float32)
    target_len = max(1, int(round(pcm.shape[0] * target_rate / source_rate)))
    src_x = np.linspace(0.0, 1.0, num=pcm.shape[0], endpoint=False)
    dst_x = np.linspace(0.0, 1.0, num=target_len, endpoint=False)
    resampled = np.interp(dst_x, src_x, pcm)
    return np.clip(np.rint(resampled), PCM16_MIN, PCM16_MAX).astype("<i2").tobytes()


async def encode_audio_frames(frames: AsyncIterable[np.ndarray], sample_rate: int) -> AsyncIterator[bytes]:
    """One encoded chunk per input frame.

    Each call returns a fresh generator bound to ``frames``, so a new
    transcription session starts a new encoding pass. Frames longer than one
    second of audio are treated as malformed and dropped.
    """
    dropped = 0
    async for frame in frames:
        samples = np.asarray(frame).reshape(-1)
        if samples.shape[0] > sample_rate:
            dropped += 1
            logging.debug(
                "audio_frame_dropped length=%d sample_rate=%d dropped_total=%d",
                samples.shape[0],
                sample_rate,
                dropped,
            )
            continue
        yield encode_pcm16_frame(samples)
