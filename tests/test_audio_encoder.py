from __future__ import annotations

import asyncio
import unittest

import numpy as np

from audio_encoder import decode_pcm16, encode_audio_frames, encode_pcm16_frame, resample_pcm16


async def _frames(*frames: np.ndarray):
    for frame in frames:
        yield frame


async def _collect(iterator) -> list[bytes]:
    return [chunk async for chunk in iterator]


class EncodePcm16FrameTests(unittest.TestCase):
    def test_out_of_range_samples_clamp_instead_of_wrapping(self) -> None:
        encoded = encode_pcm16_frame(np.array([1.5, -1.5], dtype=np.float32))
        self.assertEqual(np.frombuffer(encoded, dtype="<i2").tolist(), [32767, -32768])

    def test_extremes_map_to_int16_range(self) -> None:
        encoded = encode_pcm16_frame(np.array([1.0, -1.0, 0.0, 0.5], dtype=np.float32))
        self.assertEqual(np.frombuffer(encoded, dtype="<i2").tolist(), [32767, -32768, 0, 16384])

    def test_output_is_two_bytes_per_sample_little_endian(self) -> None:
        encoded = encode_pcm16_frame(np.array([1.0 / 32767.0], dtype=np.float32))
        self.assertEqual(encoded, b"\x01\x00")

    def test_decode_inverts_within_quantization(self) -> None:
        samples = np.linspace(-1.0, 1.0, 64, dtype=np.float32)
        decoded = decode_pcm16(encode_pcm16_frame(samples))
        self.assertTrue(np.allclose(decoded, samples, atol=1.0 / 32767.0))


class ResamplePcm16Tests(unittest.TestCase):
    def test_same_rate_is_passthrough(self) -> None:
        chunk = encode_pcm16_frame(np.zeros(10, dtype=np.float32))
        self.assertIs(resample_pcm16(chunk, 16000, 16000), chunk)

    def test_upsampling_scales_length(self) -> None:
        chunk = encode_pcm16_frame(np.linspace(-0.5, 0.5, 160, dtype=np.float32))
        resampled = resample_pcm16(chunk, 16000, 24000)
        self.assertEqual(len(resampled), 240 * 2)


class EncodeAudioFramesTests(unittest.TestCase):
    def test_one_chunk_per_frame(self) -> None:
        chunks = asyncio.run(
            _collect(encode_audio_frames(_frames(np.zeros(4), np.ones(2) * 0.5), sample_rate=8000))
        )
        self.assertEqual([len(chunk) for chunk in chunks], [8, 4])

    def test_frames_longer_than_one_second_are_dropped(self) -> None:
        chunks = asyncio.run(
            _collect(encode_audio_frames(_frames(np.zeros(11), np.zeros(10)), sample_rate=10))
        )
        self.assertEqual(len(chunks), 1)
        self.assertEqual(len(chunks[0]), 20)


if __name__ == "__main__":
    unittest.main()
