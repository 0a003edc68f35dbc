from __future__ import annotations

import itertools
import logging
import threading
import wave
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

import numpy as np

from audio_encoder import decode_pcm16, resample_pcm16
from config_utils import read_float_env, read_int_env

_track_ids = itertools.count(1)


class TrackType(str, Enum):
    FILE = "file"
    MIC = "mic"
    SILENT = "silent"
    SYNTHESIZED = "synthesized"


class TrackSource(Protocol):
    def read(self, frame_count: int) -> np.ndarray: ...

    def close(self) -> None: ...


@dataclass(frozen=True)
class AudioTrack:
    kind: TrackType
    track_id: str
    source: TrackSource

    @classmethod
    def create(cls, kind: TrackType, source: TrackSource) -> "AudioTrack":
        return cls(kind=kind, track_id=f"{kind.value}-{next(_track_ids)}", source=source)


def load_wav_samples(path: str, target_rate: int) -> np.ndarray:
    """Mono float32 samples of a 16-bit WAV file at ``target_rate``."""
    with wave.open(str(Path(path)), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise RuntimeError(f"Only 16-bit PCM WAV files are supported: {path}")
        channels = wf.getnchannels()
        source_rate = wf.getframerate()
        raw = wf.readframes(wf.getnframes())
    pcm = np.frombuffer(raw, dtype="<i2")
    if channels > 1:
        pcm = pcm.reshape(-1, channels).mean(axis=1).astype("<i2")
    resampled = resample_pcm16(pcm.tobytes(), source_rate, target_rate)
    return decode_pcm16(resampled)


class SilenceSource:
    def read(self, frame_count: int) -> np.ndarray:
        return np.zeros(frame_count, dtype=np.float32)

    def close(self) -> None:
        return None


class FileTrackSource:
    def __init__(self, path: str, sample_rate: int, loop: bool = True) -> None:
        self.path = path
        self._samples = load_wav_samples(path, sample_rate)
        self._loop = loop
        self._position = 0
        self._lock = threading.Lock()

    def read(self, frame_count: int) -> np.ndarray:
        out = np.zeros(frame_count, dtype=np.float32)
        total = self._samples.shape[0]
        if total == 0:
            return out
        with self._lock:
            written = 0
            while written < frame_count:
                if self._position >= total:
                    if not self._loop:
                        break
                    self._position = 0
                take = min(frame_count - written, total - self._position)
                out[written : written + take] = self._samples[self._position : self._position + take]
                self._position += take
                written += take
        return out

    def close(self) -> None:
        return None


class BufferedTrackSource:
    """Thread-safe FIFO of live samples with volume and enable controls.

    Audio callbacks on both sides run on PortAudio threads, so ``feed`` and
    ``read`` share a lock. The buffer keeps only the newest
    ``max_buffer_seconds`` of audio.
    """

    def __init__(self, sample_rate: int, volume: float = 1.0, max_buffer_seconds: Optional[float] = None) -> None:
        self.sample_rate = sample_rate
        self.volume = volume
        self.enabled = True
        seconds = max_buffer_seconds or read_float_env("AUDIO_MAX_BUFFER_SECONDS", 2.0)
        self._max_buffer_frames = max(1, int(sample_rate * seconds))
        self._buffer = np.empty((0,), dtype=np.float32)
        self._lock = threading.Lock()

    @property
    def buffered_frames(self) -> int:
        with self._lock:
            return int(self._buffer.shape[0])

    def feed(self, samples: np.ndarray) -> None:
        mono = np.asarray(samples, dtype=np.float32).reshape(-1)
        with self._lock:
            self._buffer = np.concatenate((self._buffer, mono))
            if self._buffer.shape[0] > self._max_buffer_frames:
                self._buffer = self._buffer[-self._max_buffer_frames :]

    def read(self, frame_count: int) -> np.ndarray:
        out = np.zeros(frame_count, dtype=np.float32)
        with self._lock:
            take = min(frame_count, self._buffer.shape[0])
            out[:take] = self._buffer[:take]
            self._buffer = self._buffer[take:]
        if not self.enabled:
            return np.zeros(frame_count, dtype=np.float32)
        return out * float(self.volume)

    def clear(self) -> None:
        with self._lock:
            self._buffer = np.empty((0,), dtype=np.float32)

    def close(self) -> None:
        self.clear()


class MicrophoneTrackSource(BufferedTrackSource):
    """Live microphone capture exposed as a pull-model track source."""

    def __init__(
        self,
        device: Optional[str] = None,
        sample_rate: Optional[int] = None,
        volume: float = 1.0,
    ) -> None:
        super().__init__(sample_rate or read_int_env("AUDIO_SAMPLE_RATE", 24000), volume=volume)
        self.device = device
        self._stream = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None:
            return
        import sounddevice as sd

        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=self._audio_callback,
            device=self.device,
            blocksize=0,
        )
        self._stream.start()
        logging.info("microphone_started device=%s", self.device or "default")

    def close(self) -> None:
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.stop()
            stream.close()
            logging.info("microphone_stopped device=%s", self.device or "default")
        self.clear()

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        del frames, time_info
        if status:
            logging.debug("microphone_status status=%s", status)
        self.feed(indata[:, 0])
