from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional

import numpy as np

from audio_encoder import decode_pcm16, resample_pcm16
from audio_tracks import AudioTrack, MicrophoneTrackSource, TrackSource, TrackType, load_wav_samples
from config_utils import read_int_env, read_optional_str_env, read_ratio_env


@dataclass
class _QueuedBuffer:
    samples: np.ndarray
    volume: float
    position: int = 0

    @property
    def remaining(self) -> int:
        return self.samples.shape[0] - self.position


class AudioStreamManager:
    """Mixes speech buffers, a feedback loop, live mic and extra inputs into one stream.

    The mix is pulled through :meth:`read`. With ``local_playback`` set,
    :meth:`start` opens an output stream on ``device`` (the default device when
    unset) that pulls from it; otherwise the mix only leaves through the track
    returned by :meth:`get_audio_track`.
    Speech buffers play back to back in the order they were queued.
    """

    def __init__(
        self,
        name: str,
        sample_rate: Optional[int] = None,
        device: Optional[str] = None,
        local_playback: bool = False,
    ) -> None:
        self.name = name
        self.sample_rate = sample_rate or read_int_env("AUDIO_SAMPLE_RATE", 24000)
        self.device = device
        self.local_playback = local_playback
        self.volume = 1.0
        self.muted = False
        self._lock = threading.Lock()
        self._buffers: deque[_QueuedBuffer] = deque()
        self._feedback: Optional[np.ndarray] = None
        self._feedback_position = 0
        self._feedback_volume = read_ratio_env("AUDIO_FEEDBACK_VOLUME", 0.1)
        self._microphone: Optional[MicrophoneTrackSource] = None
        self._microphone_volume = read_ratio_env("AGENT_MIC_VOLUME", 1.0)
        self._inputs: list[TrackSource] = []
        self._stream = None
        self._track = AudioTrack.create(TrackType.SYNTHESIZED, self)

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    @property
    def feedback_enabled(self) -> bool:
        return self._feedback is not None

    @property
    def microphone_active(self) -> bool:
        return self._microphone is not None

    @property
    def pending_seconds(self) -> float:
        with self._lock:
            frames = sum(buffer.remaining for buffer in self._buffers)
        return frames / float(self.sample_rate)

    def get_audio_track(self) -> AudioTrack:
        return self._track

    def play_audio_buffer(self, pcm16: bytes, source_rate: int, volume: float = 1.0) -> float:
        """Queue 16-bit PCM for playback; returns its duration in seconds."""
        samples = decode_pcm16(resample_pcm16(pcm16, source_rate, self.sample_rate))
        if samples.shape[0] == 0:
            return 0.0
        with self._lock:
            self._buffers.append(_QueuedBuffer(samples=samples, volume=float(volume)))
        duration = samples.shape[0] / float(self.sample_rate)
        logging.debug("speech_buffer_queued output=%s duration_s=%.2f volume=%.2f", self.name, duration, volume)
        return duration

    def clear_audio_buffers(self) -> None:
        with self._lock:
            self._buffers.clear()

    def enable_audio_feedback(self, path: Optional[str] = None, volume: Optional[float] = None) -> None:
        feedback_path = path or read_optional_str_env("AUDIO_FEEDBACK_FILE_PATH")
        if not feedback_path:
            raise RuntimeError("AUDIO_FEEDBACK_FILE_PATH is required to enable audio feedback.")
        samples = load_wav_samples(feedback_path, self.sample_rate)
        with self._lock:
            self._feedback = samples
            self._feedback_position = 0
            if volume is not None:
                self._feedback_volume = float(volume)
        logging.info("audio_feedback_enabled output=%s path=%s", self.name, feedback_path)

    def disable_audio_feedback(self) -> None:
        with self._lock:
            if self._feedback is None:
                return
            self._feedback = None
            self._feedback_position = 0
        logging.info("audio_feedback_disabled output=%s", self.name)

    def start_microphone(self, device: Optional[str] = None) -> None:
        if self._microphone is not None:
            return
        microphone = MicrophoneTrackSource(device=device, sample_rate=self.sample_rate, volume=self._microphone_volume)
        microphone.start()
        with self._lock:
            self._microphone = microphone

    def stop_microphone(self) -> None:
        with self._lock:
            microphone, self._microphone = self._microphone, None
        if microphone is not None:
            microphone.close()

    def set_microphone_volume(self, volume: float) -> None:
        self._microphone_volume = min(1.0, max(0.0, float(volume)))
        with self._lock:
            if self._microphone is not None:
                self._microphone.volume = self._microphone_volume

    def attach_input(self, source: TrackSource) -> None:
        with self._lock:
            if source not in self._inputs:
                self._inputs.append(source)

    def detach_input(self, source: TrackSource) -> None:
        with self._lock:
            if source in self._inputs:
                self._inputs.remove(source)

    def read(self, frame_count: int) -> np.ndarray:
        mix = np.zeros(frame_count, dtype=np.float32)
        with self._lock:
            self._mix_speech(mix)
            self._mix_feedback(mix)
            live_sources: list[TrackSource] = list(self._inputs)
            if self._microphone is not None:
                live_sources.append(self._microphone)
        for source in live_sources:
            mix += source.read(frame_count)
        if self.muted:
            return np.zeros(frame_count, dtype=np.float32)
        return np.clip(mix * float(self.volume), -1.0, 1.0)

    def close(self) -> None:
        self.dispose()

    def start(self) -> None:
        if self._stream is not None or not self.local_playback:
            return
        import sounddevice as sd

        self._stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=self._output_callback,
            device=self.device,
            blocksize=0,
        )
        self._stream.start()
        logging.info("audio_output_started output=%s device=%s", self.name, self.device or "default")

    def stop(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        stream.stop()
        stream.close()
        logging.info("audio_output_stopped output=%s", self.name)

    def dispose(self) -> None:
        self.stop()
        self.stop_microphone()
        self.disable_audio_feedback()
        self.clear_audio_buffers()
        with self._lock:
            self._inputs.clear()

    def _mix_speech(self, mix: np.ndarray) -> None:
        written = 0
        frame_count = mix.shape[0]
        while written < frame_count and self._buffers:
            buffer = self._buffers[0]
            take = min(frame_count - written, buffer.remaining)
            chunk = buffer.samples[buffer.position : buffer.position + take]
            mix[written : written + take] += chunk * buffer.volume
            buffer.position += take
            written += take
            if buffer.remaining <= 0:
                self._buffers.popleft()

    def _mix_feedback(self, mix: np.ndarray) -> None:
        if self._feedback is None or self._feedback.shape[0] == 0:
            return
        frame_count = mix.shape[0]
        total = self._feedback.shape[0]
        written = 0
        while written < frame_count:
            take = min(frame_count - written, total - self._feedback_position)
            chunk = self._feedback[self._feedback_position : self._feedback_position + take]
            mix[written : written + take] += chunk * self._feedback_volume
            self._feedback_position = (self._feedback_position + take) % total
            written += take

    def _output_callback(self, outdata, frames, time_info, status) -> None:
        del time_info
        if status:
            logging.debug("audio_output_status output=%s status=%s", self.name, status)
        outdata[:, 0] = self.read(frames)
