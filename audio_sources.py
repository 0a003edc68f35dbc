from __future__ import annotations

import asyncio
import logging
import platform
from typing import Any, AsyncIterator, Optional, Protocol

import numpy as np

from config_utils import read_float_env, read_int_env

# Queued after the last frame; consumers stop when they see it.
_END_OF_STREAM: Any = object()


class AudioSource(Protocol):
    sample_rate: int

    def frames(self) -> AsyncIterator[np.ndarray]: ...


def list_input_devices() -> list[str]:
    import sounddevice as sd

    names: list[str] = []
    for device in sd.query_devices():
        if int(device.get("max_input_channels", 0)) > 0:
            names.append(str(device.get("name", "Unknown input device")))
    return names


def list_output_devices() -> list[str]:
    import sounddevice as sd

    names: list[str] = []
    for device in sd.query_devices():
        if int(device.get("max_output_channels", 0)) > 0:
            names.append(str(device.get("name", "Unknown output device")))
    return names


def default_loopback_keywords() -> list[str]:
    current = platform.system().lower()
    if current == "windows":
        return ["cable output", "vb-audio", "stereo mix"]
    if current == "darwin":
        return ["blackhole"]
    return ["monitor of"]


def default_virtual_output_keywords() -> list[str]:
    current = platform.system().lower()
    if current == "windows":
        return ["cable input"]
    if current == "darwin":
        return ["blackhole"]
    return []


def resolve_device(
    preferred: Optional[str],
    available: list[str],
    keywords: Optional[list[str]] = None,
    setting_name: str = "device",
) -> Optional[str]:
    """Match ``preferred`` by substring, else the first keyword hit, else the default device."""
    if preferred:
        lowered_target = preferred.lower()
        for name in available:
            if lowered_target in name.lower():
                return name
        raise RuntimeError(f"{setting_name} '{preferred}' was not found among audio devices.")

    if not keywords:
        return None
    for name in available:
        lowered = name.lower()
        if any(key.lower() in lowered for key in keywords):
            return name
    raise RuntimeError(
        "No virtual call-audio device found. Configure VB-Cable (Windows) or BlackHole (macOS), "
        f"or set {setting_name}."
    )


class QueueAudioSource:
    """Frames pushed from any thread, consumed once as an async stream.

    While disabled, pushed frames are replaced by silence of the same length so
    a downstream session keeps receiving audio at the usual pace.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        sample_rate: int,
        maxsize: Optional[int] = None,
    ) -> None:
        self._loop = loop
        self.sample_rate = sample_rate
        self._queue: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=maxsize or read_int_env("AUDIO_FRAME_QUEUE_MAXSIZE", 50)
        )
        self.enabled = True
        self._ended = False

    @property
    def is_ended(self) -> bool:
        return self._ended

    def push_threadsafe(self, samples: np.ndarray) -> None:
        if self._ended:
            return
        self._loop.call_soon_threadsafe(self.push, samples)

    def push(self, samples: np.ndarray) -> None:
        if self._ended:
            return
        frame = samples if self.enabled else np.zeros_like(samples)
        self._put_dropping_oldest(frame)

    def replace_with_silence(self) -> None:
        """Swap the live input for silence, which ends the frame stream.

        Frames already queued are still delivered; after them the consumer's
        iteration finishes on its own.
        """
        if self._ended:
            return
        self._ended = True
        self._put_dropping_oldest(_END_OF_STREAM)

    async def frames(self) -> AsyncIterator[np.ndarray]:
        while True:
            frame = await self._queue.get()
            if frame is _END_OF_STREAM:
                return
            yield frame

    def _put_dropping_oldest(self, item: Any) -> None:
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Drop oldest queue item to keep latency bounded.
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._queue.put_nowait(item)

    def close(self) -> None:
        self.replace_with_silence()


class SoundDeviceAudioSource(QueueAudioSource):
    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        device: Optional[str] = None,
        sample_rate: Optional[int] = None,
        block_seconds: Optional[float] = None,
        channels: int = 1,
        maxsize: Optional[int] = None,
    ) -> None:
        super().__init__(loop, sample_rate or read_int_env("AUDIO_SAMPLE_RATE", 24000), maxsize=maxsize)
        self._device = device
        self._channels = channels
        self._block_seconds = block_seconds or read_float_env("AUDIO_BLOCK_SECONDS", 0.1)
        self._stream = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def start(self) -> None:
        if self._stream is not None or self.is_ended:
            return
        import sounddevice as sd

        self._stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=self._channels,
            dtype="float32",
            callback=self._audio_callback,
            device=self._device,
            blocksize=max(1, int(self.sample_rate * self._block_seconds)),
        )
        self._stream.start()
        logging.info(
            "audio_source_started device=%s sample_rate=%d",
            self._device or "default",
            self.sample_rate,
        )

    def close(self) -> None:
        self.replace_with_silence()
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        stream.stop()
        stream.close()
        logging.info("audio_source_stopped device=%s", self._device or "default")

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        del frames, time_info
        if status:
            logging.debug("audio_source_status status=%s", status)
        if self.is_ended:
            return
        self.push_threadsafe(np.copy(indata[:, 0]))
