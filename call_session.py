from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Callable, Optional, Protocol

import numpy as np

from audio_sources import (
    QueueAudioSource,
    default_loopback_keywords,
    default_virtual_output_keywords,
    list_input_devices,
    list_output_devices,
    resolve_device,
)
from audio_tracks import (
    AudioTrack,
    BufferedTrackSource,
    FileTrackSource,
    MicrophoneTrackSource,
    SilenceSource,
    TrackType,
)
from config_utils import read_int_env, read_optional_str_env


class CallEvent(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ENDED = "ended"
    DESTROYED = "destroyed"


CallEventHandler = Callable[[CallEvent], None]


class OutboundTrackSlot(Protocol):
    def current_track(self) -> AudioTrack: ...

    def replace_track(self, track: AudioTrack) -> None: ...


class SessionTrackManager:
    """Owns replacements of the call's single outbound track.

    Replacements are serialized; whoever replaced last owns the slot. File and
    microphone tracks created here are released once they lose the slot.
    """

    def __init__(self, slot: OutboundTrackSlot, sample_rate: Optional[int] = None) -> None:
        self._slot = slot
        self._sample_rate = sample_rate or read_int_env("AUDIO_SAMPLE_RATE", 24000)
        self._lock = asyncio.Lock()
        self._owned: dict[str, AudioTrack] = {}

    @property
    def current_track(self) -> AudioTrack:
        return self._slot.current_track()

    def create_silent_track(self) -> AudioTrack:
        return AudioTrack.create(TrackType.SILENT, SilenceSource())

    def create_file_track(self, path: str) -> AudioTrack:
        track = AudioTrack.create(TrackType.FILE, FileTrackSource(path, self._sample_rate))
        self._owned[track.track_id] = track
        return track

    def create_mic_track(self, device: Optional[str] = None) -> AudioTrack:
        microphone = MicrophoneTrackSource(device=device, sample_rate=self._sample_rate)
        microphone.start()
        track = AudioTrack.create(TrackType.MIC, microphone)
        self._owned[track.track_id] = track
        return track

    async def replace_track(self, track: AudioTrack) -> AudioTrack:
        async with self._lock:
            previous = self._slot.current_track()
            if previous.track_id == track.track_id:
                return previous
            self._slot.replace_track(track)
            logging.info(
                "outbound_track_replaced previous=%s current=%s",
                previous.track_id,
                track.track_id,
            )
            self._release(previous)
            return previous

    async def replace_with_silence(self) -> AudioTrack:
        return await self.replace_track(self.create_silent_track())

    async def dispose(self) -> None:
        await self.replace_with_silence()
        for track in list(self._owned.values()):
            self._release(track)

    def _release(self, track: AudioTrack) -> None:
        owned = self._owned.pop(track.track_id, None)
        if owned is not None:
            owned.source.close()


class InboundAudioElement(BufferedTrackSource):
    """The remote party's raw voice as heard by the agent."""

    @property
    def muted(self) -> bool:
        return not self.enabled

    @muted.setter
    def muted(self, value: bool) -> None:
        self.enabled = not value


class LocalCallSession:
    """Desktop softphone bridge over two virtual audio devices.

    The remote party's voice is captured from a loopback input device and
    fanned out to the inbound element and to every open inbound audio source.
    Whatever track owns the outbound slot is played into a virtual output
    device that the softphone uses as its microphone.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        sample_rate: Optional[int] = None,
        input_device: Optional[str] = None,
        output_device: Optional[str] = None,
    ) -> None:
        self._loop = loop
        self.sample_rate = sample_rate or read_int_env("AUDIO_SAMPLE_RATE", 24000)
        self._input_device = input_device or read_optional_str_env("CALL_INPUT_DEVICE")
        self._output_device = output_device or read_optional_str_env("CALL_OUTPUT_DEVICE")
        self.state: Optional[CallEvent] = None
        self.inbound_audio_element = InboundAudioElement(self.sample_rate)
        self._handlers: list[CallEventHandler] = []
        self._inbound_sources: list[QueueAudioSource] = []
        self._track_lock = threading.Lock()
        self._current_track = AudioTrack.create(TrackType.SILENT, SilenceSource())
        self._input_stream = None
        self._output_stream = None
        self.tracks = SessionTrackManager(self, self.sample_rate)

    @property
    def is_connected(self) -> bool:
        return self.state in (CallEvent.CONNECTING, CallEvent.CONNECTED)

    def current_track(self) -> AudioTrack:
        with self._track_lock:
            return self._current_track

    def replace_track(self, track: AudioTrack) -> None:
        with self._track_lock:
            self._current_track = track

    def subscribe(self, handler: CallEventHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def emit(self, event: CallEvent) -> None:
        self.state = event
        logging.info("call_event event=%s", event.value)
        for handler in list(self._handlers):
            handler(event)

    def connect(self) -> None:
        if self.is_connected:
            return
        self.emit(CallEvent.CONNECTING)
        try:
            self._open_streams()
        except Exception:
            self._close_streams()
            self.emit(CallEvent.ENDED)
            raise
        self.emit(CallEvent.CONNECTED)

    def end(self) -> None:
        if not self.is_connected:
            return
        self._close_streams()
        self.emit(CallEvent.ENDED)

    async def destroy(self) -> None:
        self.end()
        await self.tracks.dispose()
        for source in list(self._inbound_sources):
            source.close()
        self._inbound_sources.clear()
        self.inbound_audio_element.clear()
        self.emit(CallEvent.DESTROYED)

    def open_inbound_audio_source(self) -> QueueAudioSource:
        self._inbound_sources = [source for source in self._inbound_sources if not source.is_ended]
        source = QueueAudioSource(self._loop, self.sample_rate)
        self._inbound_sources.append(source)
        return source

    def _open_streams(self) -> None:
        import sounddevice as sd

        input_device = resolve_device(
            self._input_device,
            list_input_devices(),
            default_loopback_keywords(),
            "CALL_INPUT_DEVICE",
        )
        output_device = resolve_device(
            self._output_device,
            list_output_devices(),
            default_virtual_output_keywords(),
            "CALL_OUTPUT_DEVICE",
        )
        self._input_stream = sd.InputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=self._inbound_callback,
            device=input_device,
            blocksize=0,
        )
        self._output_stream = sd.OutputStream(
            samplerate=self.sample_rate,
            channels=1,
            dtype="float32",
            callback=self._outbound_callback,
            device=output_device,
            blocksize=0,
        )
        self._input_stream.start()
        self._output_stream.start()
        logging.info("call_audio_opened input=%s output=%s", input_device or "default", output_device or "default")

    def _close_streams(self) -> None:
        for stream in (self._input_stream, self._output_stream):
            if stream is not None:
                stream.stop()
                stream.close()
        self._input_stream = None
        self._output_stream = None

    def _inbound_callback(self, indata, frames, time_info, status) -> None:
        del frames, time_info
        if status:
            logging.debug("call_inbound_status status=%s", status)
        mono = np.copy(indata[:, 0])
        self.inbound_audio_element.feed(mono)
        for source in list(self._inbound_sources):
            source.push_threadsafe(mono)

    def _outbound_callback(self, outdata, frames, time_info, status) -> None:
        del time_info
        if status:
            logging.debug("call_outbound_status status=%s", status)
        outdata[:, 0] = self.current_track().source.read(frames)
