"""Lifecycle of one translation channel during a call.

A channel moves ``Idle -> Active -> (Muted <-> Active) -> Idle``. Starting it
routes audio, opens a transcription session and feeds every final segment
through translate, synthesize and play. The two channels of a call never share
a session, an input or a cursor; the call's outbound track slot is the only
thing they contend for, and the track manager serializes that.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from time import perf_counter
from typing import Any, AsyncIterator, Callable, Coroutine, Optional, Protocol

import numpy as np

from audio_output import AudioStreamManager
from audio_tracks import AudioTrack
from call_session import CallEvent, InboundAudioElement, LocalCallSession, SessionTrackManager
from channel_config import Channel, ChannelSettings
from metrics_reporter import SessionMetricsReporter
from segment_stabilizer import Segment
from synthesis_service import SpeechSynthesisService, SynthesizedSpeech
from transcription_service import ChannelTranscriptionDriver
from translation_service import TranslationService


class ChannelState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    MUTED = "muted"


class ChannelStateError(RuntimeError):
    pass


class PresentationNotifier(Protocol):
    def channel_state_changed(self, channel: Channel, state: ChannelState) -> None: ...

    def controls_enabled(self, channel: Channel, enabled: bool) -> None: ...

    def partial_transcript(self, channel: Channel, text: str) -> None: ...

    def final_transcript(self, channel: Channel, text: str) -> None: ...

    def translated_transcript(self, channel: Channel, original: str, translated: str) -> None: ...

    def report_error(self, channel: Channel, message: str) -> None: ...

    def clear_transcripts(self) -> None: ...


class TranscriptionInput(Protocol):
    sample_rate: int
    enabled: bool

    def frames(self) -> AsyncIterator[np.ndarray]: ...

    def replace_with_silence(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class ChannelRouting:
    """Where a channel's audio comes from and where its speech goes."""

    open_transcription_input: Callable[[], TranscriptionInput]
    speech_output: AudioStreamManager
    monitor_output: Optional[AudioStreamManager] = None
    outbound_track: Optional[AudioTrack] = None
    inbound_element: Optional[InboundAudioElement] = None
    microphone_device: Optional[str] = None
    feedback_path: Optional[str] = None
    monitor_volume: float = 0.3
    original_audio_volume: float = 0.3


@dataclass(frozen=True)
class _SpeechJob:
    text: str
    translate: bool = True


class ChannelOrchestrator:
    def __init__(
        self,
        channel: Channel,
        settings: ChannelSettings,
        driver: ChannelTranscriptionDriver,
        translator: TranslationService,
        synthesizer: SpeechSynthesisService,
        routing: ChannelRouting,
        notifier: PresentationNotifier,
        track_manager: Optional[SessionTrackManager] = None,
        metrics: Optional[SessionMetricsReporter] = None,
    ) -> None:
        self.channel = channel
        self._settings = settings
        self._driver = driver
        self._translator = translator
        self._synthesizer = synthesizer
        self._routing = routing
        self._notifier = notifier
        self._track_manager = track_manager
        self._metrics = metrics
        self.state = ChannelState.IDLE
        self._lock = asyncio.Lock()
        self._input: Optional[TranscriptionInput] = None
        self._session_task: Optional[asyncio.Task[None]] = None
        self._speech_task: Optional[asyncio.Task[None]] = None
        self._speech_queue: Optional[asyncio.Queue[Optional[_SpeechJob]]] = None
        self._microphone_started = False
        self._feedback_started = False
        self._background: set[asyncio.Task[Any]] = set()
        self._draining: set[asyncio.Task[None]] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None

    @property
    def settings(self) -> ChannelSettings:
        return self._settings

    @property
    def has_session(self) -> bool:
        return self._session_task is not None and not self._session_task.done()

    def update_settings(self, **changes: Any) -> ChannelSettings:
        if self.state is not ChannelState.IDLE:
            raise ChannelStateError(f"{self.channel.value} settings can only change while idle.")
        self._settings = self._settings.with_changes(**changes)
        logging.info("channel_settings_updated channel=%s changes=%s", self.channel.value, sorted(changes))
        return self._settings

    async def start(self) -> bool:
        async with self._lock:
            if self.state is not ChannelState.IDLE:
                logging.info("channel_start_ignored channel=%s state=%s", self.channel.value, self.state.value)
                return False
            settings = self._settings
            self._notifier.controls_enabled(self.channel, False)
            try:
                self._apply_inbound_policy(settings)
                # Feedback is heard by whoever is speaking on this channel.
                if settings.audio_feedback_enabled and self._routing.monitor_output is not None:
                    self._routing.monitor_output.enable_audio_feedback(self._routing.feedback_path)
                    self._feedback_started = True
                if self._routing.outbound_track is not None and self._track_manager is not None:
                    await self._track_manager.replace_track(self._routing.outbound_track)
                if self.channel is Channel.AGENT and settings.stream_original_audio:
                    self._routing.speech_output.start_microphone(self._routing.microphone_device)
                    self._microphone_started = True
                self._open_session(settings)
            except Exception as exc:  # noqa: BLE001 - channel startup boundary
                await self._teardown(drain_speech=False)
                self._report("startup", exc)
                self._notifier.controls_enabled(self.channel, True)
                return False

            self._set_state(ChannelState.ACTIVE)
            logging.info(
                "channel_started channel=%s language=%s stability=%s",
                self.channel.value,
                settings.source_language,
                settings.stability,
            )
            return True

    async def stop(self) -> None:
        async with self._lock:
            if self.state is ChannelState.IDLE:
                return
            await self._teardown(drain_speech=True)
            self._set_state(ChannelState.IDLE)
            self._notifier.controls_enabled(self.channel, True)
            logging.info("channel_stopped channel=%s", self.channel.value)

    async def force_reset(self) -> None:
        """Return to Idle unconditionally, dropping queued speech.

        Speech still draining from an earlier ``stop()`` is cancelled too, so
        nothing more is played once the call is gone.
        """
        async with self._lock:
            await self._teardown(drain_speech=False)
            draining = list(self._draining)
            for task in draining:
                task.cancel()
            if draining:
                await asyncio.gather(*draining, return_exceptions=True)
                logging.info("channel_drain_cancelled channel=%s tasks=%d", self.channel.value, len(draining))
            if self._routing.outbound_track is not None and self._track_manager is not None:
                await self._track_manager.replace_with_silence()
            self._set_state(ChannelState.IDLE)
            self._notifier.controls_enabled(self.channel, True)
            logging.info("channel_reset channel=%s", self.channel.value)

    async def toggle_mute(self) -> ChannelState:
        async with self._lock:
            if self.channel is not Channel.AGENT:
                raise ChannelStateError("Mute is only available on the agent channel.")
            if self.state is ChannelState.IDLE:
                raise ChannelStateError("Cannot mute an idle channel.")
            muting = self.state is ChannelState.ACTIVE
            if self._input is not None:
                self._input.enabled = not muting
            if self._settings.stream_original_audio:
                if muting:
                    self._routing.speech_output.stop_microphone()
                    self._microphone_started = False
                else:
                    self._routing.speech_output.start_microphone(self._routing.microphone_device)
                    self._microphone_started = True
            self._set_state(ChannelState.MUTED if muting else ChannelState.ACTIVE)
            return self.state

    async def speak_text(self, text: str, translate: bool = True) -> Optional[str]:
        """Send typed text through this channel's speech path; returns what was spoken."""
        cleaned = " ".join((text or "").split())
        if not cleaned:
            return None
        return await self._run_speech_job(_SpeechJob(text=cleaned, translate=translate))

    def abort(self) -> None:
        """Synchronous teardown for process exit; skips the Idle transition."""
        for task in (self._session_task, self._speech_task, *self._background):
            if task is not None and not task.done():
                task.cancel()
        self._session_task = None
        self._speech_task = None
        if self._input is not None:
            self._input.close()
            self._input = None
        if self._microphone_started:
            self._routing.speech_output.stop_microphone()
            self._microphone_started = False
        self.unbind_call_events()

    def bind_call_events(self, session: LocalCallSession) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._unsubscribe = session.subscribe(self._on_call_event)

    def unbind_call_events(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def wait_for_background_tasks(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _on_call_event(self, event: CallEvent) -> None:
        if event in (CallEvent.ENDED, CallEvent.DESTROYED):
            self._schedule(self.force_reset(), name=f"{self.channel.value}-call-reset")

    def _open_session(self, settings: ChannelSettings) -> None:
        source = self._routing.open_transcription_input()
        self._input = source
        segments = self._driver.segments(source, source.sample_rate, settings.source_language, settings.stability)
        queue: asyncio.Queue[Optional[_SpeechJob]] = asyncio.Queue()
        self._speech_queue = queue
        self._speech_task = asyncio.create_task(self._speech_worker(queue), name=f"{self.channel.value}-speech")
        task = asyncio.create_task(self._consume(segments, queue), name=f"{self.channel.value}-transcription")
        task.add_done_callback(self._on_session_done)
        self._session_task = task

    async def _consume(
        self,
        segments: AsyncIterator[Segment],
        queue: asyncio.Queue[Optional[_SpeechJob]],
    ) -> None:
        async with aclosing(segments):
            async for segment in segments:
                if segment.is_final:
                    self._notifier.final_transcript(self.channel, segment.text)
                    queue.put_nowait(_SpeechJob(text=segment.text))
                else:
                    self._notifier.partial_transcript(self.channel, segment.text)

    def _on_session_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled() or task is not self._session_task:
            return
        exc = task.exception()
        if exc is not None:
            self._report("transcription", exc)
        else:
            logging.info("channel_stream_ended channel=%s", self.channel.value)
        # The session ended without stop(); bring the channel back to Idle.
        self._schedule(self.stop(), name=f"{self.channel.value}-stop")

    async def _teardown(self, drain_speech: bool) -> None:
        source, self._input = self._input, None
        if source is not None:
            source.replace_with_silence()
        task, self._session_task = self._session_task, None
        if task is not None:
            if not task.done():
                task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        if source is not None:
            source.close()

        queue, self._speech_queue = self._speech_queue, None
        speech_task, self._speech_task = self._speech_task, None
        if speech_task is not None:
            if drain_speech and queue is not None:
                queue.put_nowait(None)
                self._draining.add(speech_task)
                speech_task.add_done_callback(self._draining.discard)
                self._track_background(speech_task)
            else:
                speech_task.cancel()
                await asyncio.gather(speech_task, return_exceptions=True)

        if self._microphone_started:
            self._routing.speech_output.stop_microphone()
            self._microphone_started = False
        if self._feedback_started and self._routing.monitor_output is not None:
            self._routing.monitor_output.disable_audio_feedback()
            self._feedback_started = False
        self._restore_inbound_policy()

    async def _speech_worker(self, queue: asyncio.Queue[Optional[_SpeechJob]]) -> None:
        while True:
            job = await queue.get()
            if job is None:
                return
            await self._run_speech_job(job)

    async def _run_speech_job(self, job: _SpeechJob) -> Optional[str]:
        settings = self._settings
        spoken = job.text
        translation_s = 0.0
        if job.translate:
            started = perf_counter()
            try:
                spoken = await self._translator.translate(job.text, settings.translate_from, settings.translate_to)
            except Exception as exc:  # noqa: BLE001 - translation service boundary
                self._report("translation", exc)
                return None
            translation_s = perf_counter() - started
            if not spoken:
                return None
            self._notifier.translated_transcript(self.channel, job.text, spoken)

        started = perf_counter()
        try:
            speech = await self._synthesizer.synthesize(
                spoken,
                settings.voice_language,
                settings.voice_engine,
                settings.voice_id,
            )
        except Exception as exc:  # noqa: BLE001 - synthesis service boundary
            self._report("synthesis", exc)
            return spoken
        synthesis_s = perf_counter() - started

        self._play(speech, settings)
        if self._metrics is not None:
            self._metrics.record_segment(
                self.channel.value,
                translation_s=translation_s,
                synthesis_s=synthesis_s,
                source_chars=len(job.text),
                translated_chars=len(spoken),
            )
        logging.debug(
            "speech_played channel=%s translation_s=%.3f synthesis_s=%.3f",
            self.channel.value,
            translation_s,
            synthesis_s,
        )
        return spoken

    def _play(self, speech: SynthesizedSpeech, settings: ChannelSettings) -> None:
        if not speech.audio:
            return
        self._routing.speech_output.play_audio_buffer(speech.audio, speech.sample_rate)
        if settings.stream_translation_to_self and self._routing.monitor_output is not None:
            self._routing.monitor_output.play_audio_buffer(
                speech.audio,
                speech.sample_rate,
                volume=self._routing.monitor_volume,
            )

    def _apply_inbound_policy(self, settings: ChannelSettings) -> None:
        element = self._routing.inbound_element
        if element is None:
            return
        element.volume = self._routing.original_audio_volume
        element.muted = not settings.stream_original_audio

    def _restore_inbound_policy(self) -> None:
        element = self._routing.inbound_element
        if element is None:
            return
        element.volume = 1.0
        element.muted = False

    def _set_state(self, state: ChannelState) -> None:
        if state is self.state:
            return
        previous, self.state = self.state, state
        logging.info("channel_state channel=%s from=%s to=%s", self.channel.value, previous.value, state.value)
        self._notifier.channel_state_changed(self.channel, state)

    def _report(self, stage: str, exc: BaseException) -> None:
        logging.warning("channel_error channel=%s stage=%s error=%s", self.channel.value, stage, exc)
        self._notifier.report_error(self.channel, f"{stage.capitalize()} error: {exc}")
        if self._metrics is not None:
            self._metrics.record_error(self.channel.value, stage, str(exc))

    def _schedule(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        self._track_background(asyncio.create_task(coro, name=name))

    def _track_background(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)

        def _finalize(done_task: asyncio.Task[Any]) -> None:
            self._background.discard(done_task)
            if done_task.cancelled():
                return
            exc = done_task.exception()
            if exc is not None:
                logging.error("channel_task_failed channel=%s task=%s error=%s", self.channel.value, done_task.get_name(), exc)
                self._notifier.report_error(self.channel, f"{done_task.get_name()} failed: {exc}")

        task.add_done_callback(_finalize)
