from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import Any, Coroutine, Optional

from dotenv import load_dotenv
from PyQt6.QtWidgets import QApplication
from qasync import QEventLoop

from audio_output import AudioStreamManager
from audio_sources import SoundDeviceAudioSource
from call_session import CallEvent, LocalCallSession
from channel_config import Channel, ChannelSettings, load_channel_settings, primary_language
from channel_orchestrator import ChannelOrchestrator, ChannelRouting, ChannelStateError
from config_utils import read_bool_env, read_int_env, read_optional_str_env, read_ratio_env
from credentials import EnvCredentialProvider, OpenAIClientCache
from metrics_reporter import SessionMetricsReporter
from overlay_ui import TranslatorPanel
from synthesis_service import SpeechSynthesisService
from transcription_service import ChannelTranscriptionDriver
from translation_service import TranslationService


class VoiceTranslatorController:
    def __init__(
        self,
        ui: TranslatorPanel,
        loop: asyncio.AbstractEventLoop,
        settings: dict[Channel, ChannelSettings],
        session: Optional[LocalCallSession] = None,
    ) -> None:
        self.ui = ui
        self.loop = loop
        sample_rate = read_int_env("AUDIO_SAMPLE_RATE", 24000)
        self.agent_mic_device = read_optional_str_env("AGENT_MIC_DEVICE")
        self.outbound_file_path = read_optional_str_env("OUTBOUND_FILE_PATH")

        self.credentials = EnvCredentialProvider()
        clients = OpenAIClientCache(self.credentials)
        self.translator = TranslationService(clients)
        self.synthesizer = SpeechSynthesisService(clients)
        self.metrics_reporter = SessionMetricsReporter(
            enabled=read_bool_env("METRICS_ENABLED", True),
            output_path=os.getenv("METRICS_OUTPUT_PATH", "./reports/session_metrics.jsonl"),
            summary_path=os.getenv("METRICS_SUMMARY_PATH", "./reports/session_summary.json"),
            append_mode=read_bool_env("METRICS_APPEND_MODE", False),
        )

        self.session = session or LocalCallSession(loop, sample_rate=sample_rate)
        self.outbound_mixer = AudioStreamManager("outbound", sample_rate)
        self.speaker_mixer = AudioStreamManager(
            "speaker",
            sample_rate,
            device=read_optional_str_env("AGENT_SPEAKER_DEVICE"),
            local_playback=True,
        )
        self.speaker_mixer.attach_input(self.session.inbound_audio_element)

        feedback_path = read_optional_str_env("AUDIO_FEEDBACK_FILE_PATH")
        monitor_volume = read_ratio_env("TRANSLATION_MONITOR_VOLUME", 0.3)
        self.orchestrators: dict[Channel, ChannelOrchestrator] = {
            Channel.AGENT: ChannelOrchestrator(
                Channel.AGENT,
                settings[Channel.AGENT],
                ChannelTranscriptionDriver(Channel.AGENT, self.credentials),
                self.translator,
                self.synthesizer,
                ChannelRouting(
                    open_transcription_input=self._open_agent_input,
                    speech_output=self.outbound_mixer,
                    monitor_output=self.speaker_mixer,
                    outbound_track=self.outbound_mixer.get_audio_track(),
                    microphone_device=self.agent_mic_device,
                    feedback_path=feedback_path,
                    monitor_volume=monitor_volume,
                ),
                ui,
                track_manager=self.session.tracks,
                metrics=self.metrics_reporter,
            ),
            Channel.CUSTOMER: ChannelOrchestrator(
                Channel.CUSTOMER,
                settings[Channel.CUSTOMER],
                ChannelTranscriptionDriver(Channel.CUSTOMER, self.credentials),
                self.translator,
                self.synthesizer,
                ChannelRouting(
                    open_transcription_input=self.session.open_inbound_audio_source,
                    speech_output=self.speaker_mixer,
                    monitor_output=self.outbound_mixer,
                    outbound_track=self.outbound_mixer.get_audio_track(),
                    inbound_element=self.session.inbound_audio_element,
                    feedback_path=feedback_path,
                    monitor_volume=monitor_volume,
                    original_audio_volume=read_ratio_env("ORIGINAL_AUDIO_VOLUME", 0.3),
                ),
                ui,
                track_manager=self.session.tracks,
                metrics=self.metrics_reporter,
            ),
        }
        for orchestrator in self.orchestrators.values():
            orchestrator.bind_call_events(self.session)
        self.session.subscribe(self._on_call_event)
        self._tasks: set[asyncio.Task[Any]] = set()

        self.ui.start_requested.connect(self._on_start_requested)
        self.ui.stop_requested.connect(self._on_stop_requested)
        self.ui.mute_requested.connect(self._on_mute_requested)
        self.ui.settings_changed.connect(self._on_settings_changed)
        self.ui.route_requested.connect(self._on_route_requested)
        self.ui.speak_requested.connect(self._on_speak_requested)
        self.ui.connect_requested.connect(self._on_connect_requested)
        self.ui.end_call_requested.connect(self._on_end_call_requested)

        self.ui.set_status("Idle. Route the softphone through VB-Cable/BlackHole, then connect the call.")

    def shutdown_sync(self) -> None:
        for orchestrator in self.orchestrators.values():
            orchestrator.abort()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        self.session.end()
        self.outbound_mixer.dispose()
        self.speaker_mixer.dispose()
        self.metrics_reporter.finalize_session()

    async def route_outbound(self, route: str) -> None:
        tracks = self.session.tracks
        if route == "file":
            if not self.outbound_file_path:
                raise RuntimeError("OUTBOUND_FILE_PATH is required to stream a file.")
            await tracks.replace_track(tracks.create_file_track(self.outbound_file_path))
        elif route == "mic":
            await tracks.replace_track(tracks.create_mic_track(self.agent_mic_device))
        elif route == "silence":
            await tracks.replace_with_silence()
        else:
            raise ValueError(f"Unknown outbound route: {route}")
        self.ui.set_status(f"Outbound audio: {route}.")

    async def speak(self, text: str, translate: bool) -> None:
        await self.session.tracks.replace_track(self.outbound_mixer.get_audio_track())
        spoken = await self.orchestrators[Channel.AGENT].speak_text(text, translate=translate)
        if spoken:
            self.ui.set_status(f"Spoke: {spoken}")

    async def end_call(self) -> None:
        self.session.end()
        await self.session.destroy()

    def _open_agent_input(self) -> SoundDeviceAudioSource:
        source = SoundDeviceAudioSource(self.loop, device=self.agent_mic_device)
        source.start()
        return source

    def _on_call_event(self, event: CallEvent) -> None:
        if event is CallEvent.CONNECTED:
            self.ui.set_call_connected(True)
            self.metrics_reporter.start_session()
            self.speaker_mixer.start()
        elif event is CallEvent.ENDED:
            self.ui.set_call_connected(False)
            self.ui.set_status("Call ended.")
        elif event is CallEvent.DESTROYED:
            self.ui.clear_transcripts()
            self.translator.reset_context()
            self.speaker_mixer.stop()
            summary = self.metrics_reporter.finalize_session()
            if summary:
                logging.info("metrics_session_summary %s", summary)

    def _on_start_requested(self, channel_name: str) -> None:
        self._schedule(self.orchestrators[Channel(channel_name)].start(), name=f"start-{channel_name}")

    def _on_stop_requested(self, channel_name: str) -> None:
        self._schedule(self.orchestrators[Channel(channel_name)].stop(), name=f"stop-{channel_name}")

    def _on_mute_requested(self) -> None:
        self._schedule(self.orchestrators[Channel.AGENT].toggle_mute(), name="toggle-mute")

    def _on_settings_changed(self, channel_name: str, field: str, value: str) -> None:
        changes = {field: value}
        if field == "source_language":
            changes["translate_from"] = primary_language(value)
        try:
            self.orchestrators[Channel(channel_name)].update_settings(**changes)
        except ChannelStateError as exc:
            self.ui.set_status(str(exc))

    def _on_route_requested(self, route: str) -> None:
        self._schedule(self.route_outbound(route), name=f"route-{route}")

    def _on_speak_requested(self, text: str, translate: bool) -> None:
        self._schedule(self.speak(text, translate), name="speak-text")

    def _on_connect_requested(self) -> None:
        try:
            self.session.connect()
        except Exception as exc:  # noqa: BLE001 - device startup boundary
            self.ui.set_status(f"Call audio error: {exc}")

    def _on_end_call_requested(self) -> None:
        self._schedule(self.end_call(), name="end-call")

    def _schedule(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)

        def _finalize(done_task: asyncio.Task[Any]) -> None:
            self._tasks.discard(done_task)
            try:
                done_task.result()
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001 - task boundary
                logging.warning("controller_task_failed task=%s error=%s", name, exc)
                self.ui.set_status(f"{name} error: {exc}")

        task.add_done_callback(_finalize)
        return task


def main() -> None:
    load_dotenv()
    log_level_name = (os.getenv("LOG_LEVEL", "INFO") or "INFO").upper()
    log_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(message)s")

    app = QApplication(sys.argv)
    loop = QEventLoop(app)
    asyncio.set_event_loop(loop)

    settings = {channel: load_channel_settings(channel) for channel in Channel}
    panel = TranslatorPanel(settings[Channel.AGENT], settings[Channel.CUSTOMER])
    controller = VoiceTranslatorController(panel, loop, settings)
    app.aboutToQuit.connect(controller.shutdown_sync)
    panel.show()

    with loop:
        loop.run_forever()


if __name__ == "__main__":
    main()
