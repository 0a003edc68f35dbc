from __future__ import annotations

import asyncio
import os
import unittest
from unittest.mock import patch

from PyQt6.QtWidgets import QApplication

from call_session import CallEvent
from channel_config import Channel, ChannelSettings
from channel_orchestrator import ChannelState
from main import VoiceTranslatorController
from overlay_ui import TranslatorPanel

_ENV_KEYS = ("METRICS_ENABLED", "OUTBOUND_FILE_PATH")


class VoiceTranslatorControllerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")
        cls._app = QApplication.instance() or QApplication([])

    def setUp(self) -> None:
        self._saved_env = {key: os.environ.get(key) for key in _ENV_KEYS}
        os.environ["METRICS_ENABLED"] = "false"
        os.environ.pop("OUTBOUND_FILE_PATH", None)
        self.loop = asyncio.new_event_loop()
        settings = {Channel.AGENT: ChannelSettings(), Channel.CUSTOMER: ChannelSettings(source_language="es-US")}
        self.panel = TranslatorPanel(settings[Channel.AGENT], settings[Channel.CUSTOMER])
        self.controller = VoiceTranslatorController(self.panel, self.loop, settings)

    def tearDown(self) -> None:
        self.controller.shutdown_sync()
        self.panel.close()
        self.loop.close()
        for key, value in self._saved_env.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    def test_source_language_change_updates_translate_from(self) -> None:
        self.panel.settings_changed.emit("customer", "source_language", "fr-CA")

        settings = self.controller.orchestrators[Channel.CUSTOMER].settings
        self.assertEqual(settings.source_language, "fr-CA")
        self.assertEqual(settings.translate_from, "fr")

    def test_settings_change_on_active_channel_is_reported(self) -> None:
        self.controller.orchestrators[Channel.AGENT].state = ChannelState.ACTIVE

        self.panel.settings_changed.emit("agent", "stability", "low")

        self.assertIn("only change while idle", self.panel.status_label.text())
        self.assertEqual(self.controller.orchestrators[Channel.AGENT].settings.stability, "none")
        self.controller.orchestrators[Channel.AGENT].state = ChannelState.IDLE

    def test_outbound_routes(self) -> None:
        self.loop.run_until_complete(self.controller.route_outbound("silence"))
        self.assertEqual(self.panel.status_label.text(), "Outbound audio: silence.")

        with self.assertRaises(RuntimeError):
            self.loop.run_until_complete(self.controller.route_outbound("file"))
        with self.assertRaises(ValueError):
            self.loop.run_until_complete(self.controller.route_outbound("speaker"))

    def test_both_channels_put_the_outbound_mix_on_the_call(self) -> None:
        outbound_track = self.controller.outbound_mixer.get_audio_track()
        for channel in Channel:
            routing = self.controller.orchestrators[channel]._routing
            self.assertIs(routing.outbound_track, outbound_track)
        customer = self.controller.orchestrators[Channel.CUSTOMER]._routing
        self.assertIs(customer.speech_output, self.controller.speaker_mixer)
        self.assertIs(customer.monitor_output, self.controller.outbound_mixer)

    def test_call_lifecycle_updates_the_panel(self) -> None:
        with patch.object(self.controller.speaker_mixer, "start") as start_speaker:
            self.controller.session.emit(CallEvent.CONNECTED)
        start_speaker.assert_called_once()
        self.assertTrue(self.panel.end_call_button.isEnabled())
        self.panel.translated_transcript(Channel.AGENT, "Hello.", "Hola.")

        async def finish_call():
            await self.controller.end_call()
            for orchestrator in self.controller.orchestrators.values():
                await orchestrator.wait_for_background_tasks()

        self.loop.run_until_complete(finish_call())

        self.assertFalse(self.panel.end_call_button.isEnabled())
        self.assertEqual(len(self.panel.cards), 0)
        self.assertEqual(self.controller.session.current_track().kind.value, "silent")
        self.assertIs(self.controller.orchestrators[Channel.AGENT].state, ChannelState.IDLE)


if __name__ == "__main__":
    unittest.main()
