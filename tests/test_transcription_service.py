from __future__ import annotations

import asyncio
import base64
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
from openai import APIStatusError

from channel_config import Channel
from credentials import Credentials, CredentialsUnavailableError
from segment_stabilizer import ItemKind, SegmentKind, TranscriptItem, TranscriptResult, stabilize
from transcription_service import (
    ChannelTranscriptionDriver,
    InvalidSampleRateError,
    MissingAudioSourceError,
    MissingCallbackError,
    MissingSourceLanguageError,
    MissingStabilityModeError,
    RealtimeItemTracker,
    RealtimeTranscriptionTransport,
    SessionParameters,
    TranscriptionTransportError,
)


def _api_status_error(status_code: int, message: str) -> APIStatusError:
    request = httpx.Request("GET", "https://api.openai.com/v1/realtime")
    response = httpx.Response(status_code=status_code, request=request)
    return APIStatusError(message, response=response, body={"error": {"message": message}})


def _item(content: str, stable: bool = True) -> TranscriptItem:
    kind = ItemKind.PUNCTUATION if content in ",.!?" else ItemKind.WORD
    return TranscriptItem(content=content, kind=kind, is_stable=stable)


class _FakeSource:
    sample_rate = 16000

    def __init__(self, frames: int = 2) -> None:
        self._frames = [np.zeros(160, dtype=np.float32) for _ in range(frames)]

    async def frames(self):
        for frame in self._frames:
            yield frame


class _FakeTransport:
    def __init__(self, results: list[TranscriptResult]) -> None:
        self.results = results
        self.params: list[SessionParameters] = []
        self.chunks: list[bytes] = []

    async def stream(self, audio_chunks, params):
        self.params.append(params)
        self.chunks.extend([chunk async for chunk in audio_chunks])
        for result in self.results:
            yield result


class _FakeCredentials:
    def __init__(self) -> None:
        self.valid = False
        self.fetches = 0

    def has_valid_credentials(self) -> bool:
        return self.valid

    async def get_valid_credentials(self) -> Credentials:
        self.fetches += 1
        self.valid = True
        return Credentials(api_key=f"key-{self.fetches}")


class _FailingCredentials:
    def has_valid_credentials(self) -> bool:
        return False

    async def get_valid_credentials(self) -> Credentials:
        raise CredentialsUnavailableError("OPENAI_API_KEY is required")


def _driver(results: list[TranscriptResult], credentials=None):
    transport = _FakeTransport(results)
    factory = MagicMock(return_value=transport)
    driver = ChannelTranscriptionDriver(Channel.AGENT, credentials or _FakeCredentials(), transport_factory=factory)
    return driver, transport, factory


async def _collect(iterator) -> list:
    return [item async for item in iterator]


class DriverPreconditionTests(unittest.TestCase):
    def test_each_precondition_has_its_own_error(self) -> None:
        driver, _transport, factory = _driver([])
        source = _FakeSource()
        cases = [
            (MissingAudioSourceError, (None, 16000, "en-US", "high")),
            (InvalidSampleRateError, (source, 0, "en-US", "high")),
            (InvalidSampleRateError, (source, -8000, "en-US", "high")),
            (InvalidSampleRateError, (source, 16000.0, "en-US", "high")),
            (InvalidSampleRateError, (source, True, "en-US", "high")),
            (MissingSourceLanguageError, (source, 16000, "  ", "high")),
            (MissingStabilityModeError, (source, 16000, "en-US", "")),
        ]
        for error_type, args in cases:
            with self.subTest(error=error_type.__name__, args=args[1:]):
                with self.assertRaises(error_type):
                    driver.segments(*args)
        factory.assert_not_called()

    def test_precondition_errors_are_value_errors(self) -> None:
        driver, _transport, _factory = _driver([])
        with self.assertRaises(ValueError):
            driver.segments(_FakeSource(), 0, "en-US", "high")

    def test_callbacks_must_be_callable(self) -> None:
        driver, _transport, factory = _driver([])
        with self.assertRaises(MissingCallbackError):
            asyncio.run(driver.start_transcription(_FakeSource(), 16000, "en-US", "high", None, lambda text: None))
        with self.assertRaises(MissingCallbackError):
            asyncio.run(driver.start_transcription(_FakeSource(), 16000, "en-US", "high", lambda text: None, "x"))
        factory.assert_not_called()


class DriverSegmentTests(unittest.TestCase):
    def test_stabilized_session_yields_partials_and_finals(self) -> None:
        driver, transport, _factory = _driver(
            [
                TranscriptResult(items=(_item("Hello"), _item(","), _item("world", stable=False)), is_partial=True),
                TranscriptResult(items=(_item("Hello"), _item(","), _item("world"), _item(".")), is_partial=False),
            ]
        )

        segments = asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "medium")))

        self.assertEqual(
            [(segment.kind, segment.text) for segment in segments],
            [
                (SegmentKind.PARTIAL, "Hello, world"),
                (SegmentKind.FINAL, "Hello,"),
                (SegmentKind.FINAL, "world."),
            ],
        )
        self.assertEqual(transport.params[0].language, "en-US")
        self.assertEqual(transport.params[0].sample_rate, 16000)
        self.assertEqual(transport.params[0].stability, "medium")
        self.assertEqual(transport.params[0].media_encoding, "pcm")
        self.assertEqual(len(transport.chunks), 2)
        self.assertEqual(driver.cursor, 0)

    def test_stability_none_previews_until_the_utterance_closes(self) -> None:
        driver, transport, _factory = _driver(
            [
                TranscriptResult(items=(_item("Hi"), _item(",")), is_partial=True),
                TranscriptResult(items=(_item("Hi"), _item(","), _item("there")), is_partial=False),
            ]
        )

        segments = asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "none")))

        self.assertEqual([segment.text for segment in segments if segment.is_final], ["Hi, there"])
        self.assertIsNone(transport.params[0].stability)

    def test_start_transcription_routes_segments_to_callbacks(self) -> None:
        driver, _transport, _factory = _driver(
            [
                TranscriptResult(items=(_item("Hi", stable=False),), is_partial=True),
                TranscriptResult(items=(_item("Hi"), _item("there")), is_partial=False),
            ]
        )
        partials: list[str] = []
        on_final = AsyncMock()

        asyncio.run(
            driver.start_transcription(_FakeSource(), 16000, "en-US", "high", on_final, partials.append)
        )

        self.assertEqual(partials, ["Hi"])
        on_final.assert_awaited_once_with("Hi there")


class DriverCredentialTests(unittest.TestCase):
    def test_transport_is_reused_while_credentials_stay_valid(self) -> None:
        credentials = _FakeCredentials()
        driver, _transport, factory = _driver([], credentials=credentials)

        asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "low")))
        asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "low")))

        self.assertEqual(credentials.fetches, 1)
        factory.assert_called_once()

    def test_expired_credentials_are_reacquired_before_the_next_session(self) -> None:
        credentials = _FakeCredentials()
        driver, _transport, factory = _driver([], credentials=credentials)

        asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "low")))
        credentials.valid = False
        asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "low")))

        self.assertEqual(credentials.fetches, 2)
        self.assertEqual(factory.call_count, 2)
        self.assertEqual(factory.call_args.args[0].api_key, "key-2")

    def test_credential_failure_propagates_to_the_caller(self) -> None:
        driver, _transport, factory = _driver([], credentials=_FailingCredentials())
        with self.assertRaises(CredentialsUnavailableError):
            asyncio.run(_collect(driver.segments(_FakeSource(), 16000, "en-US", "low")))
        factory.assert_not_called()


class _FakeRealtimeConnection:
    def __init__(self, events: list[SimpleNamespace], append_error: Exception | None = None) -> None:
        self._events = events
        self._append_error = append_error
        self.closed = asyncio.Event()
        self.appended: list[str] = []
        self.input_audio_buffer = SimpleNamespace(append=self._append)
        self.session = SimpleNamespace(update=AsyncMock())

    async def _append(self, audio: str) -> None:
        if self._append_error is not None:
            raise self._append_error
        self.appended.append(audio)

    async def close(self) -> None:
        self.closed.set()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        await self.closed.wait()
        for event in self._events:
            yield event


def _client_for(*connections_or_errors) -> MagicMock:
    managers = []
    for entry in connections_or_errors:
        manager = MagicMock()
        if isinstance(entry, Exception):
            manager.enter = AsyncMock(side_effect=entry)
        else:
            manager.enter = AsyncMock(return_value=entry)
        managers.append(manager)
    client = MagicMock()
    client.realtime.connect = MagicMock(side_effect=managers)
    return client


async def _chunks(*chunks: bytes):
    for chunk in chunks:
        yield chunk


def _delta(item_id: str, delta: str) -> SimpleNamespace:
    return SimpleNamespace(type=RealtimeTranscriptionTransport.DELTA_EVENT, item_id=item_id, delta=delta)


def _completed(item_id: str, transcript: str) -> SimpleNamespace:
    return SimpleNamespace(type=RealtimeTranscriptionTransport.COMPLETED_EVENT, item_id=item_id, transcript=transcript)


class RealtimeTransportEventTests(unittest.TestCase):
    def test_deltas_accumulate_with_only_the_last_item_unstable(self) -> None:
        items = RealtimeItemTracker()
        [first] = RealtimeTranscriptionTransport._to_results(_delta("it_1", "Hello,"), items)
        [second] = RealtimeTranscriptionTransport._to_results(_delta("it_1", " world"), items)

        self.assertTrue(first.is_partial)
        self.assertEqual([(item.content, item.is_stable) for item in first.items], [("Hello", True), (",", False)])
        self.assertEqual(
            [(item.content, item.is_stable) for item in second.items],
            [("Hello", True), (",", True), ("world", False)],
        )

    def test_completed_event_closes_the_utterance(self) -> None:
        items = RealtimeItemTracker(current_id="it_1", text="Hello")
        [result] = RealtimeTranscriptionTransport._to_results(_completed("it_1", "Hello there."), items)

        self.assertFalse(result.is_partial)
        self.assertTrue(all(item.is_stable for item in result.items))
        self.assertIsNone(items.current_id)
        self.assertEqual(items.text, "")

    def test_failed_item_becomes_an_empty_closing_result(self) -> None:
        items = RealtimeItemTracker(current_id="it_1", text="Hel")
        [result] = RealtimeTranscriptionTransport._to_results(
            SimpleNamespace(
                type=RealtimeTranscriptionTransport.FAILED_EVENT,
                item_id="it_1",
                error=SimpleNamespace(message="audio too short"),
            ),
            items,
        )
        self.assertFalse(result.is_partial)
        self.assertTrue(result.is_empty)
        self.assertIsNone(items.current_id)

    def test_new_item_closes_the_one_still_in_flight(self) -> None:
        items = RealtimeItemTracker()
        RealtimeTranscriptionTransport._to_results(_delta("it_1", "Hello, wor"), items)
        closing, partial = RealtimeTranscriptionTransport._to_results(_delta("it_2", "Next"), items)

        self.assertFalse(closing.is_partial)
        self.assertEqual([item.content for item in closing.items], ["Hello", ",", "wor"])
        self.assertTrue(all(item.is_stable for item in closing.items))
        self.assertTrue(partial.is_partial)
        self.assertEqual([item.content for item in partial.items], ["Next"])
        self.assertEqual(items.current_id, "it_2")
        self.assertEqual(items.text, "Next")

        # Late events for the superseded item are dropped and forgotten.
        self.assertEqual(RealtimeTranscriptionTransport._to_results(_delta("it_1", "ld"), items), [])
        self.assertEqual(RealtimeTranscriptionTransport._to_results(_completed("it_1", "Hello, world."), items), [])
        self.assertNotIn("it_1", items.closed)
        self.assertEqual(items.current_id, "it_2")

        [final] = RealtimeTranscriptionTransport._to_results(_completed("it_2", "Next one."), items)
        self.assertFalse(final.is_partial)
        self.assertIsNone(items.current_id)

    def test_item_switch_keeps_stabilized_segments_from_repeating(self) -> None:
        items = RealtimeItemTracker()
        results = []
        for event in (
            _delta("it_1", "One, two"),
            _delta("it_2", "Three, four"),
            _completed("it_1", "One, two."),
            _completed("it_2", "Three, four."),
        ):
            results.extend(RealtimeTranscriptionTransport._to_results(event, items))

        finals = []
        cursor = 0
        for result in results:
            output = stabilize(result, cursor, stabilization_enabled=True)
            cursor = output.cursor
            if output.final is not None:
                finals.append(output.final.text)
        self.assertEqual(finals, ["One,", "two", "Three,", "four."])

    def test_superseded_items_are_bounded(self) -> None:
        items = RealtimeItemTracker()
        for index in range(40):
            RealtimeTranscriptionTransport._to_results(_delta(f"it_{index}", "word"), items)
        self.assertEqual(len(items.closed), items.closed.maxlen)
        self.assertEqual(items.current_id, "it_39")

    def test_error_event_raises(self) -> None:
        with self.assertRaises(TranscriptionTransportError):
            RealtimeTranscriptionTransport._to_results(
                SimpleNamespace(type="error", error=SimpleNamespace(message="session expired")),
                RealtimeItemTracker(),
            )

    def test_unrelated_events_are_ignored(self) -> None:
        self.assertEqual(
            RealtimeTranscriptionTransport._to_results(
                SimpleNamespace(type="input_audio_buffer.committed"),
                RealtimeItemTracker(),
            ),
            [],
        )


class RealtimeTransportSessionTests(unittest.TestCase):
    def test_session_config_uses_primary_language_subtag(self) -> None:
        transport = RealtimeTranscriptionTransport(MagicMock())
        config = transport._session_config(SessionParameters(language="es-US", sample_rate=16000))
        audio_input = config["audio"]["input"]
        self.assertEqual(audio_input["transcription"]["language"], "es")
        self.assertEqual(audio_input["format"], {"type": "audio/pcm", "rate": 24000})
        self.assertEqual(audio_input["turn_detection"]["type"], "server_vad")

    def test_fallback_session_model_is_promoted(self) -> None:
        connection = _FakeRealtimeConnection([])
        client = _client_for(_api_status_error(404, "model not found"), connection)
        transport = RealtimeTranscriptionTransport(client)
        transport._session_models = ["primary-bad", "fallback-good"]

        result = asyncio.run(transport._connect(SessionParameters(language="en-US", sample_rate=24000)))

        self.assertIs(result, connection)
        self.assertEqual(transport._active_session_model_index, 1)
        self.assertEqual(
            [call.kwargs["model"] for call in client.realtime.connect.call_args_list],
            ["primary-bad", "fallback-good"],
        )
        connection.session.update.assert_awaited_once()

    def test_all_session_models_failing_raises_transport_error(self) -> None:
        client = _client_for(_api_status_error(404, "nope"), _api_status_error(404, "still nope"))
        transport = RealtimeTranscriptionTransport(client)
        transport._session_models = ["a", "b"]

        with self.assertRaises(TranscriptionTransportError) as raised:
            asyncio.run(transport._connect(SessionParameters(language="en-US", sample_rate=24000)))
        self.assertIn("still nope", str(raised.exception))

    def test_stream_uploads_audio_and_maps_events(self) -> None:
        chunk = b"\x01\x00\x02\x00"
        events = [
            SimpleNamespace(type=RealtimeTranscriptionTransport.DELTA_EVENT, item_id="it_1", delta="Hello,"),
            SimpleNamespace(type=RealtimeTranscriptionTransport.DELTA_EVENT, item_id="it_1", delta=" world"),
            SimpleNamespace(
                type=RealtimeTranscriptionTransport.COMPLETED_EVENT,
                item_id="it_1",
                transcript="Hello, world.",
            ),
        ]

        async def run():
            connection = _FakeRealtimeConnection(events)
            transport = RealtimeTranscriptionTransport(_client_for(connection))
            params = SessionParameters(language="en-US", sample_rate=24000)
            results = await _collect(transport.stream(_chunks(chunk), params))
            return connection, results

        connection, results = asyncio.run(run())

        self.assertEqual(connection.appended, [base64.b64encode(chunk).decode("ascii")])
        self.assertEqual([result.is_partial for result in results], [True, True, False])
        self.assertEqual([item.content for item in results[-1].items], ["Hello", ",", "world", "."])

    def test_upload_failure_surfaces_as_transport_error(self) -> None:
        async def run():
            connection = _FakeRealtimeConnection([], append_error=RuntimeError("socket closed"))
            transport = RealtimeTranscriptionTransport(_client_for(connection))
            params = SessionParameters(language="en-US", sample_rate=24000)
            return await _collect(transport.stream(_chunks(b"\x00\x00"), params))

        with self.assertRaises(TranscriptionTransportError):
            asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
