from __future__ import annotations

import asyncio
import base64
import inspect
import logging
import numbers
import os
from contextlib import aclosing, suppress
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from openai import AsyncOpenAI

from audio_encoder import MEDIA_ENCODING, encode_audio_frames, resample_pcm16
from audio_sources import AudioSource
from channel_config import Channel, primary_language
from config_utils import read_float_env, read_int_env
from credentials import CredentialProvider, Credentials
from segment_stabilizer import Segment, TranscriptResult, is_stabilization_enabled, stabilize, tokenize_transcript

REALTIME_SAMPLE_RATE = 24000

SegmentCallback = Callable[[str], Union[Awaitable[None], None]]


class TranscriptionPreconditionError(ValueError):
    pass


class MissingAudioSourceError(TranscriptionPreconditionError):
    pass


class InvalidSampleRateError(TranscriptionPreconditionError):
    pass


class MissingSourceLanguageError(TranscriptionPreconditionError):
    pass


class MissingStabilityModeError(TranscriptionPreconditionError):
    pass


class MissingCallbackError(TranscriptionPreconditionError):
    pass


class TranscriptionTransportError(RuntimeError):
    pass


@dataclass(frozen=True)
class SessionParameters:
    language: str
    sample_rate: int
    stability: Optional[str] = None
    media_encoding: str = MEDIA_ENCODING


@dataclass
class RealtimeItemTracker:
    """The realtime item currently being transcribed, plus items closed before completing."""

    current_id: Optional[str] = None
    text: str = ""
    closed: deque = field(default_factory=lambda: deque(maxlen=16))

    def reset(self) -> None:
        self.current_id = None
        self.text = ""


class TranscriptionTransport(Protocol):
    def stream(
        self,
        audio_chunks: AsyncIterator[bytes],
        params: SessionParameters,
    ) -> AsyncGenerator[TranscriptResult, None]: ...


TransportFactory = Callable[[Credentials], TranscriptionTransport]


class RealtimeTranscriptionTransport:
    """Streams PCM16 chunks into an OpenAI realtime transcription session.

    Transcript deltas only ever append, so everything but the trailing token
    of the accumulated text is reported as stable. The completion event for an
    item closes the utterance. A delta for a new item closes whatever was still
    in flight, and late events for that closed item are dropped.
    """

    DELTA_EVENT = "conversation.item.input_audio_transcription.delta"
    COMPLETED_EVENT = "conversation.item.input_audio_transcription.completed"
    FAILED_EVENT = "conversation.item.input_audio_transcription.failed"

    def __init__(self, client: AsyncOpenAI, model: str = "gpt-4o-mini-transcribe") -> None:
        self._client = client
        primary_session_model = os.getenv("REALTIME_SESSION_MODEL", "gpt-realtime-mini").strip() or "gpt-realtime-mini"
        fallback_session_model = os.getenv("REALTIME_SESSION_FALLBACK_MODEL", "gpt-realtime").strip() or "gpt-realtime"
        self._session_models = [primary_session_model]
        if fallback_session_model and fallback_session_model not in self._session_models:
            self._session_models.append(fallback_session_model)
        self._active_session_model_index = 0
        self._model = os.getenv("TRANSCRIPTION_MODEL", model).strip() or model
        self._vad_threshold = read_float_env("REALTIME_VAD_THRESHOLD", 0.45)
        self._vad_prefix_padding_ms = read_int_env("REALTIME_VAD_PREFIX_MS", 220)
        self._vad_silence_duration_ms = read_int_env("REALTIME_VAD_SILENCE_MS", 400)

    async def stream(
        self,
        audio_chunks: AsyncIterator[bytes],
        params: SessionParameters,
    ) -> AsyncGenerator[TranscriptResult, None]:
        connection = await self._connect(params)
        sender = asyncio.create_task(
            self._send_audio(connection, audio_chunks, params.sample_rate),
            name="realtime-transcription-send",
        )
        items = RealtimeItemTracker()
        try:
            async for event in connection:
                for result in self._to_results(event, items):
                    yield result
        finally:
            sender.cancel()
            outcome = await asyncio.gather(sender, return_exceptions=True)
            with suppress(Exception):
                await connection.close()
        send_error = outcome[0]
        if isinstance(send_error, Exception):
            raise TranscriptionTransportError(f"Audio upload failed: {send_error}") from send_error

    async def _connect(self, params: SessionParameters):
        last_error: Optional[Exception] = None
        for session_model_index in range(self._active_session_model_index, len(self._session_models)):
            session_model_name = self._session_models[session_model_index]
            connection = None
            try:
                connection = await self._client.realtime.connect(model=session_model_name).enter()
                await connection.session.update(session=self._session_config(params))
                self._active_session_model_index = session_model_index
                logging.debug(
                    "realtime_session_configured session_model=%s model=%s language=%s stability=%s",
                    session_model_name,
                    self._model,
                    params.language,
                    params.stability or "none",
                )
                return connection
            except Exception as exc:  # noqa: BLE001 - realtime startup boundary
                last_error = exc
                if connection is not None:
                    with suppress(Exception):
                        await connection.close()

        raise TranscriptionTransportError(
            f"Realtime transcription failed with all configured session models: {last_error}"
        ) from last_error

    def _session_config(self, params: SessionParameters) -> dict[str, Any]:
        transcription_config: dict[str, Any] = {"model": self._model}
        language = primary_language(params.language)
        if language:
            transcription_config["language"] = language
        return {
            "type": "transcription",
            "audio": {
                "input": {
                    "format": {"type": "audio/pcm", "rate": REALTIME_SAMPLE_RATE},
                    "transcription": transcription_config,
                    "turn_detection": {
                        "type": "server_vad",
                        "prefix_padding_ms": self._vad_prefix_padding_ms,
                        "silence_duration_ms": self._vad_silence_duration_ms,
                        "threshold": self._vad_threshold,
                    },
                }
            },
        }

    @staticmethod
    async def _send_audio(connection, audio_chunks: AsyncIterator[bytes], sample_rate: int) -> None:
        try:
            async for chunk in audio_chunks:
                pcm16 = resample_pcm16(chunk, sample_rate, REALTIME_SAMPLE_RATE)
                await connection.input_audio_buffer.append(audio=base64.b64encode(pcm16).decode("ascii"))
        finally:
            # Closing the socket ends the event stream on the receiving side.
            with suppress(Exception):
                await connection.close()

    @classmethod
    def _to_results(cls, event, items: RealtimeItemTracker) -> list[TranscriptResult]:
        event_type = getattr(event, "type", "")
        if event_type == cls.DELTA_EVENT:
            item_id = getattr(event, "item_id", "") or ""
            delta = getattr(event, "delta", None) or ""
            if not item_id or not delta or item_id in items.closed:
                return []
            results = []
            if items.current_id is not None and items.current_id != item_id:
                results.append(cls._close_current(items))
            items.current_id = item_id
            items.text += delta
            results.append(cls.partial_result(items.text))
            return results
        if event_type == cls.COMPLETED_EVENT:
            item_id = getattr(event, "item_id", "") or ""
            if item_id in items.closed:
                items.closed.remove(item_id)
                return []
            results = []
            if items.current_id == item_id:
                items.reset()
            elif items.current_id is not None:
                results.append(cls._close_current(items))
            transcript = getattr(event, "transcript", None) or ""
            results.append(TranscriptResult(items=tuple(tokenize_transcript(transcript, is_stable=True)), is_partial=False))
            return results
        if event_type == cls.FAILED_EVENT:
            item_id = getattr(event, "item_id", "") or ""
            message = getattr(getattr(event, "error", None), "message", None) or "Realtime transcription failed"
            logging.warning("realtime_item_failed item_id=%s error=%s", item_id, message)
            if item_id in items.closed:
                items.closed.remove(item_id)
                return []
            if items.current_id != item_id:
                return []
            items.reset()
            # Abandon the utterance: an empty closing result resets the cursor.
            return [TranscriptResult(items=(), is_partial=False)]
        if event_type == "error":
            message = getattr(getattr(event, "error", None), "message", None) or "Unknown realtime transcription error"
            raise TranscriptionTransportError(str(message))
        return []

    @staticmethod
    def _close_current(items: RealtimeItemTracker) -> TranscriptResult:
        """Close the in-flight item with what has been heard so far."""
        logging.debug("realtime_item_superseded item_id=%s", items.current_id)
        items.closed.append(items.current_id)
        text = items.text
        items.reset()
        return TranscriptResult(items=tuple(tokenize_transcript(text, is_stable=True)), is_partial=False)

    @staticmethod
    def partial_result(text: str) -> TranscriptResult:
        items = tokenize_transcript(text)
        last_index = len(items) - 1
        return TranscriptResult(
            items=tuple(replace(item, is_stable=index < last_index) for index, item in enumerate(items)),
            is_partial=True,
        )


def _default_transport_factory(credentials: Credentials) -> TranscriptionTransport:
    return RealtimeTranscriptionTransport(AsyncOpenAI(api_key=credentials.api_key))


def validate_session_request(
    audio_source: Optional[AudioSource],
    sample_rate: Any,
    source_language: Optional[str],
    stability_mode: Optional[str],
) -> None:
    if audio_source is None or not callable(getattr(audio_source, "frames", None)):
        raise MissingAudioSourceError("audio_source is required")
    if isinstance(sample_rate, bool) or not isinstance(sample_rate, numbers.Integral) or sample_rate <= 0:
        raise InvalidSampleRateError("sample_rate is required as a positive integer")
    if not (source_language or "").strip():
        raise MissingSourceLanguageError("source_language is required")
    if not (stability_mode or "").strip():
        raise MissingStabilityModeError("stability_mode is required")


class ChannelTranscriptionDriver:
    """One channel's transcription sessions, run one at a time.

    The transport is kept between sessions while the credential provider
    still reports valid credentials; otherwise it is rebuilt from fresh ones
    before the next session opens. Failures to acquire credentials propagate.
    """

    def __init__(
        self,
        channel: Channel,
        credentials: CredentialProvider,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self.channel = channel
        self._credentials = credentials
        self._transport_factory = transport_factory or _default_transport_factory
        self._transport: Optional[TranscriptionTransport] = None
        self._cursor = 0

    @property
    def cursor(self) -> int:
        return self._cursor

    def segments(
        self,
        audio_source: AudioSource,
        sample_rate: int,
        source_language: str,
        stability_mode: str,
    ) -> AsyncIterator[Segment]:
        """Validate now, then lazily yield segments for one session."""
        validate_session_request(audio_source, sample_rate, source_language, stability_mode)
        return self._iter_segments(audio_source, int(sample_rate), source_language.strip(), stability_mode.strip())

    async def start_transcription(
        self,
        audio_source: AudioSource,
        sample_rate: int,
        source_language: str,
        stability_mode: str,
        on_final: SegmentCallback,
        on_partial: SegmentCallback,
    ) -> None:
        validate_session_request(audio_source, sample_rate, source_language, stability_mode)
        if not callable(on_final):
            raise MissingCallbackError("on_final is required")
        if not callable(on_partial):
            raise MissingCallbackError("on_partial is required")

        segments = self._iter_segments(audio_source, int(sample_rate), source_language.strip(), stability_mode.strip())
        async with aclosing(segments):
            async for segment in segments:
                outcome = (on_final if segment.is_final else on_partial)(segment.text)
                if inspect.isawaitable(outcome):
                    await outcome

    async def _iter_segments(
        self,
        audio_source: AudioSource,
        sample_rate: int,
        source_language: str,
        stability_mode: str,
    ) -> AsyncGenerator[Segment, None]:
        stabilization_enabled = is_stabilization_enabled(stability_mode)
        transport = await self._acquire_transport()
        params = SessionParameters(
            language=source_language,
            sample_rate=sample_rate,
            stability=stability_mode if stabilization_enabled else None,
        )
        self._cursor = 0
        logging.info(
            "transcription_session_started channel=%s language=%s sample_rate=%d stabilization=%s",
            self.channel.value,
            source_language,
            sample_rate,
            stability_mode if stabilization_enabled else "off",
        )
        chunks = encode_audio_frames(audio_source.frames(), sample_rate)
        try:
            async with aclosing(transport.stream(chunks, params)) as results:
                async for result in results:
                    output = stabilize(result, self._cursor, stabilization_enabled)
                    self._cursor = output.cursor
                    for segment in output.segments():
                        logging.debug(
                            "transcript_segment channel=%s kind=%s cursor=%d text=%r",
                            self.channel.value,
                            segment.kind.value,
                            self._cursor,
                            segment.text[:120],
                        )
                        yield segment
        finally:
            self._cursor = 0
            logging.info("transcription_session_ended channel=%s", self.channel.value)

    async def _acquire_transport(self) -> TranscriptionTransport:
        if self._transport is not None and self._credentials.has_valid_credentials():
            return self._transport
        credentials = await self._credentials.get_valid_credentials()
        self._transport = self._transport_factory(credentials)
        return self._transport
