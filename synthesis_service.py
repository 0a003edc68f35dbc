from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass
from typing import Any, Final

from credentials import OpenAIClientCache
from translation_service import TranslationService

SYNTHESIS_SAMPLE_RATE: Final[int] = 24000
SYNTHESIS_ENGINES: Final[tuple[str, ...]] = ("gpt-4o-mini-tts", "tts-1", "tts-1-hd")
SYNTHESIS_VOICES: Final[tuple[str, ...]] = (
    "alloy",
    "ash",
    "ballad",
    "coral",
    "echo",
    "fable",
    "nova",
    "onyx",
    "sage",
    "shimmer",
)
# Engines that accept free-form delivery instructions.
_INSTRUCTABLE_ENGINES: Final[frozenset[str]] = frozenset({"gpt-4o-mini-tts"})


class SynthesisError(RuntimeError):
    pass


@dataclass(frozen=True)
class SynthesizedSpeech:
    audio: bytes
    sample_rate: int = SYNTHESIS_SAMPLE_RATE

    @property
    def duration_s(self) -> float:
        return len(self.audio) / 2 / float(self.sample_rate)

    def as_base64(self) -> str:
        return base64.b64encode(self.audio).decode("ascii")


class SpeechSynthesisService:
    def __init__(self, clients: OpenAIClientCache) -> None:
        self._clients = clients

    async def synthesize(self, text: str, lang: str, engine: str, voice: str) -> SynthesizedSpeech:
        """Raw 16-bit mono PCM at 24 kHz for ``text`` spoken in ``lang``."""
        cleaned = re.sub(r"\s+", " ", text or "").strip()
        if not cleaned:
            return SynthesizedSpeech(audio=b"")
        request: dict[str, Any] = {
            "model": engine,
            "voice": voice,
            "input": cleaned,
            "response_format": "pcm",
        }
        if engine in _INSTRUCTABLE_ENGINES:
            request["instructions"] = (
                f"Speak in {TranslationService.language_name(lang)} ({lang}) with a calm, "
                "clear customer-service tone."
            )
        client = await self._clients.get()
        try:
            response = await client.audio.speech.create(**request)
        except Exception as exc:  # noqa: BLE001 - API boundary
            raise SynthesisError(f"Speech synthesis failed: {exc}") from exc
        speech = SynthesizedSpeech(audio=response.content)
        logging.debug(
            "speech_synthesized engine=%s voice=%s lang=%s duration_s=%.2f",
            engine,
            voice,
            lang,
            speech.duration_s,
        )
        return speech
