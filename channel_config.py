from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Final

from config_utils import read_bool_env, read_choice_env, read_str_env
from segment_stabilizer import STABILITY_MODES, STABILITY_NONE

STREAMING_LANGUAGES: Final[tuple[str, ...]] = (
    "en-US",
    "en-GB",
    "en-AU",
    "es-US",
    "es-ES",
    "fr-FR",
    "fr-CA",
    "de-DE",
    "it-IT",
    "pt-BR",
    "pt-PT",
    "ja-JP",
    "ko-KR",
    "zh-CN",
    "hi-IN",
    "ar-SA",
)


class Channel(str, Enum):
    AGENT = "agent"
    CUSTOMER = "customer"

    @property
    def env_prefix(self) -> str:
        return self.value.upper()

    @property
    def opposite(self) -> "Channel":
        return Channel.CUSTOMER if self is Channel.AGENT else Channel.AGENT


@dataclass(frozen=True)
class ChannelSettings:
    source_language: str = "en-US"
    stability: str = STABILITY_NONE
    translate_from: str = "en"
    translate_to: str = "es"
    voice_language: str = "es-US"
    voice_engine: str = "gpt-4o-mini-tts"
    voice_id: str = "alloy"
    stream_original_audio: bool = False
    stream_translation_to_self: bool = False
    audio_feedback_enabled: bool = False

    def with_changes(self, **changes: Any) -> "ChannelSettings":
        return replace(self, **changes)


def primary_language(tag: str) -> str:
    return (tag or "").split("-", 1)[0].strip().lower()


def load_channel_settings(channel: Channel) -> ChannelSettings:
    prefix = channel.env_prefix
    source_language = read_str_env(f"{prefix}_TRANSCRIBE_LANGUAGE", "en-US")
    return ChannelSettings(
        source_language=source_language,
        stability=read_choice_env(f"{prefix}_PARTIAL_RESULTS_STABILITY", STABILITY_NONE, STABILITY_MODES),
        translate_from=read_str_env(f"{prefix}_TRANSLATE_FROM_LANGUAGE", primary_language(source_language)),
        translate_to=read_str_env(f"{prefix}_TRANSLATE_TO_LANGUAGE", "es"),
        voice_language=read_str_env(f"{prefix}_VOICE_LANGUAGE", "es-US"),
        voice_engine=read_str_env(f"{prefix}_VOICE_ENGINE", "gpt-4o-mini-tts"),
        voice_id=read_str_env(f"{prefix}_VOICE_ID", "alloy"),
        stream_original_audio=read_bool_env(f"{prefix}_STREAM_ORIGINAL_AUDIO", False),
        stream_translation_to_self=read_bool_env(f"{prefix}_STREAM_TRANSLATION_TO_SELF", False),
        audio_feedback_enabled=read_bool_env(f"{prefix}_AUDIO_FEEDBACK_ENABLED", False),
    )
