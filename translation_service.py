from __future__ import annotations

import os
import re
from collections import deque
from typing import Final, Optional

from openai import APIStatusError

from channel_config import primary_language
from config_utils import read_bool_env, read_int_env
from credentials import OpenAIClientCache


class TranslationError(RuntimeError):
    pass


class TranslationService:
    """Plain request/response text translation over chat completions.

    Failures propagate to the caller; the only recovery here is promoting the
    fallback model once when the primary one is rejected.
    """

    LANGUAGE_NAMES: Final[dict[str, str]] = {
        "ar": "Arabic",
        "de": "German",
        "en": "English",
        "es": "Spanish",
        "fr": "French",
        "hi": "Hindi",
        "it": "Italian",
        "ja": "Japanese",
        "ko": "Korean",
        "pt": "Portuguese",
        "zh": "Mandarin Chinese (Simplified)",
    }

    def __init__(self, clients: OpenAIClientCache, model: str = "gpt-4o-mini") -> None:
        self._clients = clients
        primary_model = os.getenv("TRANSLATION_MODEL", model).strip() or model
        fallback_model = os.getenv("TRANSLATION_FALLBACK_MODEL", "gpt-4.1-mini").strip()
        self._models = [primary_model]
        if fallback_model and fallback_model not in self._models:
            self._models.append(fallback_model)
        self._active_model_index = 0
        self._max_completion_tokens = read_int_env("TRANSLATION_MAX_TOKENS", 200)
        raw_terms = (os.getenv("PROTECTED_TERMS") or "").strip()
        self._protected_terms = [term.strip() for term in raw_terms.split(",") if term.strip()]
        self._context_enabled = read_bool_env("TRANSLATION_CONTEXT_ENABLED", True)
        self._context_turns = read_int_env("TRANSLATION_CONTEXT_TURNS", 4)
        self._context_max_chars = read_int_env("TRANSLATION_CONTEXT_MAX_CHARS", 220)
        self._recent_source: dict[tuple[str, str], deque[str]] = {}

    async def translate(self, text: str, from_lang: str, to_lang: str) -> str:
        cleaned = self._sanitize(text)
        if not cleaned:
            return ""
        source_code = primary_language(from_lang)
        target_code = primary_language(to_lang)
        if source_code and source_code == target_code:
            return cleaned

        source_name = self.language_name(from_lang)
        target_name = self.language_name(to_lang)
        system_prompt = (
            "You are a real-time interpreter for a customer-service phone call.\n"
            f"Translate the caller's fragment from {source_name} into natural spoken {target_name}.\n"
            "Rules:\n"
            "1) Keep names, numbers, account identifiers and units exactly as given.\n"
            "2) Keep the same tone and level of politeness. Do not summarize.\n"
            "3) Use context only to disambiguate. Never add content that is not in the fragment.\n"
            "4) Return only the translated text."
        )
        prompt_lines = [f"Target language: {target_name}"]
        if self._protected_terms:
            prompt_lines.append(f"Protected terms: {', '.join(self._protected_terms)}")
        context = self._context_block((source_code, target_code))
        if context:
            prompt_lines.append(f"Recent source context:\n{context}")
        prompt_lines.append(f"Text:\n{cleaned}")

        translated = await self._chat("\n\n".join(prompt_lines), system_prompt)
        if not translated:
            raise TranslationError("Translation API returned an empty response.")
        if self._is_refusal_like(translated):
            raise TranslationError("Translation API refused the request.")
        self._remember_turn((source_code, target_code), cleaned)
        return translated

    def reset_context(self) -> None:
        self._recent_source.clear()

    @classmethod
    def language_name(cls, tag: str) -> str:
        code = primary_language(tag)
        return cls.LANGUAGE_NAMES.get(code, (tag or "").strip() or "English")

    async def _chat(self, user_prompt: str, system_prompt: Optional[str] = None) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        client = await self._clients.get()
        last_exc: Optional[Exception] = None
        while self._active_model_index < len(self._models):
            model_name = self._models[self._active_model_index]
            try:
                response = await client.chat.completions.create(
                    model=model_name,
                    temperature=0.0,
                    messages=messages,
                    max_tokens=self._max_completion_tokens,
                )
                content = response.choices[0].message.content or ""
                return self._sanitize(content)
            except APIStatusError as exc:
                last_exc = exc
                # Promote to fallback model once and keep it for subsequent requests.
                if exc.status_code in (400, 404) and self._active_model_index + 1 < len(self._models):
                    self._active_model_index += 1
                    continue
                break
            except Exception as exc:  # noqa: BLE001 - API boundary
                last_exc = exc
                break
        raise TranslationError(f"Translation API failed with all configured models: {last_exc}") from last_exc

    @staticmethod
    def _sanitize(text: str) -> str:
        return re.sub(r"\s+", " ", text or "").strip()

    @staticmethod
    def _is_refusal_like(text: str) -> bool:
        normalized = TranslationService._sanitize(text).lower()
        if not normalized:
            return False
        refusal_patterns = (
            "lo siento, no puedo ayudar con eso",
            "no puedo ayudar con eso",
            "i'm sorry, i can't help with that",
            "i cannot help with that",
            "i can’t help with that",
            "i can't assist with that",
            "cannot assist with that",
        )
        return any(pattern in normalized for pattern in refusal_patterns)

    def _remember_turn(self, pair: tuple[str, str], source_text: str) -> None:
        if not self._context_enabled:
            return
        history = self._recent_source.setdefault(pair, deque(maxlen=self._context_turns))
        history.append(source_text)

    def _context_block(self, pair: tuple[str, str]) -> str:
        if not self._context_enabled:
            return ""
        items = self._recent_source.get(pair)
        if not items:
            return ""
        merged = "\n".join(items)
        return merged[-self._context_max_chars :]
