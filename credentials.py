from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from openai import AsyncOpenAI

from config_utils import read_int_env, read_optional_str_env


class CredentialsUnavailableError(RuntimeError):
    pass


@dataclass(frozen=True)
class Credentials:
    api_key: str
    expires_at: Optional[datetime] = None

    def is_valid_at(self, now: datetime, buffer: timedelta) -> bool:
        if not self.api_key:
            return False
        if self.expires_at is None:
            return True
        return now + buffer < self.expires_at


class CredentialProvider(Protocol):
    def has_valid_credentials(self) -> bool: ...

    async def get_valid_credentials(self) -> Credentials: ...


class EnvCredentialProvider:
    """API key from ``OPENAI_API_KEY_FILE`` or ``OPENAI_API_KEY``.

    A key mounted from a secret file can be rotated underneath the process;
    the file is re-read whenever the cached key is missing or about to expire.
    """

    def __init__(self, refresh_buffer: Optional[timedelta] = None) -> None:
        self._refresh_buffer = refresh_buffer or timedelta(
            seconds=read_int_env("CREDENTIAL_REFRESH_BUFFER_SECONDS", 900)
        )
        self._credentials: Optional[Credentials] = None

    def has_valid_credentials(self) -> bool:
        if self._credentials is None:
            return False
        return self._credentials.is_valid_at(datetime.now(timezone.utc), self._refresh_buffer)

    async def get_valid_credentials(self) -> Credentials:
        if self.has_valid_credentials():
            assert self._credentials is not None
            return self._credentials
        credentials = self._load()
        if not credentials.is_valid_at(datetime.now(timezone.utc), self._refresh_buffer):
            raise CredentialsUnavailableError(
                "OPENAI_API_KEY is expired or expires within the refresh buffer."
            )
        self._credentials = credentials
        logging.info(
            "credentials_refreshed expires_at=%s",
            credentials.expires_at.isoformat(timespec="seconds") if credentials.expires_at else "never",
        )
        return credentials

    def invalidate(self) -> None:
        self._credentials = None

    @staticmethod
    def _load() -> Credentials:
        key_file = read_optional_str_env("OPENAI_API_KEY_FILE")
        if key_file:
            try:
                key = Path(key_file).read_text(encoding="utf-8").strip()
            except OSError as exc:
                raise CredentialsUnavailableError(f"Unable to read OPENAI_API_KEY_FILE: {exc}") from exc
        else:
            key = (os.getenv("OPENAI_API_KEY") or "").strip()
        if not key:
            raise CredentialsUnavailableError("OPENAI_API_KEY is required for the translation pipeline.")
        return Credentials(api_key=key, expires_at=_parse_expiry(read_optional_str_env("OPENAI_API_KEY_EXPIRES_AT")))


def _parse_expiry(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        logging.warning("credentials_expiry_ignored value=%r", raw)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class OpenAIClientCache:
    """An ``AsyncOpenAI`` client rebuilt whenever its credentials are refreshed."""

    def __init__(
        self,
        credentials: CredentialProvider,
        client_factory: Optional[Callable[..., AsyncOpenAI]] = None,
    ) -> None:
        self._credentials = credentials
        self._client_factory = client_factory or AsyncOpenAI
        self._client: Optional[AsyncOpenAI] = None

    async def get(self) -> AsyncOpenAI:
        if self._client is not None and self._credentials.has_valid_credentials():
            return self._client
        credentials = await self._credentials.get_valid_credentials()
        self._client = self._client_factory(api_key=credentials.api_key)
        return self._client
