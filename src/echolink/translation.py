"""Transcript translation via the MyMemory lookup API.

Translation is best-effort: the client never raises, a failed lookup
returns the original text with ``success=False``.
"""

import logging
from dataclasses import dataclass
from typing import Any

import aiohttp

from echolink.config import TranslationConfig

logger = logging.getLogger(__name__)

# Common language codes
LANGUAGES: dict[str, str] = {
    "en": "English",
    "ur": "Urdu",
    "hi": "Hindi",
    "ar": "Arabic",
    "es": "Spanish",
    "fr": "French",
    "de": "German",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "pt": "Portuguese",
    "ru": "Russian",
    "it": "Italian",
    "tr": "Turkish",
    "nl": "Dutch",
    "pl": "Polish",
    "id": "Indonesian",
    "th": "Thai",
    "vi": "Vietnamese",
    "bn": "Bengali",
}


@dataclass(frozen=True)
class TranslationResult:
    translated_text: str
    success: bool
    detected_language: str | None = None
    error: str | None = None


class TranslationClient:
    """Async client for the MyMemory ``/get`` endpoint."""

    def __init__(self, config: TranslationConfig) -> None:
        self.config = config
        self._session: aiohttp.ClientSession | None = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_seconds)
            )
        return self._session

    async def close(self) -> None:
        """Close aiohttp session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def translate(
        self,
        text: str,
        source_language: str | None = None,
        target_language: str | None = None,
    ) -> TranslationResult:
        """Translate text between two languages.

        Args:
            text: Text to translate
            source_language: ISO 639-1 source code (config default if None)
            target_language: ISO 639-1 target code (config default if None)

        Returns:
            Translation result; on failure the original text with success=False
        """
        source = source_language or self.config.source_language
        target = target_language or self.config.target_language

        if not text.strip():
            return TranslationResult(translated_text="", success=True)

        if source == target:
            return TranslationResult(translated_text=text, success=True)

        params = {"q": text, "langpair": f"{source}|{target}"}

        try:
            session = await self._ensure_session()
            async with session.get(self.config.api_url, params=params) as response:
                if response.status != 200:
                    raise aiohttp.ClientResponseError(
                        response.request_info,
                        response.history,
                        status=response.status,
                        message=f"API error: {response.status}",
                    )
                data: dict[str, Any] = await response.json(content_type=None)

        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            logger.warning(
                "Translation lookup failed",
                extra={"langpair": params["langpair"], "error": str(e)},
            )
            return TranslationResult(translated_text=text, success=False, error=str(e))

        response_data = data.get("responseData") or {}
        translated = response_data.get("translatedText")
        if data.get("responseStatus") == 200 and translated:
            return TranslationResult(
                translated_text=translated,
                success=True,
                detected_language=response_data.get("detectedLanguage"),
            )

        error = data.get("responseDetails") or "Translation failed"
        logger.warning(
            "Translation rejected",
            extra={"langpair": params["langpair"], "error": error},
        )
        return TranslationResult(translated_text=text, success=False, error=str(error))
