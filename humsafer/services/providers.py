"""Text-generation service handles.

Each provider exposes one ``generate`` coroutine that returns text or raises.
Clients are built lazily on first use and reused for the life of the process;
``aclose`` releases them on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx
from openai import AsyncOpenAI, BadRequestError, OpenAIError

from humsafer.config import Settings

logger = logging.getLogger(__name__)

Message = dict[str, Any]


class ProviderError(RuntimeError):
    """Raised when a provider cannot produce a completion."""


@dataclass(frozen=True)
class GenerationOptions:
    temperature: float | None = 0.7
    max_tokens: int | None = 1000
    top_p: float | None = None
    model: str | None = None


class Provider(Protocol):
    provider_id: str

    @property
    def configured(self) -> bool:
        ...

    async def generate(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        images: Sequence[str] | None = None,
    ) -> str:
        ...

    async def aclose(self) -> None:
        ...


def _last_user_text(messages: Sequence[Message]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            content = msg.get("content")
            return content if isinstance(content, str) else ""
    return ""


def _is_temperature_error(exc: OpenAIError) -> bool:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("param") == "temperature":
            return True
    return "temperature" in str(exc).lower()


class OpenAIProvider:
    """Chat completions through the official SDK (also used for OpenAI-compatible APIs)."""

    def __init__(
        self,
        provider_id: str,
        api_key: str | None,
        model: str,
        *,
        base_url: str | None = None,
        supports_images: bool = False,
    ) -> None:
        self.provider_id = provider_id
        self._api_key = api_key
        self._model = model
        self._base_url = base_url
        self._supports_images = supports_images
        self._client: AsyncOpenAI | None = None
        self._temperature_disabled = False

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self._api_key:
                raise ProviderError(f"{self.provider_id}: API key is not set")
            # one attempt per call; the chain moves on instead of retrying
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                max_retries=0,
            )
        return self._client

    def _build_messages(
        self, messages: Sequence[Message], images: Sequence[str] | None
    ) -> list[Message]:
        payload = [dict(m) for m in messages]
        if not images or not self._supports_images:
            return payload
        for msg in reversed(payload):
            if msg.get("role") == "user":
                parts: list[dict[str, Any]] = [{"type": "text", "text": msg.get("content") or ""}]
                parts.extend(
                    {"type": "image_url", "image_url": {"url": ref}} for ref in images
                )
                msg["content"] = parts
                break
        return payload

    async def _complete(self, payload: dict[str, Any]) -> str:
        resp = await self._get_client().chat.completions.create(**payload)
        try:
            return resp.choices[0].message.content or ""
        except (IndexError, AttributeError):
            return ""

    async def generate(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        images: Sequence[str] | None = None,
    ) -> str:
        payload: dict[str, Any] = {
            "model": options.model or self._model,
            "messages": self._build_messages(messages, images),
        }
        if options.max_tokens:
            payload["max_tokens"] = options.max_tokens
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.temperature is not None and not self._temperature_disabled:
            payload["temperature"] = options.temperature
        try:
            return await self._complete(payload)
        except BadRequestError as exc:
            if "temperature" not in payload or not _is_temperature_error(exc):
                raise ProviderError(f"{self.provider_id} request rejected") from exc
            logger.warning("%s: model rejected temperature, retrying without it", self.provider_id)
            self._temperature_disabled = True
            payload.pop("temperature", None)
        except OpenAIError as exc:
            raise ProviderError(f"{self.provider_id} request failed") from exc
        try:
            return await self._complete(payload)
        except OpenAIError as exc:
            raise ProviderError(f"{self.provider_id} request failed") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


class GeminiProvider:
    """Google Generative Language REST API with a fallback model."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        *,
        fallback_model: str | None = None,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 25.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.provider_id = "gemini"
        self._api_key = api_key
        self._model = model
        self._fallback_model = fallback_model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    @staticmethod
    def _build_body(messages: Sequence[Message], options: GenerationOptions) -> dict[str, Any]:
        system_parts: list[dict[str, str]] = []
        contents: list[dict[str, Any]] = []
        for msg in messages:
            content = msg.get("content")
            if not isinstance(content, str) or not content:
                continue
            role = msg.get("role")
            if role == "system":
                system_parts.append({"text": content})
                continue
            contents.append(
                {"role": "model" if role == "assistant" else "user", "parts": [{"text": content}]}
            )
        config: dict[str, Any] = {}
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if options.max_tokens:
            config["maxOutputTokens"] = options.max_tokens
        if options.top_p is not None:
            config["topP"] = options.top_p
        body: dict[str, Any] = {"contents": contents, "generationConfig": config}
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        return body

    async def _call(self, model: str, body: dict[str, Any]) -> str:
        url = f"{self._base_url}/models/{model}:generateContent"
        resp = await self._get_client().post(url, params={"key": self._api_key}, json=body)
        resp.raise_for_status()
        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(part.get("text", "") for part in parts)

    async def generate(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        images: Sequence[str] | None = None,
    ) -> str:
        if not self._api_key:
            raise ProviderError("gemini: API key is not set")
        body = self._build_body(messages, options)
        model = options.model or self._model
        try:
            return await self._call(model, body)
        except (httpx.HTTPError, ValueError) as exc:
            if not self._fallback_model or self._fallback_model == model:
                raise ProviderError("gemini request failed") from exc
            logger.warning("gemini: %s failed (%s), trying %s", model, exc, self._fallback_model)
        try:
            return await self._call(self._fallback_model, body)
        except (httpx.HTTPError, ValueError) as exc:
            raise ProviderError("gemini fallback request failed") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None


class MockProvider:
    """Offline stand-in enabled with ``MOCK_AI=true``."""

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id

    @property
    def configured(self) -> bool:
        return True

    async def generate(
        self,
        messages: Sequence[Message],
        options: GenerationOptions,
        images: Sequence[str] | None = None,
    ) -> str:
        return f"Mock response: {_last_user_text(messages)[:60]}..."

    async def aclose(self) -> None:
        return None


@dataclass(frozen=True)
class ProviderSet:
    """Process-wide provider handles, built once at startup."""

    fast: Provider
    vision: Provider
    general: Provider
    persona: Provider

    def all(self) -> list[Provider]:
        unique: dict[int, Provider] = {}
        for provider in (self.fast, self.vision, self.general, self.persona):
            unique.setdefault(id(provider), provider)
        return list(unique.values())

    async def aclose(self) -> None:
        for provider in self.all():
            try:
                await provider.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.exception("Failed to close provider %s", provider.provider_id)


def build_provider_set(settings: Settings) -> ProviderSet:
    if settings.mock_ai:
        logger.warning("MOCK_AI enabled, generation providers are stubbed")
        return ProviderSet(
            fast=MockProvider("mock-fast"),
            vision=MockProvider("mock-vision"),
            general=MockProvider("mock-general"),
            persona=MockProvider("mock-persona"),
        )
    return ProviderSet(
        fast=GeminiProvider(
            settings.google_ai_api_key,
            settings.gemini_model,
            fallback_model=settings.gemini_fallback_model,
            base_url=settings.gemini_base_url,
            timeout=settings.provider_timeout_seconds,
        ),
        vision=OpenAIProvider(
            "openai-vision",
            settings.openai_api_key,
            settings.openai_vision_model,
            supports_images=True,
        ),
        general=OpenAIProvider("openai", settings.openai_api_key, settings.openai_model),
        persona=OpenAIProvider(
            "grok",
            settings.xai_api_key,
            settings.xai_model,
            base_url=settings.xai_base_url,
        ),
    )


__all__ = [
    "GenerationOptions",
    "Provider",
    "ProviderError",
    "OpenAIProvider",
    "GeminiProvider",
    "MockProvider",
    "ProviderSet",
    "build_provider_set",
]
