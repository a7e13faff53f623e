"""Text and vision model providers for the generation chain."""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List

import httpx

from ..config import Settings, get_settings
from ..errors import ProviderAttemptFailed
from .base import GenerationRequest, get_http_client, request_json

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 900_000


def _chat_messages(request: GenerationRequest) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    if request.image_url:
        messages.append(
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": request.user_prompt},
                    {"type": "image_url", "image_url": {"url": request.image_url}},
                ],
            }
        )
    else:
        messages.append({"role": "user", "content": request.user_prompt})
    return messages


def _chat_content(provider: str, payload: Any) -> str:
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ProviderAttemptFailed(provider, "malformed_completion") from None
    if isinstance(content, list):
        content = "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    text = str(content or "").strip()
    if not text:
        raise ProviderAttemptFailed(provider, "empty_completion")
    return text


class OpenAIChatProvider:
    """Chat completions; handles image requests by passing the URL through."""

    name = "openai"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        name: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        vision_model: str | None = None,
        supports_vision: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client
        if name:
            self.name = name
        self.api_key = api_key if api_key is not None else self.settings.openai_api_key
        self.base_url = (base_url or self.settings.openai_base_url).rstrip("/")
        self.model = model or self.settings.openai_model
        self.vision_model = vision_model or self.settings.openai_vision_model
        self.supports_vision = supports_vision

    async def attempt(self, request: GenerationRequest) -> str:
        if not (self.api_key or "").strip():
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        if request.image_url and not self.supports_vision:
            raise ProviderAttemptFailed(self.name, "vision_unsupported")
        body = {
            "model": self.vision_model if request.image_url else self.model,
            "messages": _chat_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        payload = await request_json(
            self.name,
            "POST",
            f"{self.base_url}/chat/completions",
            client=self.client,
            json_body=body,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self.settings.generation_timeout_s,
            context={"model": body["model"]},
        )
        return _chat_content(self.name, payload)


def build_compat_provider(settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> OpenAIChatProvider:
    """Any OpenAI-compatible endpoint (self-hosted or third party); text only."""

    settings = settings or get_settings()
    return OpenAIChatProvider(
        settings,
        client=client,
        name="compat",
        api_key=settings.compat_api_key or "",
        base_url=settings.compat_base_url or "http://localhost:8000/v1",
        model=settings.compat_model or settings.openai_model,
        supports_vision=False,
    )


class GeminiProvider:
    name = "gemini"

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings or get_settings()
        self.client = client

    async def _inline_image(self, image_url: str) -> Dict[str, str]:
        if image_url.startswith("data:image/"):
            header, _, data = image_url.partition(",")
            mime = header[5:].split(";", 1)[0] or "image/jpeg"
            return {"mimeType": mime, "data": data}
        http = self.client or await get_http_client()
        try:
            resp = await http.get(image_url, timeout=self.settings.generation_timeout_s)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderAttemptFailed(self.name, f"image_fetch_failed: {type(exc).__name__}") from exc
        if len(resp.content) > MAX_IMAGE_BYTES:
            raise ProviderAttemptFailed(self.name, "image_too_large")
        content_type = resp.headers.get("content-type", "")
        mime = content_type.split(";", 1)[0].strip() if content_type.startswith("image/") else "image/jpeg"
        return {"mimeType": mime, "data": base64.b64encode(resp.content).decode("ascii")}

    async def attempt(self, request: GenerationRequest) -> str:
        api_key = (self.settings.gemini_api_key or "").strip()
        if not api_key:
            raise ProviderAttemptFailed(self.name, "missing_credentials")
        parts: List[Dict[str, Any]] = [{"text": request.user_prompt}]
        if request.image_url:
            parts.append({"inlineData": await self._inline_image(request.image_url)})
        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": request.temperature, "maxOutputTokens": request.max_tokens},
        }
        if request.system_prompt:
            body["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        model = self.settings.gemini_model
        payload = await request_json(
            self.name,
            "POST",
            f"{self.settings.gemini_base_url.rstrip('/')}/models/{model}:generateContent",
            client=self.client,
            json_body=body,
            params={"key": api_key},
            timeout=self.settings.generation_timeout_s,
            context={"model": model},
        )
        try:
            candidate_parts = payload["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError):
            raise ProviderAttemptFailed(self.name, "malformed_completion") from None
        text = "".join(str(part.get("text") or "") for part in candidate_parts if isinstance(part, dict)).strip()
        if not text:
            raise ProviderAttemptFailed(self.name, "empty_completion")
        return text


__all__ = ["GeminiProvider", "OpenAIChatProvider", "build_compat_provider"]
