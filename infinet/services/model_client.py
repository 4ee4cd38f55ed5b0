"""
Model Backend Client - OpenAI-compatible chat completions and image generation over raw HTTP.

Streaming responses are Server-Sent Events; each ``data:`` line carries
``{"choices": [{"delta": {"content": "..."}}]}`` until ``data: [DONE]``.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from infinet.config import settings
from infinet.errors import ModelBackendError, ModelBackendTimeout

logger = logging.getLogger(__name__)


def parse_sse_line(line: str) -> Optional[str]:
    """
    Extract the content delta from one SSE line.

    Returns None for blank lines, comments, ``[DONE]`` and malformed
    frames (which are logged and skipped).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None
    try:
        frame = json.loads(data)
        return frame["choices"][0]["delta"].get("content") or None
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
        logger.warning(f"Skipping malformed stream frame: {data[:200]}")
        return None


class ChatStream:
    """An open streaming response whose status has already been checked."""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response

    async def deltas(self) -> AsyncIterator[str]:
        try:
            async for line in self._response.aiter_lines():
                if line.strip() == "data: [DONE]":
                    break
                content = parse_sse_line(line)
                if content:
                    yield content
        except httpx.TimeoutException as e:
            raise ModelBackendTimeout(f"Model stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ModelBackendError(502, f"Model stream interrupted: {e}") from e

    async def aclose(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


class ModelBackendClient:
    def __init__(
        self,
        api_url: Optional[str] = None,
        image_api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.api_url = api_url or settings.model_api_url
        self.image_api_url = image_api_url or settings.image_api_url
        self.api_key = api_key if api_key is not None else settings.model_api_key
        self.timeout = timeout or settings.model_timeout_seconds

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _chat_body(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        stream: bool,
    ) -> Dict[str, Any]:
        return {
            "model": model or settings.default_model,
            "messages": messages,
            "temperature": settings.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or settings.max_tokens,
            "stream": stream,
        }

    async def open_chat_stream(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> ChatStream:
        """
        Send the request and wait for response headers.

        Raises ModelBackendError on a non-2xx status (the body is read for
        the log) and ModelBackendTimeout when the backend does not answer.
        """
        client = httpx.AsyncClient(timeout=self.timeout)
        request = client.build_request(
            "POST",
            self.api_url,
            json=self._chat_body(messages, model, temperature, max_tokens, stream=True),
            headers={**self._headers(), "Accept": "text/event-stream"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            await client.aclose()
            raise ModelBackendTimeout(f"Model backend timed out: {e}") from e
        except httpx.HTTPError as e:
            await client.aclose()
            raise ModelBackendError(502, f"Model backend unreachable: {e}") from e

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            await client.aclose()
            logger.error(f"Model backend returned {response.status_code}: {body[:200]}")
            raise ModelBackendError(response.status_code, body)

        return ChatStream(client, response)

    async def stream_chat(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas until the stream ends."""
        stream = await self.open_chat_stream(messages, model, temperature, max_tokens)
        try:
            async for delta in stream.deltas():
                yield delta
        finally:
            await stream.aclose()

    async def complete(
        self,
        messages: List[Dict[str, Any]],
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Non-streaming completion; returns the assistant message text."""
        data = await self._post_json(
            self.api_url,
            self._chat_body(messages, model, temperature, max_tokens, stream=False),
        )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ModelBackendError(502, f"Unexpected completion payload: {str(data)[:200]}") from e

    async def generate_image(
        self,
        prompt: str,
        model: Optional[str] = None,
        width: int = 1024,
        height: int = 1024,
        steps: Optional[int] = None,
        style_preset: Optional[str] = None,
        negative_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Generate images; returns ``{"images": [...], "model": ...}``."""
        body: Dict[str, Any] = {
            "model": model or settings.default_image_model,
            "prompt": prompt,
            "width": width,
            "height": height,
        }
        if steps:
            body["steps"] = steps
        if style_preset:
            body["style_preset"] = style_preset
        if negative_prompt:
            body["negative_prompt"] = negative_prompt

        data = await self._post_json(self.image_api_url, body)
        images = data.get("images")
        if images is None:
            images = [img.get("b64_json") or img.get("url") for img in data.get("data", [])]
        return {"images": images, "model": body["model"]}

    async def _post_json(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(url, json=body, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ModelBackendTimeout(f"Backend timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ModelBackendError(502, f"Backend unreachable: {e}") from e

        if r.status_code >= 400:
            logger.error(f"Backend {url} returned {r.status_code}: {r.text[:200]}")
            raise ModelBackendError(r.status_code, r.text)
        return r.json()


_client: Optional[ModelBackendClient] = None


def get_model_client() -> ModelBackendClient:
    """FastAPI dependency / singleton accessor."""
    global _client
    if _client is None:
        _client = ModelBackendClient()
    return _client
