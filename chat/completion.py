import logging
import time

import httpx
from django.conf import settings
from django.utils.text import Truncator

from .exceptions import UpstreamError

log = logging.getLogger("parley")


def _extract_reply(payload) -> str | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return None
    return content.strip() or None


class OpenAICompletionBackend:
    """Blocking client for an OpenAI-compatible /chat/completions endpoint."""

    def __init__(self, api_key=None, base_url=None, model=None,
                 connect_timeout=None, request_timeout=None, transport=None):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.model = model or settings.CHAT_MODEL
        self.connect_timeout = connect_timeout if connect_timeout is not None else settings.CHAT_CONNECT_TIMEOUT
        self.request_timeout = request_timeout if request_timeout is not None else settings.CHAT_REQUEST_TIMEOUT
        self._transport = transport

    def __repr__(self):
        return f"<OpenAICompletionBackend model={self.model} base_url={self.base_url}>"

    def client_timeout(self) -> httpx.Timeout | None:
        """Configured timeouts, or None to keep httpx's default."""
        if self.connect_timeout is None and self.request_timeout is None:
            return None
        return httpx.Timeout(self.request_timeout, connect=self.connect_timeout)

    def complete(self, messages: list[dict]) -> str | None:
        if not self.api_key:
            raise UpstreamError("OPENAI_API_KEY is not configured")

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        payload = {"model": self.model, "messages": messages}
        url = f"{self.base_url}/chat/completions"

        client_kwargs = {"transport": self._transport}
        timeout = self.client_timeout()
        if timeout is not None:
            client_kwargs["timeout"] = timeout

        try:
            t0 = time.time()
            with httpx.Client(**client_kwargs) as client:
                r = client.post(url, json=payload, headers=headers)
            r.raise_for_status()
            data = r.json()
            dt_ms = (time.time() - t0) * 1000.0
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise UpstreamError(str(e)) from e
        except ValueError as e:
            raise UpstreamError(f"invalid JSON from completion service: {e}") from e

        reply = _extract_reply(data)
        log.info("Completion %s %.0fms | prompt=%s",
                 self.model,
                 dt_ms,
                 Truncator(messages[-1]["content"] if messages else "").chars(120))
        return reply
