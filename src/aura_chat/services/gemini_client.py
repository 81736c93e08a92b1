from __future__ import annotations

"""Gemini REST adapter used as the completion provider.

Two capabilities are exposed: a streaming generation call that yields parsed
response chunks, and the exact token-counting call. Both go through a pooled
``requests`` session with bounded retries. Streaming responses are wrapped in
``CompletionStream`` so a caller on another thread can close the connection
while a read is in progress.
"""

from typing import Any, Dict, Iterator, List, Optional, Protocol
import json
import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import ChatConfig, get_chat_config


LOG = logging.getLogger("aura.chat.provider")


SAFETY_SETTINGS: List[Dict[str, str]] = [
    {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
    {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_MEDIUM_AND_ABOVE"},
]


class ProviderError(Exception):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class CompletionStream(Protocol):
    def __iter__(self) -> Iterator[Dict[str, Any]]: ...

    def close(self) -> None: ...


class CompletionProvider(Protocol):
    def open_stream(self, contents: List[Dict[str, Any]], model: str) -> CompletionStream: ...

    def count_tokens(self, text: str, model: str) -> int: ...


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class GeminiResponseStream:
    """Iterates the ``data:`` lines of a Gemini SSE response as dicts."""

    def __init__(self, response: requests.Response) -> None:
        self._response = response
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        try:
            for raw_line in self._response.iter_lines():
                if self._closed:
                    return
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data or data == "[DONE]":
                    continue
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    LOG.warning("provider_fragment_undecodable", extra={"length": len(data)})
                    continue
                if isinstance(parsed, dict):
                    yield parsed
        except (requests.exceptions.RequestException, AttributeError, ValueError) as exc:
            if self._closed:
                # The connection was released on purpose
                return
            raise ProviderError(f"Stream interrupted: {exc}") from exc
        finally:
            self._release()

    def _release(self) -> None:
        try:
            self._response.close()
        except Exception:
            LOG.debug("provider_stream_close_failed", exc_info=True)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()


class GeminiClient:
    def __init__(self, config: Optional[ChatConfig] = None, session: Optional[requests.Session] = None) -> None:
        self.config = config or get_chat_config()
        self._session = session or _build_session()

    def _headers(self) -> Dict[str, str]:
        if not self.config.gemini_api_key:
            raise ProviderError("GEMINI_API_KEY environment variable is not set")
        return {"x-goog-api-key": self.config.gemini_api_key, "Content-Type": "application/json"}

    def _url(self, model: str, action: str) -> str:
        return f"{self.config.gemini_base_url}/models/{model}:{action}"

    def open_stream(self, contents: List[Dict[str, Any]], model: str) -> GeminiResponseStream:
        payload = {
            "contents": contents,
            "systemInstruction": {"parts": [{"text": self.config.system_prompt}]},
            "safetySettings": SAFETY_SETTINGS,
            "generationConfig": {
                "maxOutputTokens": self.config.max_output_tokens,
                "temperature": self.config.temperature,
            },
        }
        LOG.debug("provider_stream_open", extra={"model": model, "turns": len(contents)})
        try:
            resp = self._session.post(
                self._url(model, "streamGenerateContent"),
                params={"alt": "sse"},
                headers=self._headers(),
                json=payload,
                timeout=(self.config.connect_timeout, self.config.read_timeout),
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            raise ProviderError(f"Failed to open completion stream: {exc}") from exc
        if resp.status_code >= 400:
            status = resp.status_code
            detail = ""
            try:
                detail = resp.text[:300]
            finally:
                resp.close()
            LOG.error("provider_stream_rejected", extra={"status": status, "detail": detail})
            raise ProviderError(f"Completion request rejected with status {status}", status=status)
        return GeminiResponseStream(resp)

    def count_tokens(self, text: str, model: str) -> int:
        try:
            resp = self._session.post(
                self._url(model, "countTokens"),
                headers=self._headers(),
                json={"contents": [{"role": "user", "parts": [{"text": text}]}]},
                timeout=(self.config.connect_timeout, 15),
            )
            resp.raise_for_status()
            data = resp.json()
        except requests.exceptions.RequestException as exc:
            raise ProviderError(f"Token counting failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError("Token counting returned an invalid body") from exc
        total = data.get("totalTokens") if isinstance(data, dict) else None
        if not isinstance(total, int):
            raise ProviderError("Token counting response missing totalTokens")
        return total


_client: CompletionProvider | None = None


def get_completion_provider() -> CompletionProvider:
    global _client
    if _client is None:
        _client = GeminiClient()
    return _client


def reset_completion_provider() -> None:
    global _client
    _client = None
