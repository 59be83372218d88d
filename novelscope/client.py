"""OpenAI-compatible chat completion client with token streaming."""
import json, logging
from dataclasses import dataclass
from typing import Iterator, Optional, Any

import requests

from .config import Settings
from .errors import NetworkError, ParseError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"
CONNECT_TIMEOUT = 15


@dataclass
class ConnectionStatus:
    ok: bool
    message: str


def _error_message(r: requests.Response) -> str:
    """Best-effort `error.message` from an error body, else the HTTP reason."""
    try:
        body = r.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return r.reason or ""


def parse_stream_line(line: str) -> Optional[str]:
    """
    Text delta carried by one SSE line.

    Returns None for lines that carry nothing (keep-alives, comments, chunks
    without ``choices[0].delta.content``). Raises ParseError for a data line
    whose payload is not JSON.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX):].strip()
    try:
        obj: Any = json.loads(data)
    except json.JSONDecodeError as e:
        raise ParseError(f"malformed stream chunk: {data[:80]!r}") from e
    try:
        content = obj["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content or None


class CompletionClient:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def _headers(self, api_key: Optional[str] = None) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key if api_key is not None else self.settings.api_key}",
        }

    def _url(self, path: str, base_url: Optional[str] = None) -> str:
        return (base_url or self.settings.base_url).rstrip("/") + path

    def stream_chat(self, prompt: str) -> Iterator[str]:
        """Yield text deltas from a streaming chat completion."""
        payload = {
            "model": self.settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
            "stream": True,
        }
        try:
            r = self.session.post(self._url("/chat/completions"), json=payload, headers=self._headers(),
                                  stream=True, timeout=self.settings.request_timeout)
        except requests.RequestException as e:
            raise NetworkError(f"request failed: {e}") from e

        try:
            if not 200 <= r.status_code < 300:
                raise NetworkError(f"API request failed: {r.status_code} {_error_message(r)}".rstrip(),
                                   status_code=r.status_code)
            for raw in r.iter_lines():
                if not raw:
                    continue
                line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
                if line.startswith(DATA_PREFIX) and line[len(DATA_PREFIX):].strip() == DONE_MARKER:
                    break
                try:
                    delta = parse_stream_line(line)
                except ParseError as e:
                    logger.debug("Skipping chunk: %s", e)
                    continue
                if delta:
                    yield delta
        except requests.RequestException as e:
            raise NetworkError(f"stream interrupted: {e}") from e
        finally:
            r.close()

    def test_connection(self, api_key: Optional[str] = None, base_url: Optional[str] = None) -> ConnectionStatus:
        """GET `{base_url}/models`; any 2xx counts as connected. Never raises."""
        key = api_key if api_key is not None else self.settings.api_key
        if not key:
            return ConnectionStatus(False, "no API key configured")
        try:
            r = self.session.get(self._url("/models", base_url), headers=self._headers(key), timeout=CONNECT_TIMEOUT)
        except requests.RequestException as e:
            return ConnectionStatus(False, f"connection failed: {e}")
        try:
            if 200 <= r.status_code < 300:
                return ConnectionStatus(True, "API connection OK")
            return ConnectionStatus(False, f"connection failed: {r.status_code} {_error_message(r)}".rstrip())
        finally:
            r.close()
