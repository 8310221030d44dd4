import json
import os
import threading
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
from httpx_socks import SyncProxyTransport
from openai import OpenAI

from .config import Config
from .exceptions import ModelCallFailed
from .history import Message, MessageRole

ROLE_NAMES = {
    MessageRole.USER: "user",
    MessageRole.MODEL: "assistant",
    MessageRole.SYSTEM: "system",
}

SOCKS_SCHEMES = frozenset({"socks", "socks4", "socks4a", "socks5", "socks5h"})

# proxy variables consulted per target scheme, in order
PROXY_ENV_KEYS = {
    "https": ("HTTPS_PROXY", "ALL_PROXY"),
    "http": ("HTTP_PROXY", "ALL_PROXY"),
}

REQUEST_TIMEOUT = 60.0


class ChatModel:
    """Model client: turns a system prompt plus messages into one reply text.

    Each send() runs on its own HTTP client; abort() closes it from the control
    thread and the blocked worker returns with "Request cancelled".
    """

    def __init__(self, config: Config):
        self.config = config
        self.debug = config.debug
        self.base_url = normalize_base_url(config.base_url)

        # httpx rejects ALL_PROXY=socks://..., so the proxy is picked here and trust_env stays off
        self.proxy_url, self.proxy_source = resolve_proxy(config.proxy, self.base_url)
        self.http_client = build_http_client(self.proxy_url)
        self.client = self._open_client(self.http_client)

        self._requests_lock = threading.Lock()
        self._active_requests: Set[httpx.Client] = set()
        self._aborted_requests: Set[httpx.Client] = set()

        self._debug_print(
            f"ChatModel ready: model={config.model}, base_url={self.base_url}, "
            f"proxy={self.proxy_url or '-'} ({self.proxy_source})"
        )

    def _debug_print(self, message: str) -> None:
        """Print debug message if debug mode is enabled."""
        if self.debug:
            print(f"\nDebug - {message}")

    def _open_client(self, http_client: httpx.Client) -> OpenAI:
        return OpenAI(
            api_key=self.config.api_key,
            base_url=self.base_url,
            http_client=http_client,
            timeout=REQUEST_TIMEOUT,
        )

    @property
    def model_name(self) -> str:
        return self.config.model

    def set_model(self, name: str) -> None:
        self.config.model = name
        self._debug_print(f"Model switched to {name}")

    def list_models(self) -> List[str]:
        """Model ids offered by the endpoint, sorted. Raises ModelCallFailed."""
        try:
            page = self.client.models.list()
        except Exception as exc:
            raise request_failure(exc) from exc
        return sorted(str(getattr(item, "id", item)) for item in getattr(page, "data", page))

    def send(self, system_prompt: str, messages: Sequence[Message]) -> str:
        """Return the reply text for the conversation. Raises ModelCallFailed."""
        api_messages = self.to_api_messages(system_prompt, messages)
        if not any(item["role"] != "system" for item in api_messages):
            raise ModelCallFailed("Nothing to send: conversation is empty")

        if self.debug:
            self._debug_print(f"Sending {len(api_messages)} messages; last: {json.dumps(api_messages[-1:], indent=2)}")

        request = {
            "model": self.config.model,
            "messages": api_messages,
            "temperature": self.config.temperature,
        }
        http_client = build_http_client(self.proxy_url)
        with self._requests_lock:
            self._active_requests.add(http_client)
        try:
            response = self._create_with_fallback(self._open_client(http_client), request)
        except Exception as exc:
            if self._was_aborted(http_client):
                raise ModelCallFailed("Request cancelled") from exc
            self._debug_print(f"Exception occurred: {type(exc).__name__}: {str(exc)}")
            raise request_failure(exc) from exc
        finally:
            self._release(http_client)

        text = reply_text(response)
        if not text.strip():
            raise ModelCallFailed("Empty response from API")
        self._debug_print(f"Reply received ({len(text)} chars)")
        return text

    def abort(self) -> int:
        """Close the HTTP client of every request in progress. Returns how many were closed."""
        with self._requests_lock:
            clients = list(self._active_requests)
            self._active_requests.clear()
            self._aborted_requests.update(clients)
        for http_client in clients:
            http_client.close()
        if clients:
            self._debug_print(f"Aborted {len(clients)} request(s)")
        return len(clients)

    def _was_aborted(self, http_client: httpx.Client) -> bool:
        with self._requests_lock:
            return http_client in self._aborted_requests

    def _release(self, http_client: httpx.Client) -> None:
        with self._requests_lock:
            self._active_requests.discard(http_client)
            self._aborted_requests.discard(http_client)
        http_client.close()

    @staticmethod
    def to_api_messages(system_prompt: str, messages: Sequence[Message]) -> List[Dict[str, str]]:
        """Chat-completions payload; a stored copy of the system prompt is not sent twice."""
        payload = [{"role": "system", "content": system_prompt}] if system_prompt else []
        payload.extend(
            {"role": ROLE_NAMES[message.role], "content": message.content}
            for message in messages
            if not (system_prompt and message.role is MessageRole.SYSTEM and message.content == system_prompt)
        )
        return payload

    def _create_with_fallback(self, client: OpenAI, request: Dict[str, Any]) -> Any:
        """Some providers reject temperature for certain models; retry once without it."""
        try:
            return client.chat.completions.create(**request)
        except Exception as exc:
            if "temperature" not in request or not is_request_shape_error(exc):
                raise
            self._debug_print(f"Provider rejected the request shape ({exc}); retrying without temperature")
            reduced = dict(request)
            reduced.pop("temperature")
            return client.chat.completions.create(**reduced)


def request_failure(exc: Exception) -> ModelCallFailed:
    """Map a transport or API exception to the message shown to the user."""
    if isinstance(exc, ModelCallFailed):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return ModelCallFailed("Request timed out - API server not responding")
    if isinstance(exc, httpx.ConnectError):
        return ModelCallFailed("Connection failed - Please check your internet connection")
    return ModelCallFailed(f"API Error ({type(exc).__name__}): {str(exc)}")


def reply_text(response: Any) -> str:
    """Text of the first choice; list-shaped content parts are concatenated."""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    content = getattr(getattr(choices[0], "message", None), "content", None)
    if isinstance(content, list):
        return "".join(str(getattr(part, "text", "") or "") for part in content)
    return content or ""


def is_request_shape_error(exc: Exception) -> bool:
    """True for 4xx-style payload complaints, never for auth or quota failures."""
    text = str(exc).lower()
    if any(word in text for word in ("api key", "unauthorized", "forbidden", "quota", "rate limit")):
        return False
    mentions_shape = any(
        word in text for word in ("invalid", "unsupported", "unknown", "unrecognized", "parameter", "temperature")
    )
    status = status_code_of(exc)
    return mentions_shape and (status is None or status in (400, 415, 422))


def status_code_of(exc: Exception) -> Optional[int]:
    candidates = (
        getattr(exc, "status_code", None),
        getattr(exc, "status", None),
        getattr(getattr(exc, "response", None), "status_code", None),
    )
    for value in candidates:
        if isinstance(value, int):
            return value
    return None


def normalize_base_url(raw: str) -> str:
    """Append /v1 when the base URL has no path; some providers 404 without it."""
    value = (raw or "").strip()
    if not value:
        return value
    parts = urlsplit(value)
    path = parts.path.rstrip("/") or "/v1"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment)).rstrip("/")


def normalize_proxy_url(raw: str) -> str:
    """httpx-socks needs an explicit version, so plain socks:// means socks5://."""
    value = (raw or "").strip()
    parts = urlsplit(value)
    if parts.scheme.lower() != "socks":
        return value
    return urlunsplit(("socks5",) + tuple(parts)[1:])


def resolve_proxy(explicit: str, target_url: str, environ: Optional[Mapping[str, str]] = None) -> Tuple[Optional[str], str]:
    """Choose the proxy for target_url. Returns (proxy_url, source) with source config, env or none.

    A configured proxy always wins. Otherwise the scheme's *_PROXY variable
    (then ALL_PROXY) is used unless NO_PROXY covers the target host.
    """
    if explicit and explicit.strip():
        return normalize_proxy_url(explicit), "config"

    environ = os.environ if environ is None else environ
    parts = urlsplit((target_url or "").strip())
    if not parts.hostname:
        return None, "none"
    if bypasses_proxy(parts.hostname, parts.port, _env_value(environ, "NO_PROXY")):
        return None, "none"

    for key in PROXY_ENV_KEYS.get((parts.scheme or "https").lower(), ("ALL_PROXY",)):
        value = _env_value(environ, key)
        if value:
            return normalize_proxy_url(value), "env"
    return None, "none"


def bypasses_proxy(hostname: str, port: Optional[int], no_proxy: Optional[str]) -> bool:
    """NO_PROXY semantics: "*", exact hosts, domain suffixes, optional :port."""
    host = hostname.strip(".").lower()
    for entry in (item.strip() for item in (no_proxy or "").split(",")):
        if not entry:
            continue
        if entry == "*":
            return True
        name, _, entry_port = entry.partition(":")
        if entry_port.isdigit() and port is not None and int(entry_port) != port:
            continue
        name = name.strip().lstrip(".").lower()
        if name and (host == name or host.endswith("." + name)):
            return True
    return False


def build_http_client(proxy_url: Optional[str]) -> httpx.Client:
    if not proxy_url:
        return httpx.Client(trust_env=False)
    if urlsplit(proxy_url).scheme.lower() in SOCKS_SCHEMES:
        return httpx.Client(transport=SyncProxyTransport.from_url(proxy_url), trust_env=False)
    return httpx.Client(proxy=proxy_url, trust_env=False)


def _env_value(environ: Mapping[str, str], key: str) -> Optional[str]:
    return environ.get(key) or environ.get(key.lower())
