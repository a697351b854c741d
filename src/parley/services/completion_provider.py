from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterator, List, Optional, Protocol

import openai
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Settings

try:
    from langchain_openai import ChatOpenAI  # type: ignore
except Exception:  # pragma: no cover - optional import
    ChatOpenAI = None  # type: ignore


logger = logging.getLogger(__name__)
LOG = logging.getLogger("parley.llm")


class ProviderError(Exception):
    """Failure reported by (or while reaching) the completion provider."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class ProviderNotConfigured(ProviderError):
    pass


class CompletionProvider(Protocol):
    model: str

    def complete(self, messages: List[Dict[str, str]]) -> str: ...

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]: ...


def _parse_retry_after(headers: Any) -> Optional[int]:
    if not headers:
        return None
    raw = headers.get("retry-after") or headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(int(float(raw)), 0)
    except (TypeError, ValueError):
        return None


def _first_choice(body: Any) -> Dict[str, Any]:
    """Return ``choices[0]`` of a completion payload, or an empty dict when there is none."""

    if not isinstance(body, dict):
        raise ProviderError("provider returned a malformed body")
    choices = body.get("choices") or []
    if not isinstance(choices, list):
        raise ProviderError("provider returned a malformed body")
    if not choices:
        return {}
    if not isinstance(choices[0], dict):
        raise ProviderError("provider returned a malformed body")
    return choices[0]


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        connect=2,
        read=0,
        status=0,
        backoff_factor=0.5,
        allowed_methods=frozenset(["POST", "GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class HttpCompletionProvider:
    """OpenAI-compatible chat completions over plain HTTP with bearer auth."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        *,
        connect_timeout: int = 3,
        read_timeout: int = 60,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = (connect_timeout, read_timeout)
        self._session = session or _build_session()

    @property
    def _url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    def _raise_for_status(self, resp: requests.Response) -> None:
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            raise ProviderError(
                f"provider returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                retry_after=_parse_retry_after(resp.headers),
            ) from exc

    def complete(self, messages: List[Dict[str, str]]) -> str:
        LOG.debug("llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        try:
            resp = self._session.post(
                self._url,
                json={"model": self.model, "messages": messages, "stream": False},
                headers=self._headers(),
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"provider request failed: {exc.__class__.__name__}") from exc
        self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("provider returned a malformed body") from exc
        message = _first_choice(data).get("message") or {}
        if not isinstance(message, dict):
            raise ProviderError("provider returned a malformed body")
        return message.get("content") or ""

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        LOG.debug("llm_stream", extra={"model": self.model, "base_url": self.base_url, "timeout": self._timeout})
        payload = {"model": self.model, "messages": messages, "stream": True}
        try:
            with self._session.post(
                self._url,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
                stream=True,
            ) as resp:
                self._raise_for_status(resp)
                for raw_line in resp.iter_lines():
                    if not raw_line:
                        continue
                    line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    if isinstance(parsed, dict) and parsed.get("error"):
                        raise ProviderError("provider reported a stream error")
                    delta = _first_choice(parsed).get("delta") or {}
                    if not isinstance(delta, dict):
                        raise ProviderError("provider returned a malformed body")
                    token = delta.get("content") or ""
                    if token:
                        yield token
        except requests.RequestException as exc:
            raise ProviderError(f"provider stream failed: {exc.__class__.__name__}") from exc


class LangChainCompletionProvider:
    """Same contract on top of ``langchain_openai.ChatOpenAI``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        *,
        read_timeout: int = 60,
        client: Any = None,
    ) -> None:
        self.base_url = base_url
        self.model = model
        if client is None:
            if not ChatOpenAI:
                raise ProviderNotConfigured("LLM client not available")
            client = ChatOpenAI(api_key=api_key, base_url=base_url, model=model, timeout=read_timeout, max_retries=2)
        self._llm = client

    @staticmethod
    def _translate(exc: openai.OpenAIError) -> ProviderError:
        status = getattr(exc, "status_code", None)
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None) if response is not None else None
        return ProviderError(
            f"provider call failed: {exc.__class__.__name__}",
            status_code=status,
            retry_after=_parse_retry_after(headers),
        )

    def complete(self, messages: List[Dict[str, str]]) -> str:
        try:
            res = self._llm.invoke(messages)
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc
        return res.content if hasattr(res, "content") else str(res)

    def stream(self, messages: List[Dict[str, str]]) -> Iterator[str]:
        try:
            for chunk in self._llm.stream(messages):
                token = chunk.content if hasattr(chunk, "content") else str(chunk)
                if token:
                    yield token
        except openai.OpenAIError as exc:
            raise self._translate(exc) from exc


def build_provider(settings: Settings) -> Optional[CompletionProvider]:
    """Return the configured provider, or None when no credential is set."""

    if not settings.provider_configured:
        logger.info("Completion provider API key not provided - chat unavailable")
        return None
    if settings.provider_client == "langchain":
        logger.info("Using LangChain provider base_url=%s model=%s", settings.base_url, settings.model)
        return LangChainCompletionProvider(
            settings.base_url,
            settings.api_key or "",
            settings.model,
            read_timeout=settings.read_timeout,
        )
    if settings.provider_client != "http":
        raise ValueError(f"Unsupported provider client: {settings.provider_client}")
    logger.info("Using HTTP provider base_url=%s model=%s", settings.base_url, settings.model)
    return HttpCompletionProvider(
        settings.base_url,
        settings.api_key or "",
        settings.model,
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
    )
