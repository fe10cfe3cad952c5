"""Answer service providers. OpenAI-compatible chat primary; Ollama optional."""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import httpx

logger = logging.getLogger("quizbench.answer_llm")

RETRYABLE_KINDS = ("timeout", "unavailable", "rate_limited")


@dataclass
class AnswerServiceError(Exception):
    """Structured answer-service failure. Never carries a raw traceback."""
    kind: str  # timeout | unavailable | rate_limited | provider_error | invalid_response
    message: str
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


AnswerOutcome = Tuple[str, Optional[AnswerServiceError]]


class AnswerProvider(ABC):
    """
    Remote text generation for one prompt.

    generate_answer() never raises for service failures: it returns
    ("", error) and leaves the substitution policy to the caller.
    """

    name: str = "base"

    def __init__(self, max_retries: int = 2, backoff_s: float = 1.0):
        self.max_retries = max_retries
        self.backoff_s = backoff_s

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        """One round trip. Returns text or raises AnswerServiceError."""
        ...

    async def generate_answer(self, prompt: str) -> AnswerOutcome:
        attempt = 0
        while True:
            try:
                return await self._complete(prompt), None
            except AnswerServiceError as e:
                if e.kind in RETRYABLE_KINDS and attempt < self.max_retries:
                    delay = self.backoff_s * (2 ** attempt)
                    logger.info("%s %s; retry %d/%d in %.1fs", self.name, e.kind, attempt + 1, self.max_retries, delay)
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                return "", e
            except Exception as e:
                logger.exception("%s request failed unexpectedly", self.name)
                return "", AnswerServiceError(kind="provider_error", message="Model request failed", details={"error": str(e)})


def _raise_for_status(resp: httpx.Response, service: str) -> None:
    if resp.status_code == 200:
        return
    details = {"status": resp.status_code, "body": resp.text[:200]}
    if resp.status_code == 429:
        raise AnswerServiceError(kind="rate_limited", message=f"{service} rate limit hit", details=details)
    if resp.status_code >= 500:
        raise AnswerServiceError(kind="unavailable", message=f"{service} returned {resp.status_code}", details=details)
    raise AnswerServiceError(kind="provider_error", message=f"{service} returned {resp.status_code}", details=details)


class OpenAIChatProvider(AnswerProvider):
    """OpenAI-compatible /chat/completions over httpx."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "gpt-4o",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        temperature: float = 0.0,
        max_retries: int = 2,
        backoff_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(max_retries=max_retries, backoff_s=backoff_s)
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.transport = transport
        self.name = "openai"

    async def _complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise AnswerServiceError(kind="timeout", message="Model request timed out", details={"error": str(e)})
        except httpx.TransportError as e:
            raise AnswerServiceError(kind="unavailable", message="Cannot reach answer service", details={"error": str(e)})
        _raise_for_status(resp, "Answer service")
        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise AnswerServiceError(kind="invalid_response", message="Unexpected response shape", details={"error": str(e)})
        return content or ""


class OllamaProvider(AnswerProvider):
    """Ollama HTTP API provider."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "qwen2.5:7b-instruct",
        timeout_s: float = 60.0,
        temperature: float = 0.0,
        max_retries: int = 2,
        backoff_s: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(max_retries=max_retries, backoff_s=backoff_s)
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_s = timeout_s
        self.temperature = temperature
        self.transport = transport
        self.name = "ollama"

    async def _complete(self, prompt: str) -> str:
        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self.transport) as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
        except httpx.TimeoutException as e:
            raise AnswerServiceError(kind="timeout", message="Model request timed out", details={"error": str(e)})
        except httpx.TransportError as e:
            raise AnswerServiceError(kind="unavailable", message="Cannot connect to Ollama", details={"error": str(e)})
        _raise_for_status(resp, "Ollama")
        try:
            data = resp.json()
        except json.JSONDecodeError as e:
            raise AnswerServiceError(kind="invalid_response", message="Invalid response from model", details={"error": str(e)})
        return (data.get("response") or "").strip()


Reply = Union[str, AnswerServiceError]


class FakeProvider(AnswerProvider):
    """
    Test double.

    `replies` is either a list consumed in order (the last entry repeats)
    or a callable prompt -> reply. A reply that is an AnswerServiceError
    is returned as the error. `delay_s` simulates a slow service.
    """

    def __init__(
        self,
        replies: Union[Sequence[Reply], Callable[[str], Reply], None] = None,
        delay_s: float = 0.0,
    ):
        super().__init__(max_retries=0, backoff_s=0.0)
        self.replies = replies if replies is not None else ["A"]
        self.delay_s = delay_s
        self.prompts: List[str] = []
        self.name = "fake"

    async def _complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if callable(self.replies):
            reply = self.replies(prompt)
        else:
            idx = min(len(self.prompts) - 1, len(self.replies) - 1)
            reply = self.replies[idx]
        if isinstance(reply, AnswerServiceError):
            raise reply
        return reply


def build_provider(settings) -> AnswerProvider:
    """Provider for the configured answer service; unknown names fall back to openai."""
    provider_name = getattr(settings, "answer_llm_provider", "openai")
    timeout_s = getattr(settings, "answer_llm_timeout_s", 60.0)
    max_retries = getattr(settings, "answer_llm_max_retries", 2)
    temperature = getattr(settings, "answer_llm_temperature", 0.0)
    base_url = getattr(settings, "answer_llm_base_url", None)
    if provider_name == "ollama":
        return OllamaProvider(
            base_url=base_url or "http://localhost:11434",
            model=getattr(settings, "answer_llm_model", "qwen2.5:7b-instruct"),
            timeout_s=timeout_s,
            temperature=temperature,
            max_retries=max_retries,
        )
    if provider_name != "openai":
        logger.warning("Unknown answer provider %r; using openai", provider_name)
    return OpenAIChatProvider(
        api_key=getattr(settings, "answer_llm_api_key", "") or "",
        model=getattr(settings, "answer_llm_model", "gpt-4o"),
        base_url=base_url or "https://api.openai.com/v1",
        timeout_s=timeout_s,
        temperature=temperature,
        max_retries=max_retries,
    )
