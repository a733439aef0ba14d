from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Mapping, Protocol, Union

import httpx

from palchat.core.config import AppSettings
from palchat.core.exceptions import AppError

logger = logging.getLogger(__name__)


class GatewayError(AppError):
    status_code = 502
    error_type = "LLM_GATEWAY_ERROR"


class GatewayUnavailableError(GatewayError):
    error_type = "LLM_UNAVAILABLE"


class GatewayHttpError(GatewayError):
    error_type = "LLM_HTTP_ERROR"

    def __init__(self, upstream_status: int) -> None:
        super().__init__(
            f"HTTP error! status: {upstream_status}",
            details={"upstreamStatus": upstream_status},
        )
        self.upstream_status = upstream_status


class GatewayResponseError(GatewayError):
    error_type = "LLM_RESPONSE_ERROR"


class LanguageModelGateway(Protocol):
    model: str

    def is_available(self) -> bool:
        ...

    async def is_available_async(self) -> bool:
        ...

    def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        ...

    async def generate_async(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        ...


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    prompt: str
    temperature: float
    model_options: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": self.prompt,
            "stream": False,
            "options": {"temperature": self.temperature, **self.model_options},
        }


class _BaseGateway:
    def __init__(self, *, model: str, temperature: float) -> None:
        self.model = model
        self.temperature = temperature

    def _build_request(
        self,
        prompt: str,
        model: str | None,
        temperature: float | None,
        model_options: Mapping[str, Any] | None,
    ) -> GenerationRequest:
        return GenerationRequest(
            model=model or self.model,
            prompt=prompt,
            temperature=self.temperature if temperature is None else temperature,
            model_options=dict(model_options or {}),
        )


class OllamaGateway(_BaseGateway):
    """Single-shot, non-streaming client for the Ollama HTTP API."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        temperature: float,
        timeout: float,
    ) -> None:
        super().__init__(model=model, temperature=temperature)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def is_available(self) -> bool:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            logger.warning("llm.probe_failed", extra={"base_url": self.base_url, "error": str(exc)})
            return False
        return self._probe_succeeded(response)

    async def is_available_async(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as exc:
            logger.warning("llm.probe_failed", extra={"base_url": self.base_url, "error": str(exc)})
            return False
        return self._probe_succeeded(response)

    def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        request = self._build_request(prompt, model, temperature, model_options)
        start = time.perf_counter()
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.base_url}/api/generate", json=request.to_payload())
        except httpx.RequestError as exc:
            raise self._unreachable(exc) from exc
        return self._read_completion(response, request, start)

    async def generate_async(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        request = self._build_request(prompt, model, temperature, model_options)
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.base_url}/api/generate", json=request.to_payload())
        except httpx.RequestError as exc:
            raise self._unreachable(exc) from exc
        return self._read_completion(response, request, start)

    def _probe_succeeded(self, response: httpx.Response) -> bool:
        if not response.is_success:
            logger.warning(
                "llm.probe_failed",
                extra={"base_url": self.base_url, "status_code": response.status_code},
            )
            return False
        return True

    def _unreachable(self, exc: httpx.RequestError) -> GatewayUnavailableError:
        logger.error("llm.generate_failed", extra={"base_url": self.base_url, "error": str(exc)})
        return GatewayUnavailableError("Language model backend is unreachable.")

    def _read_completion(
        self,
        response: httpx.Response,
        request: GenerationRequest,
        start: float,
    ) -> str:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        if not response.is_success:
            logger.error(
                "llm.generate_failed",
                extra={"model": request.model, "status_code": response.status_code, "latency_ms": latency_ms},
            )
            raise GatewayHttpError(response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise GatewayResponseError("Language model response was not valid JSON.") from exc

        text = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise GatewayResponseError("Language model response did not include generated text.")

        logger.info(
            "llm.generate",
            extra={"model": request.model, "temperature": request.temperature, "latency_ms": latency_ms},
        )
        return text


FakeCompletion = Union[str, Exception]

_fake_completions: Deque[FakeCompletion] = deque()
_fake_lock = threading.RLock()
_fake_state = {"available": True}


def queue_fake_completion(completion: FakeCompletion) -> None:
    """Queue the next fake completion; an exception instance is raised instead of returned."""
    with _fake_lock:
        _fake_completions.append(completion)


def clear_fake_completions() -> None:
    with _fake_lock:
        _fake_completions.clear()
        _fake_state["available"] = True


def set_fake_availability(available: bool) -> None:
    with _fake_lock:
        _fake_state["available"] = available


class FakeGateway(_BaseGateway):
    def __init__(self, *, model: str, temperature: float) -> None:
        super().__init__(model=model, temperature=temperature)
        self.requests: List[GenerationRequest] = []

    def is_available(self) -> bool:
        with _fake_lock:
            return _fake_state["available"]

    async def is_available_async(self) -> bool:
        return self.is_available()

    def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        self.requests.append(self._build_request(prompt, model, temperature, model_options))
        with _fake_lock:
            if not _fake_completions:
                raise GatewayUnavailableError("No fake completions queued for the language model gateway.")
            completion = _fake_completions.popleft()
        if isinstance(completion, Exception):
            raise completion
        return completion

    async def generate_async(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float | None = None,
        model_options: Mapping[str, Any] | None = None,
    ) -> str:
        return self.generate(prompt, model=model, temperature=temperature, model_options=model_options)


GatewayFactory = Callable[[], LanguageModelGateway]


def get_gateway(settings: AppSettings) -> GatewayFactory:
    provider = settings.llm_provider.lower()

    if provider == "fake":
        return lambda: FakeGateway(model=settings.llm_model, temperature=settings.llm_temperature)

    if provider == "ollama":
        return lambda: OllamaGateway(
            base_url=settings.ollama_base_url,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            timeout=settings.llm_timeout_sec,
        )

    raise GatewayError(f"Unsupported LLM provider '{settings.llm_provider}'")


__all__ = [
    "FakeGateway",
    "GatewayError",
    "GatewayFactory",
    "GatewayHttpError",
    "GatewayResponseError",
    "GatewayUnavailableError",
    "GenerationRequest",
    "LanguageModelGateway",
    "OllamaGateway",
    "clear_fake_completions",
    "get_gateway",
    "queue_fake_completion",
    "set_fake_availability",
]
