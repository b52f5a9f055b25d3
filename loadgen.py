from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import httpx


CHAT_COMPLETIONS_PATH = "/v1/chat/completions"

DEFAULT_PROMPT = "Explain what machine learning is in exactly three sentences."

STRESS_TEST_PROMPTS = [
    # short: fast prefill, exercises generation
    "What is 2+2?",
    "Name three colors.",
    "What is the capital of France?",
    "Say hello in Spanish.",
    # medium
    "Explain what machine learning is in exactly three sentences.",
    "Write a haiku about programming.",
    "What are the main differences between Python and Go?",
    "Describe the water cycle in simple terms.",
    # long: heavier prefill
    "You are a senior software architect reviewing a microservices architecture. "
    "Analyze the following scenario: A company wants to migrate from a monolithic "
    "application to microservices. They currently have a single database serving all "
    "components. The application handles user authentication, order processing, "
    "inventory management, and reporting. What would be your recommended approach for "
    "decomposing this system into microservices? Consider data consistency, service "
    "boundaries, and communication patterns.",
    "Imagine you are explaining quantum computing to a college student studying computer "
    "science. Cover the following topics in detail: qubits vs classical bits, "
    "superposition, entanglement, quantum gates, and why quantum computers might be "
    "faster for certain problems. Use analogies where helpful and provide concrete examples.",
    "Write a detailed technical specification for a distributed caching system that needs "
    "to handle 100,000 requests per second with sub-millisecond latency. Include "
    "considerations for cache invalidation strategies, replication, partitioning, "
    "consistency models, and failure handling. The system should support both "
    "read-through and write-through caching patterns.",
]


def now_unix_ms() -> int:
    return int(time.time() * 1000)


class RequestFailedError(Exception):
    """A chat-completion request that produced no usable outcome."""


class EndpointStatusError(RequestFailedError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def _flatten_message_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""
    text_parts: list[str] = []
    for part in content:
        if isinstance(part, str):
            text_parts.append(part)
            continue
        if not isinstance(part, dict):
            continue
        text = part.get("text")
        if isinstance(text, str):
            text_parts.append(text)
    return "".join(text_parts)


def _extract_prompt_from_json_row(obj: Any) -> str:
    if isinstance(obj, str):
        return obj
    if not isinstance(obj, dict):
        return ""

    for key in ("prompt", "text"):
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value

    messages = obj.get("messages")
    if isinstance(messages, list):
        parts: list[str] = []
        for message in messages:
            if not isinstance(message, dict):
                continue
            content = _flatten_message_content(message.get("content"))
            if content:
                parts.append(content)
        return "\n".join(parts)
    return ""


def load_prompts_from_file(prompt_file: Path) -> list[str]:
    """Read one prompt per non-empty line.

    Lines that parse as JSON objects are unwrapped through their ``prompt``,
    ``text`` or ``messages`` field; anything else is taken verbatim.
    """
    prompts: list[str] = []
    with prompt_file.open("r", encoding="utf-8") as f:
        for line in f:
            value = line.strip()
            if not value:
                continue
            try:
                parsed = json.loads(value)
            except json.JSONDecodeError:
                prompts.append(value)
                continue
            prompt = _extract_prompt_from_json_row(parsed)
            prompts.append(prompt if prompt else value)
    if not prompts:
        raise ValueError(f"no prompts found in file {prompt_file}")
    return prompts


def load_prompts(
    prompt: Optional[str],
    prompt_file: Optional[Path],
    stress_mode: bool,
) -> list[str]:
    if prompt_file is not None:
        return load_prompts_from_file(prompt_file)
    if prompt:
        return [prompt]
    if stress_mode:
        return list(STRESS_TEST_PROMPTS)
    return [DEFAULT_PROMPT]


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _safe_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class RequestSettings:
    max_tokens: int
    timeout_s: float
    temperature: float = 0.7
    model: Optional[str] = None
    api_key: Optional[str] = None


@dataclass(frozen=True)
class RequestOutcome:
    iteration: int
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    prompt_time_ms: float = 0.0
    generation_time_ms: float = 0.0
    total_time_ms: float = 0.0
    prompt_toks_per_sec: float = 0.0
    generation_toks_per_sec: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return not self.error

    @classmethod
    def failed(cls, iteration: int, error: str) -> RequestOutcome:
        return cls(iteration=iteration, error=error)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RequestOutcome:
        return cls(**payload)


def _build_payload(settings: RequestSettings, prompt: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "messages": [{"role": "user", "content": prompt}],
        "max_tokens": settings.max_tokens,
        "temperature": settings.temperature,
        "stream": False,
    }
    if settings.model:
        payload["model"] = settings.model
    return payload


def _headers(api_key: Optional[str]) -> dict[str, str]:
    base = {"Content-Type": "application/json"}
    if api_key:
        base["Authorization"] = f"Bearer {api_key}"
    return base


def parse_chat_response(body: dict[str, Any], iteration: int, total_time_ms: float) -> RequestOutcome:
    """Build an outcome from a decoded chat-completion response.

    Servers that report ``timings`` (llama.cpp style) are trusted directly
    when ``timings.prompt_ms`` is positive. Otherwise the generation rate is
    estimated from the completion token count over the wall time, and the
    prompt rate stays at zero.
    """
    usage = body.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    timings = body.get("timings")
    if not isinstance(timings, dict):
        timings = {}

    prompt_tokens = _safe_int(usage.get("prompt_tokens"))
    completion_tokens = _safe_int(usage.get("completion_tokens"))
    total_tokens = _safe_int(usage.get("total_tokens"))

    if _safe_float(timings.get("prompt_ms")) > 0:
        return RequestOutcome(
            iteration=iteration,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            prompt_time_ms=_safe_float(timings.get("prompt_ms")),
            generation_time_ms=_safe_float(timings.get("predicted_ms")),
            total_time_ms=total_time_ms,
            prompt_toks_per_sec=_safe_float(timings.get("prompt_per_second")),
            generation_toks_per_sec=_safe_float(timings.get("predicted_per_second")),
        )

    generation_toks_per_sec = 0.0
    if completion_tokens > 0 and total_time_ms > 0:
        generation_toks_per_sec = completion_tokens / (total_time_ms / 1000.0)
    return RequestOutcome(
        iteration=iteration,
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=total_tokens,
        generation_time_ms=total_time_ms,
        total_time_ms=total_time_ms,
        generation_toks_per_sec=generation_toks_per_sec,
    )


async def send_chat_request(
    client: httpx.AsyncClient,
    base_url: str,
    settings: RequestSettings,
    prompt: str,
    iteration: int,
) -> RequestOutcome:
    url = f"{base_url.rstrip('/')}{CHAT_COMPLETIONS_PATH}"
    payload = _build_payload(settings, prompt)

    started = time.perf_counter()
    try:
        response = await client.post(
            url,
            headers=_headers(settings.api_key),
            json=payload,
            timeout=settings.timeout_s,
        )
    except httpx.TimeoutException as exc:
        raise RequestFailedError(f"request timed out: {exc}") from exc
    except httpx.HTTPError as exc:
        raise RequestFailedError(f"request failed: {exc}") from exc
    total_time_ms = (time.perf_counter() - started) * 1000.0

    if not response.is_success:
        raise EndpointStatusError(response.status_code, response.text)

    try:
        body = response.json()
    except ValueError as exc:
        raise RequestFailedError(f"failed to parse response: {exc}") from exc
    if not isinstance(body, dict):
        raise RequestFailedError("failed to parse response: expected a JSON object")

    return parse_chat_response(body, iteration, total_time_ms)
