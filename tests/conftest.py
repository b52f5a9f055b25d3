"""
Shared fakes: an in-process chat completions endpoint and a deployment manager.
"""
import asyncio
from typing import Any, Callable, Optional

import httpx
import pytest
import pytest_asyncio

from deploy import DeploymentConfig, DeploymentError
from metrics_gpu import TelemetrySample
from runner import RunConfig


BASE_URL = "http://bench.test"


def chat_body(
    prompt_tokens: int = 10,
    completion_tokens: int = 20,
    prompt_ms: float = 20.0,
    predicted_ms: float = 400.0,
    prompt_per_second: float = 500.0,
    predicted_per_second: float = 50.0,
) -> dict[str, Any]:
    return {
        "id": "chatcmpl-test",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
        "timings": {
            "prompt_n": prompt_tokens,
            "prompt_ms": prompt_ms,
            "prompt_per_second": prompt_per_second,
            "predicted_n": completion_tokens,
            "predicted_ms": predicted_ms,
            "predicted_per_second": predicted_per_second,
        },
    }


class FakeEndpoint:
    """Async MockTransport handler that answers chat completions and /health."""

    def __init__(
        self,
        status_code: int = 200,
        latency_s: float = 0.0,
        body: Optional[dict[str, Any]] = None,
        fail_every: int = 0,
    ) -> None:
        self.status_code = status_code
        self.latency_s = latency_s
        self.body = body if body is not None else chat_body()
        self.fail_every = fail_every
        self.calls = 0
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        self.calls += 1
        self.requests.append(request)
        if self.latency_s:
            await asyncio.sleep(self.latency_s)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="internal error")
        if self.fail_every and self.calls % self.fail_every == 0:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, json=self.body)


def make_client(endpoint: FakeEndpoint) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(endpoint))


class FakeDeployer:
    """Records every lifecycle call; ``fail_deploy`` decides which deploys raise."""

    def __init__(
        self,
        base_url: str = BASE_URL,
        fail_deploy: Optional[Callable[[DeploymentConfig], bool]] = None,
        fail_ready: bool = False,
        release_error: Optional[Exception] = None,
    ) -> None:
        self.base_url = base_url
        self.fail_deploy = fail_deploy or (lambda config: False)
        self.fail_ready = fail_ready
        self.release_error = release_error
        self.calls: list[tuple[str, str]] = []
        self.deployed: list[DeploymentConfig] = []
        self.released = 0

    async def deploy(self, target_id: str, config: DeploymentConfig) -> None:
        self.calls.append(("deploy", target_id))
        if self.fail_deploy(config):
            raise DeploymentError("no capacity")
        self.deployed.append(config)

    async def wait_ready(self, target_id: str, timeout_s: float) -> None:
        self.calls.append(("wait_ready", target_id))
        if self.fail_ready:
            raise DeploymentError(f"timeout waiting for {target_id}")

    async def resolve_endpoint(self, target_id: str):
        self.calls.append(("resolve_endpoint", target_id))
        return self.base_url, self._release

    async def _release(self) -> None:
        self.released += 1
        if self.release_error is not None:
            raise self.release_error

    async def teardown(self, target_id: str) -> None:
        self.calls.append(("teardown", target_id))

    async def preload(self, target_id: str) -> None:
        self.calls.append(("preload", target_id))


class FakeSampler:
    def __init__(self) -> None:
        self.started = False
        self.stopped = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> list[TelemetrySample]:
        self.stopped = True
        return [
            TelemetrySample(
                timestamp_unix_ms=1_700_000_000_000,
                memory_used_mib=4096,
                memory_total_mib=8192,
                utilization_pct=75,
                temperature_c=65,
                power_w=120,
            )
        ]


@pytest.fixture
def fake_endpoint() -> FakeEndpoint:
    return FakeEndpoint()


@pytest_asyncio.fixture
async def client(fake_endpoint: FakeEndpoint):
    async with make_client(fake_endpoint) as http_client:
        yield http_client


@pytest.fixture
def run_config() -> RunConfig:
    return RunConfig(
        name="test-service",
        iterations=3,
        warmup=0,
        max_tokens=32,
        timeout_s=5.0,
        deploy_wait_s=1.0,
        show_progress=False,
    )
