from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol, runtime_checkable

import httpx


logger = logging.getLogger(__name__)

READY_POLL_INTERVAL_S = 5.0
HEALTH_PATH = "/health"


class DeploymentError(RuntimeError):
    """Provisioning, readiness or endpoint resolution failed for a target."""


class CatalogError(KeyError):
    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "catalog error"


@dataclass(frozen=True)
class ResourceProfile:
    cpu: str = ""
    memory: str = ""
    gpu_memory: str = ""


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str = ""
    size: str = ""
    context_size: int = 0
    gpu_layers: int = -1
    resources: ResourceProfile = field(default_factory=ResourceProfile)
    vram_estimate: str = ""

    @classmethod
    def from_dict(cls, entry_id: str, payload: Mapping[str, Any]) -> CatalogEntry:
        resources = payload.get("resources") or {}
        return cls(
            id=entry_id,
            name=str(payload.get("name", entry_id)),
            size=str(payload.get("size", "")),
            context_size=int(payload.get("context_size", 0) or 0),
            gpu_layers=int(payload.get("gpu_layers", -1)),
            resources=ResourceProfile(
                cpu=str(resources.get("cpu", "")),
                memory=str(resources.get("memory", "")),
                gpu_memory=str(resources.get("gpu_memory", "")),
            ),
            vram_estimate=str(payload.get("vram_estimate", "")),
        )


class Catalog:
    """Model catalog, built once and passed to whatever needs lookups."""

    def __init__(self, entries: Mapping[str, CatalogEntry]) -> None:
        self._entries = dict(entries)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Mapping[str, Any]]) -> Catalog:
        return cls({key: CatalogEntry.from_dict(key, value) for key, value in payload.items()})

    @classmethod
    def from_json(cls, path: Path) -> Catalog:
        payload = json.loads(path.read_text(encoding="utf-8"))
        models = payload.get("models", payload) if isinstance(payload, dict) else None
        if not isinstance(models, dict):
            raise ValueError(f"catalog {path} must map model ids to entries")
        return cls.from_mapping(models)

    def ids(self) -> list[str]:
        return sorted(self._entries)

    def get_entry(self, entry_id: str) -> CatalogEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise CatalogError(f"model '{entry_id}' not found in catalog") from None


@dataclass(frozen=True)
class DeploymentConfig:
    context_size: Optional[int] = None
    gpu: bool = False
    gpu_count: int = 1
    gpu_layers: int = -1
    accelerator: Optional[str] = None
    catalog_entry: Optional[CatalogEntry] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ReleaseFunc = Callable[[], Awaitable[None]]


@runtime_checkable
class DeploymentManager(Protocol):
    """Lifecycle of the thing being benchmarked.

    Implementations raise ``DeploymentError`` on failure.
    """

    async def deploy(self, target_id: str, config: DeploymentConfig) -> None: ...

    async def wait_ready(self, target_id: str, timeout_s: float) -> None: ...

    async def resolve_endpoint(self, target_id: str) -> tuple[str, Optional[ReleaseFunc]]: ...

    async def teardown(self, target_id: str) -> None: ...

    async def preload(self, target_id: str) -> None: ...


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    timeout_s: float,
    interval_s: float = READY_POLL_INTERVAL_S,
    description: str = "condition",
) -> None:
    """Run ``check`` on a fixed interval until it returns True.

    Raises ``DeploymentError`` once ``timeout_s`` elapses.
    """
    deadline = time.monotonic() + timeout_s
    while True:
        if await check():
            return
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DeploymentError(f"timeout waiting for {description}")
        await asyncio.sleep(min(interval_s, remaining))


class StaticDeploymentManager:
    """Targets an endpoint that is already running.

    Nothing is provisioned: deploy, teardown and preload only log, and every
    target id resolves to the same base URL.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient,
        poll_interval_s: float = READY_POLL_INTERVAL_S,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.poll_interval_s = poll_interval_s
        self.request_timeout_s = request_timeout_s

    async def deploy(self, target_id: str, config: DeploymentConfig) -> None:
        logger.info("Static endpoint: skipping deploy of %s (%s)", target_id, config.to_dict())

    async def _healthy(self) -> bool:
        try:
            response = await self.client.get(
                f"{self.base_url}{HEALTH_PATH}", timeout=self.request_timeout_s
            )
        except httpx.HTTPError as exc:
            logger.debug("Health check failed: %s", exc)
            return False
        return response.status_code == 200

    async def wait_ready(self, target_id: str, timeout_s: float) -> None:
        await poll_until(
            self._healthy,
            timeout_s=timeout_s,
            interval_s=self.poll_interval_s,
            description=f"{target_id} at {self.base_url}",
        )

    async def resolve_endpoint(self, target_id: str) -> tuple[str, Optional[ReleaseFunc]]:
        return self.base_url, None

    async def teardown(self, target_id: str) -> None:
        logger.debug("Static endpoint: nothing to tear down for %s", target_id)

    async def preload(self, target_id: str) -> None:
        logger.info("Static endpoint: nothing to preload for %s", target_id)


@asynccontextmanager
async def deployed_endpoint(
    deployer: DeploymentManager,
    target_id: str,
    config: DeploymentConfig,
    deploy_wait_s: float,
    cleanup: bool = True,
) -> AsyncIterator[str]:
    """Provision ``target_id`` and yield a reachable base URL.

    Any prior deployment with the same id is torn down first. The endpoint
    is released and, when ``cleanup`` is set, the deployment torn down on
    exit, including when provisioning fails after ``deploy`` succeeded.
    """
    try:
        await deployer.teardown(target_id)
    except DeploymentError as exc:
        logger.debug("Pre-deploy teardown of %s: %s", target_id, exc)

    logger.info("Deploying %s", target_id)
    try:
        await deployer.deploy(target_id, config)
    except DeploymentError as exc:
        raise DeploymentError(f"deploy failed: {exc}") from exc

    release: Optional[ReleaseFunc] = None
    try:
        logger.info("Waiting for %s to become ready", target_id)
        try:
            await deployer.wait_ready(target_id, deploy_wait_s)
        except DeploymentError as exc:
            raise DeploymentError(f"deployment timeout: {exc}") from exc
        try:
            endpoint, release = await deployer.resolve_endpoint(target_id)
        except DeploymentError as exc:
            raise DeploymentError(f"endpoint error: {exc}") from exc
        logger.info("%s ready at %s", target_id, endpoint)
        yield endpoint
    finally:
        try:
            if release is not None:
                await release()
        finally:
            if cleanup:
                logger.info("Cleaning up %s", target_id)
                try:
                    await deployer.teardown(target_id)
                except DeploymentError as exc:
                    logger.warning("Cleanup of %s failed: %s", target_id, exc)
