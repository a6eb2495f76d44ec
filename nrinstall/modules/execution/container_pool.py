"""
Container Pool - bounded set of reusable execution environments

The pool owns every environment it creates. A caller leases one with
acquire(), runs scripts in it and hands it back with release().

acquire(image):
1. Reuse an idle environment of the same image if it passes a health check
   (unhealthy ones are destroyed and the search continues)
2. Create a new environment while size < capacity
3. At capacity, recycle the least recently used IDLE environment; if every
   environment is busy, fail fast with ResourceExhaustionError

Busy entries are never recycled. Selection and marking busy happen in one
synchronous step under the pool lock, so two acquire calls can never be
handed the same environment.

Background eviction (every 15 minutes by default) destroys environments idle
longer than the idle timeout but keeps the most recently used idle
environment of every image.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from nrinstall.core.config import settings
from nrinstall.core.exceptions import ContainerError, InstallerError, ResourceExhaustionError
from nrinstall.core.logging_config import logger as default_logger
from nrinstall.modules.execution.runtime import ContainerRuntime


class HealthStatus(str, Enum):
    """Environment health as last observed by the pool"""
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class PooledEnvironment:
    """One leased-or-idle execution environment"""
    id: str
    image: str
    busy: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_used_at: datetime = field(default_factory=datetime.utcnow)
    health: HealthStatus = HealthStatus.UNKNOWN

    def touch(self):
        self.last_used_at = datetime.utcnow()

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.utcnow()) - self.created_at).total_seconds()

    def idle_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.utcnow()) - self.last_used_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "image": self.image,
            "busy": self.busy,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "health": self.health.value,
        }


@dataclass
class PoolConfig:
    """Pool limits and container options (loaded from settings)"""
    capacity: int = field(default_factory=lambda: settings.CONTAINER_POOL_SIZE)
    default_image: str = field(default_factory=lambda: settings.CONTAINER_DEFAULT_IMAGE)
    max_age_seconds: int = field(default_factory=lambda: settings.CONTAINER_MAX_AGE_SECONDS)
    idle_timeout_seconds: int = field(default_factory=lambda: settings.CONTAINER_IDLE_TIMEOUT_SECONDS)
    eviction_interval_seconds: int = field(default_factory=lambda: settings.CONTAINER_EVICTION_INTERVAL_SECONDS)
    probe_timeout: int = field(default_factory=lambda: settings.CONTAINER_HEALTH_PROBE_TIMEOUT)
    stop_timeout: int = field(default_factory=lambda: settings.CONTAINER_STOP_TIMEOUT)
    probe_command: List[str] = field(default_factory=lambda: ["echo", "healthcheck"])

    # Resource limits
    memory_limit: str = field(default_factory=lambda: settings.CONTAINER_MEMORY_LIMIT)
    cpu_limit: float = field(default_factory=lambda: settings.CONTAINER_CPU_LIMIT)

    # Isolation
    network_mode: str = field(default_factory=lambda: settings.CONTAINER_NETWORK_MODE)
    privileged: bool = False            # Never allow privileged mode
    cap_drop: List[str] = field(default_factory=lambda: ["ALL"])
    # Package managers need these to install files owned by service users
    cap_add: List[str] = field(default_factory=lambda: ["CHOWN", "SETUID", "SETGID", "DAC_OVERRIDE", "FOWNER"])
    security_opt: List[str] = field(default_factory=lambda: ["no-new-privileges"])


class ContainerPool:
    """
    Hands out healthy execution environments per image.

    The environment table is the only shared mutable state; it is changed
    only by acquire, release, eviction and drain.
    """

    LABEL = "nrinstall"

    def __init__(
        self,
        runtime: ContainerRuntime,
        config: Optional[PoolConfig] = None,
        logger=None
    ):
        self.runtime = runtime
        self.config = config or PoolConfig()
        self.logger = logger or default_logger

        self._environments: Dict[str, PooledEnvironment] = {}
        self._pending_creations = 0
        self._lock = asyncio.Lock()

        self._running = False
        self._eviction_task: Optional[asyncio.Task] = None
        self._drained = False

    # =========================================================================
    # Lease
    # =========================================================================

    async def acquire(self, image: Optional[str] = None) -> str:
        """
        Lease an environment for ``image``.

        Raises:
            ResourceExhaustionError: pool full and every environment busy
            ContainerError: pool drained, or create/start failed
        """
        image = image or self.config.default_image
        if self._drained:
            raise ContainerError("Container pool has been drained")

        # 1. Reuse an idle environment of the same image
        while True:
            async with self._lock:
                candidate = self._reserve_idle(image)
            if candidate is None:
                break

            healthy = candidate.health != HealthStatus.UNHEALTHY and await self.is_healthy(candidate.id)
            if self._drained:
                raise ContainerError("Container pool was drained during acquire")
            if healthy:
                candidate.health = HealthStatus.HEALTHY
                candidate.touch()
                self.logger.debug(f"[Pool] Reusing environment {candidate.id[:12]} ({image})")
                return candidate.id

            self.logger.warning(f"[Pool] Environment {candidate.id[:12]} unhealthy, replacing")
            self._environments.pop(candidate.id, None)
            await self._destroy_container(candidate.id)

        # 2./3. Create under capacity, or recycle the least recently used idle environment
        async with self._lock:
            victim = self._reserve_slot(image)

        try:
            if victim is not None:
                self.logger.info(
                    f"[Pool] At capacity, recycling idle environment {victim.id[:12]} "
                    f"({victim.image}) for {image}"
                )
                await self._destroy_container(victim.id)
            environment = await self._create_environment(image)
        finally:
            self._pending_creations -= 1

        return environment.id

    def _reserve_idle(self, image: str) -> Optional[PooledEnvironment]:
        """Most recently used idle environment of ``image``, marked busy"""
        idle = [
            env for env in self._environments.values()
            if env.image == image and not env.busy
        ]
        if not idle:
            return None
        candidate = max(idle, key=lambda env: env.last_used_at)
        candidate.busy = True
        return candidate

    def _reserve_slot(self, image: str) -> Optional[PooledEnvironment]:
        """
        Reserve capacity for one new environment.

        Returns the idle environment that was evicted from the table to make
        room, or None when there was free capacity.
        """
        in_use = len(self._environments) + self._pending_creations
        if in_use < self.config.capacity:
            self._pending_creations += 1
            return None

        idle = [env for env in self._environments.values() if not env.busy]
        if not idle:
            busy = sum(1 for env in self._environments.values() if env.busy)
            raise ResourceExhaustionError(
                f"Container pool exhausted: {busy}/{self.config.capacity} environments busy",
                details={"image": image, "capacity": self.config.capacity, "busy": busy}
            )

        victim = min(idle, key=lambda env: env.last_used_at)
        del self._environments[victim.id]
        self._pending_creations += 1
        return victim

    def release(self, environment_id: str, healthy: bool = True) -> bool:
        """
        Return a leased environment to the pool.

        Idempotent: releasing an idle or unknown environment is logged and
        ignored. ``healthy=False`` flags it so the next acquire replaces it.

        Returns:
            True if the environment went from busy to idle
        """
        environment = self._environments.get(environment_id)
        if environment is None:
            self.logger.warning(f"[Pool] Release of unknown environment {environment_id[:12]} ignored")
            return False

        if not healthy:
            environment.health = HealthStatus.UNHEALTHY

        if not environment.busy:
            self.logger.debug(f"[Pool] Environment {environment_id[:12]} already idle")
            return False

        environment.busy = False
        environment.touch()
        return True

    def mark_unhealthy(self, environment_id: str):
        environment = self._environments.get(environment_id)
        if environment is not None:
            environment.health = HealthStatus.UNHEALTHY

    @asynccontextmanager
    async def lease(self, image: Optional[str] = None) -> AsyncIterator[str]:
        """
        Acquire an environment for the duration of a block.

        Usage:
            async with pool.lease("ubuntu:22.04") as environment_id:
                ...
        """
        environment_id = await self.acquire(image)
        try:
            yield environment_id
        finally:
            self.release(environment_id)

    # =========================================================================
    # Health
    # =========================================================================

    async def is_healthy(self, environment_id: str) -> bool:
        """
        Health check, fail-closed.

        Order: running state, native health status, maximum age, probe command.
        Any inspection or probe error means unhealthy.
        """
        try:
            info = await self.runtime.inspect_container(environment_id)
            state = info.get("State") or {}
            if not state.get("Running"):
                return False

            native = (state.get("Health") or {}).get("Status")
            if native:
                return native == "healthy"

            environment = self._environments.get(environment_id)
            if environment and environment.age_seconds() > self.config.max_age_seconds:
                self.logger.info(
                    f"[Pool] Environment {environment_id[:12]} older than "
                    f"{self.config.max_age_seconds}s"
                )
                return False

            exit_code, _ = await asyncio.wait_for(
                self.runtime.exec_run(environment_id, self.config.probe_command),
                timeout=self.config.probe_timeout
            )
            return exit_code == 0

        except Exception as e:
            self.logger.warning(f"[Pool] Health check failed for {environment_id[:12]}: {e}")
            return False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _container_options(self, image: str) -> Dict[str, Any]:
        return {
            "command": "tail -f /dev/null",
            "tty": True,
            "labels": {
                self.LABEL: "true",
                "nrinstall.image": image,
                "created_at": datetime.utcnow().isoformat(),
            },
            "network_mode": self.config.network_mode,
            "mem_limit": self.config.memory_limit,
            "nano_cpus": int(self.config.cpu_limit * 1_000_000_000),
            "privileged": self.config.privileged,
            "cap_drop": self.config.cap_drop,
            "cap_add": self.config.cap_add,
            "security_opt": self.config.security_opt,
        }

    async def _create_environment(self, image: str) -> PooledEnvironment:
        try:
            if not await self.runtime.image_exists(image):
                self.logger.info(f"[Pool] Image {image} not present locally, pulling")
                await self.runtime.pull_image(image)

            container_id = await self.runtime.create_container(image, **self._container_options(image))
        except InstallerError:
            raise
        except Exception as e:
            raise ContainerError(f"Failed to create environment for {image}: {e}", cause=e)

        try:
            await self.runtime.start_container(container_id)
        except BaseException as e:
            # Cancellation included: a created container never outlives its acquire
            await self._destroy_container(container_id)
            if isinstance(e, InstallerError) or not isinstance(e, Exception):
                raise
            raise ContainerError(f"Failed to start environment for {image}: {e}", cause=e)

        if self._drained:
            await self._destroy_container(container_id)
            raise ContainerError(f"Container pool was drained while creating an environment for {image}")

        environment = PooledEnvironment(id=container_id, image=image, busy=True)
        self._environments[container_id] = environment
        self.logger.info(f"[Pool] Created environment {container_id[:12]} ({image})")
        return environment

    async def _destroy_container(self, container_id: str) -> bool:
        """Stop and remove a container, best-effort; never raises"""
        try:
            await self.runtime.stop_container(container_id, timeout=self.config.stop_timeout)
        except Exception as e:
            self.logger.debug(f"[Pool] Stop of {container_id[:12]} failed: {e}")

        try:
            await self.runtime.remove_container(container_id, force=True)
            return True
        except Exception as e:
            self.logger.warning(f"[Pool] Failed to remove {container_id[:12]}: {e}")
            return False

    async def warm(self, images: List[str]) -> int:
        """Pre-create one idle environment per image, returns how many were created"""
        created = 0
        for image in images:
            try:
                environment_id = await self.acquire(image)
            except InstallerError as e:
                self.logger.warning(f"[Pool] Could not warm {image}: {e.message}")
                continue
            self.release(environment_id)
            created += 1
        return created

    # =========================================================================
    # Eviction
    # =========================================================================

    async def start(self):
        """Start the background eviction loop"""
        if self._running or self._drained:
            return

        self._running = True
        self._eviction_task = asyncio.create_task(self._eviction_loop())
        self.logger.info(
            f"[Pool] Started - capacity: {self.config.capacity}, "
            f"idle timeout: {self.config.idle_timeout_seconds}s, "
            f"sweep interval: {self.config.eviction_interval_seconds}s"
        )

    async def stop(self):
        """Stop the background eviction loop"""
        self._running = False
        if self._eviction_task:
            self._eviction_task.cancel()
            try:
                await self._eviction_task
            except asyncio.CancelledError:
                pass
            self._eviction_task = None

    async def _eviction_loop(self):
        while self._running:
            await asyncio.sleep(self.config.eviction_interval_seconds)
            try:
                await self.evict_idle()
            except Exception as e:
                self.logger.error(f"[Pool] Error in eviction sweep: {e}", exc_info=True)

    async def evict_idle(self) -> List[str]:
        """
        Destroy environments idle longer than the idle timeout.

        The most recently used idle environment of each image is always kept.

        Returns:
            Ids of evicted environments
        """
        now = datetime.utcnow()
        async with self._lock:
            idle_by_image: Dict[str, List[PooledEnvironment]] = {}
            for environment in self._environments.values():
                if not environment.busy:
                    idle_by_image.setdefault(environment.image, []).append(environment)

            victims = []
            for environments in idle_by_image.values():
                environments.sort(key=lambda env: env.last_used_at, reverse=True)
                for environment in environments[1:]:
                    if environment.idle_seconds(now) > self.config.idle_timeout_seconds:
                        victims.append(environment)

            for environment in victims:
                del self._environments[environment.id]

        for environment in victims:
            await self._destroy_container(environment.id)

        if victims:
            self.logger.info(f"[Pool] Evicted {len(victims)} idle environments")
        return [environment.id for environment in victims]

    async def drain(self):
        """
        Stop the sweep and destroy every pooled environment.

        Best-effort per environment; only the first call has any effect.
        """
        if self._drained:
            self.logger.debug("[Pool] Already drained")
            return

        self._drained = True
        await self.stop()

        async with self._lock:
            environments = list(self._environments.values())
            self._environments.clear()

        results = await asyncio.gather(
            *(self._destroy_container(environment.id) for environment in environments)
        )
        failed = sum(1 for ok in results if not ok)
        self.logger.info(
            f"[Pool] Drained {len(environments)} environments"
            + (f" ({failed} could not be removed)" if failed else "")
        )

    # =========================================================================
    # Introspection
    # =========================================================================

    def get(self, environment_id: str) -> Optional[PooledEnvironment]:
        return self._environments.get(environment_id)

    def __len__(self) -> int:
        return len(self._environments)

    @property
    def busy_count(self) -> int:
        return sum(1 for env in self._environments.values() if env.busy)

    def stats(self) -> Dict[str, Any]:
        """Pool statistics"""
        per_image: Dict[str, Dict[str, int]] = {}
        for environment in self._environments.values():
            counts = per_image.setdefault(environment.image, {"busy": 0, "idle": 0})
            counts["busy" if environment.busy else "idle"] += 1

        busy = self.busy_count
        return {
            "capacity": self.config.capacity,
            "size": len(self._environments),
            "busy": busy,
            "idle": len(self._environments) - busy,
            "pending": self._pending_creations,
            "drained": self._drained,
            "images": per_image,
        }
