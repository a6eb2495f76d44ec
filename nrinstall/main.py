"""
nrinstall - component wiring and lifecycle

Usage:
    async with installer_lifespan() as installer:
        response = await installer.orchestrator.install_integration(
            InstallationRequest(integration="redis", parameters={"redis_port": 6379})
        )
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from nrinstall.config.integration_defaults import IntegrationDefaults
from nrinstall.core.config import settings
from nrinstall.core.logging_config import logger
from nrinstall.modules.execution.container_pool import ContainerPool, PoolConfig
from nrinstall.modules.execution.runtime import ContainerRuntime, DockerRuntime
from nrinstall.modules.execution.script_executor import ScriptExecutor
from nrinstall.modules.execution.script_validator import ScriptSecurityGate
from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
from nrinstall.modules.orchestrator.installation_orchestrator import InstallationOrchestrator
from nrinstall.services.installation_requests import AsyncInstallationService


@dataclass
class Installer:
    """Wired components sharing one pool"""
    runtime: ContainerRuntime
    pool: ContainerPool
    gate: ScriptSecurityGate
    executor: ScriptExecutor
    generator: TemplateScriptGenerator
    orchestrator: InstallationOrchestrator
    requests: AsyncInstallationService


def build_installer(
    runtime: Optional[ContainerRuntime] = None,
    pool_config: Optional[PoolConfig] = None
) -> Installer:
    """Build every component; the runtime defaults to Docker from settings"""
    runtime = runtime or DockerRuntime.from_settings()
    pool = ContainerPool(runtime, config=pool_config)
    gate = ScriptSecurityGate()
    executor = ScriptExecutor(pool, gate=gate)
    generator = TemplateScriptGenerator()
    orchestrator = InstallationOrchestrator(
        pool, executor, generator, gate=gate, defaults=IntegrationDefaults()
    )
    return Installer(
        runtime=runtime,
        pool=pool,
        gate=gate,
        executor=executor,
        generator=generator,
        orchestrator=orchestrator,
        requests=AsyncInstallationService(orchestrator),
    )


@asynccontextmanager
async def installer_lifespan(
    runtime: Optional[ContainerRuntime] = None,
    pool_config: Optional[PoolConfig] = None
) -> AsyncIterator[Installer]:
    """Startup: eviction sweep and warm images. Shutdown: cancel requests, drain the pool."""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.APP_NAME}...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info("=" * 60)

    installer = build_installer(runtime, pool_config)
    await installer.pool.start()

    if settings.CONTAINER_WARM_IMAGES:
        warmed = await installer.pool.warm(settings.CONTAINER_WARM_IMAGES)
        logger.info(f"Pre-warmed {warmed}/{len(settings.CONTAINER_WARM_IMAGES)} images")

    try:
        yield installer
    finally:
        logger.info(f"Shutting down {settings.APP_NAME}...")
        await installer.requests.shutdown()
        await installer.pool.drain()
        await installer.runtime.close()
