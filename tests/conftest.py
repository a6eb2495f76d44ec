"""
nrinstall - Test Configuration and Fixtures
"""
import os
import io
import asyncio
import tarfile
import posixpath
from collections import Counter
from typing import Any, Dict, List, Optional

import pytest

# Set testing environment before any nrinstall import builds settings
os.environ['ENVIRONMENT'] = 'testing'
os.environ['LOG_FILE'] = ''
os.environ['LOG_LEVEL'] = 'DEBUG'
os.environ['SHELLCHECK_ENABLED'] = 'false'
os.environ['RETRY_BASE_DELAY'] = '0'
os.environ['VERIFY_RETRY_COUNT'] = '1'
os.environ['VERIFY_RETRY_DELAY'] = '0'
os.environ['LICENSE_KEY'] = ''

from nrinstall.core.exceptions import ContainerError
from nrinstall.modules.execution.runtime import ContainerRuntime


class FakeRuntime(ContainerRuntime):
    """
    In-memory ContainerRuntime.

    Commands succeed with empty output unless a rule matches: ``script()``
    sets the exit code and output for commands containing a substring,
    ``hang()`` makes them block forever and ``break_stream()`` makes the
    output stream fail.
    """

    def __init__(self):
        self.images = set()
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.execs: Dict[str, Dict[str, Any]] = {}
        self.files: Dict[tuple, bytes] = {}
        self.commands: List[str] = []
        self.calls = Counter()
        self.rules: List[tuple] = []
        self.hangs: List[str] = []
        self.stream_failures: List[str] = []
        self.fail_create = False
        self.fail_start = False
        self.start_gate: Optional[asyncio.Event] = None
        self.fail_put_archive = False
        self.closed = False
        self._ids = 0

    # Scripting helpers

    def script(self, substring: str, exit_code: int = 0, output: bytes = b""):
        self.rules.append((substring, exit_code, output))

    def hang(self, substring: str):
        self.hangs.append(substring)

    def break_stream(self, substring: str):
        self.stream_failures.append(substring)

    def ran(self, substring: str) -> List[str]:
        return [command for command in self.commands if substring in command]

    def _rule(self, command: str):
        for substring, exit_code, output in self.rules:
            if substring in command:
                return exit_code, output
        return 0, b""

    def _container(self, container_id: str) -> Dict[str, Any]:
        if container_id not in self.containers:
            raise ContainerError(f"No such container: {container_id}")
        return self.containers[container_id]

    # ContainerRuntime

    async def ping(self) -> bool:
        return True

    async def image_exists(self, image: str) -> bool:
        self.calls['image_exists'] += 1
        return image in self.images

    async def pull_image(self, image: str) -> None:
        self.calls['pull_image'] += 1
        self.images.add(image)

    async def create_container(self, image: str, **options: Any) -> str:
        self.calls['create_container'] += 1
        if self.fail_create:
            raise ContainerError("create failed")
        self._ids += 1
        container_id = f"{self._ids:064x}"
        self.containers[container_id] = {
            "image": image,
            "running": False,
            "health": None,
            "options": options,
        }
        return container_id

    async def start_container(self, container_id: str) -> None:
        self.calls['start_container'] += 1
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.fail_start:
            raise ContainerError("start failed")
        self._container(container_id)["running"] = True

    async def stop_container(self, container_id: str, timeout: int = 10) -> None:
        self.calls['stop_container'] += 1
        self._container(container_id)["running"] = False

    async def remove_container(self, container_id: str, force: bool = True) -> None:
        self.calls['remove_container'] += 1
        self._container(container_id)
        del self.containers[container_id]

    async def inspect_container(self, container_id: str) -> Dict[str, Any]:
        container = self._container(container_id)
        state = {"Running": container["running"]}
        if container["health"]:
            state["Health"] = {"Status": container["health"]}
        return {"Id": container_id, "State": state}

    async def exec_create(
        self,
        container_id: str,
        cmd: List[str],
        env: Optional[Dict[str, str]] = None
    ) -> str:
        self._container(container_id)
        command = " ".join(cmd)
        self.commands.append(command)
        exec_id = f"exec-{len(self.execs)}"
        self.execs[exec_id] = {"container": container_id, "command": command, "env": env, "exit_code": None}
        return exec_id

    async def exec_stream(self, exec_id: str):
        info = self.execs[exec_id]
        command = info["command"]
        if any(substring in command for substring in self.hangs):
            await asyncio.sleep(3600)
        if any(substring in command for substring in self.stream_failures):
            raise ConnectionError("stream reset")
        exit_code, output = self._rule(command)
        info["exit_code"] = exit_code
        if output:
            yield output

    async def exec_inspect(self, exec_id: str) -> Dict[str, Any]:
        return {"ExitCode": self.execs[exec_id]["exit_code"]}

    async def put_archive(self, container_id: str, path: str, data: bytes) -> None:
        self.calls['put_archive'] += 1
        self._container(container_id)
        if self.fail_put_archive:
            raise ContainerError("put_archive rejected")
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                content = tar.extractfile(member).read()
                self.files[(container_id, posixpath.join(path, member.name))] = content

    async def get_archive(self, container_id: str, path: str) -> bytes:
        self._container(container_id)
        key = (container_id, path)
        if key not in self.files:
            raise ContainerError(f"No such file: {path}")
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            data = self.files[key]
            info = tarfile.TarInfo(name=posixpath.basename(path))
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
        return buffer.getvalue()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def runtime():
    """In-memory container runtime"""
    fake = FakeRuntime()
    fake.images.add("ubuntu:22.04")
    return fake


@pytest.fixture
def pool_config():
    from nrinstall.modules.execution.container_pool import PoolConfig
    return PoolConfig(
        capacity=2,
        default_image="ubuntu:22.04",
        eviction_interval_seconds=3600,
        probe_timeout=1,
        stop_timeout=1,
    )


@pytest.fixture
def pool(runtime, pool_config):
    from nrinstall.modules.execution.container_pool import ContainerPool
    return ContainerPool(runtime, config=pool_config)


@pytest.fixture
def gate():
    """Security gate without shellcheck so results do not depend on the host"""
    from nrinstall.modules.execution.script_validator import ScriptSecurityGate
    return ScriptSecurityGate(shellcheck_enabled=False)


@pytest.fixture
def executor(pool, gate, tmp_path):
    from nrinstall.modules.execution.script_executor import ScriptExecutor, ExecutorConfig
    config = ExecutorConfig(timeout=5, script_dir=tmp_path / "scripts", remote_dir="/tmp/nrinstall")
    return ScriptExecutor(pool, gate=gate, config=config)


@pytest.fixture
def generator():
    """Generator over the packaged templates"""
    from nrinstall.modules.generation.template_engine import TemplateScriptGenerator
    return TemplateScriptGenerator()


@pytest.fixture
def orchestrator_config():
    from nrinstall.modules.orchestrator.installation_orchestrator import OrchestratorConfig
    return OrchestratorConfig(
        base_image="ubuntu:22.04",
        license_key="",
        execution_timeout=5,
        install_retries=0,
        retry_base_delay=0,
        retry_max_delay=0,
        verify_enabled=True,
        rollback_on_error=True,
        collect_diagnostics=False,
    )


@pytest.fixture
def orchestrator(pool, executor, generator, gate, orchestrator_config):
    from nrinstall.config.integration_defaults import IntegrationDefaults
    from nrinstall.modules.orchestrator.installation_orchestrator import InstallationOrchestrator
    return InstallationOrchestrator(
        pool, executor, generator,
        gate=gate,
        defaults=IntegrationDefaults(),
        config=orchestrator_config,
    )
