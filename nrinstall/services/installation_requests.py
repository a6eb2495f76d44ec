"""
Asynchronous Installation Requests

submit() returns a request id immediately and runs the installation in the
background. Status moves pending -> in_progress -> completed | failed. When a
callback URL is given, the final status is POSTed there as JSON; callback
failures are logged, never raised.

Status is kept in memory only and is bounded; finished requests beyond
``max_tracked`` are forgotten oldest first.
"""

import asyncio
from datetime import datetime
from typing import Dict, Optional

import httpx

from nrinstall.core.config import settings
from nrinstall.core.logging_config import logger
from nrinstall.core.security import generate_secure_id
from nrinstall.modules.orchestrator.installation_orchestrator import InstallationOrchestrator
from nrinstall.schemas.installation import InstallationRequest, InstallationStatus, RequestStatus


FINISHED = (RequestStatus.COMPLETED, RequestStatus.FAILED)


class AsyncInstallationService:
    """Background installation tracking with optional completion callbacks"""

    def __init__(
        self,
        orchestrator: InstallationOrchestrator,
        callback_timeout: Optional[float] = None,
        max_tracked: int = 1000
    ):
        self.orchestrator = orchestrator
        self.callback_timeout = callback_timeout or settings.CALLBACK_TIMEOUT
        self.max_tracked = max_tracked

        self._requests: Dict[str, InstallationStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def submit(
        self,
        request: InstallationRequest,
        callback_url: Optional[str] = None,
        operation: str = "install"
    ) -> InstallationStatus:
        """Start an installation in the background and return its initial status"""
        if operation not in ("install", "uninstall"):
            raise ValueError(f"Unsupported operation: {operation}")

        request_id = generate_secure_id("req-")
        status = InstallationStatus(
            request_id=request_id,
            integration=request.integration,
            callback_url=callback_url,
        )
        self._requests[request_id] = status
        self._prune()

        task = asyncio.create_task(self._process(request_id, request, operation))
        self._tasks[request_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(request_id, None))

        logger.info(f"[AsyncInstall] Accepted {operation} of {request.integration} as {request_id}")
        return status.model_copy()

    def get_status(self, request_id: str) -> Optional[InstallationStatus]:
        status = self._requests.get(request_id)
        return status.model_copy() if status else None

    async def wait(self, request_id: str, timeout: Optional[float] = None) -> Optional[InstallationStatus]:
        """Wait for a request to finish (or the timeout) and return its status"""
        task = self._tasks.get(request_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(f"[AsyncInstall] Still waiting on {request_id} after {timeout}s")
        return self.get_status(request_id)

    async def _process(self, request_id: str, request: InstallationRequest, operation: str):
        self._update(request_id, RequestStatus.IN_PROGRESS)

        try:
            if operation == "uninstall":
                result = await self.orchestrator.uninstall_integration(request)
            else:
                result = await self.orchestrator.install_integration(request)
        except asyncio.CancelledError:
            logger.warning(f"[AsyncInstall] {request_id} cancelled before completion")
            self._update(request_id, RequestStatus.FAILED, error="Installation cancelled")
            status = self._requests.get(request_id)
            if status is not None and status.callback_url:
                await self._send_callback(status)
            raise
        except Exception as e:
            logger.error(f"[AsyncInstall] {request_id} crashed: {e}", exc_info=True)
            self._update(request_id, RequestStatus.FAILED, error=str(e))
        else:
            self._update(
                request_id,
                RequestStatus.COMPLETED if result.success else RequestStatus.FAILED,
                result=result,
                error=None if result.success else result.message,
            )

        status = self._requests.get(request_id)
        if status is not None and status.callback_url:
            await self._send_callback(status)

    def _update(self, request_id: str, state: RequestStatus, **fields):
        status = self._requests.get(request_id)
        if status is None:
            return
        status.status = state
        status.updated_at = datetime.utcnow()
        for key, value in fields.items():
            setattr(status, key, value)

    async def _send_callback(self, status: InstallationStatus):
        try:
            async with httpx.AsyncClient(timeout=self.callback_timeout) as client:
                response = await client.post(status.callback_url, json=status.model_dump(mode="json"))
                response.raise_for_status()
            logger.info(f"[AsyncInstall] Callback for {status.request_id} delivered")
        except httpx.HTTPError as e:
            logger.warning(f"[AsyncInstall] Callback for {status.request_id} to {status.callback_url} failed: {e}")

    def _prune(self):
        overflow = len(self._requests) - self.max_tracked
        if overflow <= 0:
            return
        finished = sorted(
            (s for s in self._requests.values() if s.status in FINISHED),
            key=lambda s: s.updated_at,
        )
        for status in finished[:overflow]:
            del self._requests[status.request_id]

    async def shutdown(self):
        """Cancel requests still running"""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
