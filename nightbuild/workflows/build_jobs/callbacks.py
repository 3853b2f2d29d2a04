"""Best-effort delivery of job status updates to the requester."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from nightbuild.schemas.build_job_models import CallbackStatus, StatusUpdate

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_TIMEOUT_SECONDS = 10.0
DEFAULT_CALLBACK_MAX_RETRIES = 2


class CallbackNotifier:
    """POST status updates with a per-attempt timeout and a few retries.

    Delivery problems are logged and reported through the return value of
    ``notify``; they never raise into the caller.
    """

    def __init__(
        self,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_CALLBACK_MAX_RETRIES,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._timeout_seconds = timeout_seconds
        self._max_retries = max(0, int(max_retries))
        self._backoff_seconds = max(0.0, float(backoff_seconds))
        self._sleep = sleep

    @staticmethod
    def _headers(secret: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if secret:
            headers["Authorization"] = f"Bearer {secret}"
        return headers

    async def _post(self, callback_url: str, body: dict, headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                callback_url, json=body, headers=headers, timeout=self._timeout_seconds
            )
        async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
            return await client.post(callback_url, json=body, headers=headers)

    async def notify(
        self,
        callback_url: str,
        update: StatusUpdate,
        secret: Optional[str] = None,
    ) -> bool:
        """Deliver one update; return whether any attempt succeeded."""

        body = update.model_dump(mode="json", by_alias=True, exclude_none=True)
        headers = self._headers(secret)
        attempts = self._max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                response = await self._post(callback_url, body, headers)
            except Exception as exc:  # noqa: BLE001 - delivery is best effort
                logger.warning(
                    "Status callback for job %s failed (attempt %d/%d): %s",
                    update.job_id,
                    attempt,
                    attempts,
                    exc,
                    extra={"job_id": update.job_id, "status": update.status.value},
                )
            else:
                if response.is_success:
                    return True
                logger.warning(
                    "Status callback for job %s rejected (attempt %d/%d): HTTP %d",
                    update.job_id,
                    attempt,
                    attempts,
                    response.status_code,
                    extra={"job_id": update.job_id, "status": update.status.value},
                )

            if attempt < attempts:
                await self._sleep(self._backoff_seconds * attempt)

        logger.error(
            "Giving up on status callback %s for job %s",
            update.status.value,
            update.job_id,
            extra={"job_id": update.job_id},
        )
        return False


class JobCallbacks:
    """Status callbacks bound to one job."""

    def __init__(
        self,
        notifier: CallbackNotifier,
        *,
        callback_url: str,
        job_id: str,
        secret: Optional[str] = None,
    ) -> None:
        self._notifier = notifier
        self._callback_url = callback_url
        self._job_id = job_id
        self._secret = secret

    async def _send(self, status: CallbackStatus, **fields: Optional[str]) -> bool:
        update = StatusUpdate(job_id=self._job_id, status=status, **fields)
        return await self._notifier.notify(self._callback_url, update, self._secret)

    async def started(self) -> bool:
        return await self._send(CallbackStatus.STARTED, message="Build started")

    async def planning(self) -> bool:
        return await self._send(
            CallbackStatus.PLANNING, message="Parsing spec and planning work items"
        )

    async def writing(self, step: str) -> bool:
        return await self._send(CallbackStatus.WRITING, step=step, message=f"Writing {step}")

    async def testing(self) -> bool:
        return await self._send(CallbackStatus.TESTING, message="Running validation checks")

    async def pr_open(self, pr_url: str) -> bool:
        return await self._send(
            CallbackStatus.PR_OPEN, pr_url=pr_url, message="Pull request created"
        )

    async def deploying(self, pr_url: str) -> bool:
        return await self._send(
            CallbackStatus.DEPLOYING, pr_url=pr_url, message="Merging for staging deploy"
        )

    async def deployed(self, pr_url: str, deploy_url: Optional[str] = None) -> bool:
        message = (
            f"Deployed to staging: {deploy_url}"
            if deploy_url
            else "Pull request merged (staging deploy pending)"
        )
        return await self._send(CallbackStatus.DEPLOYED, pr_url=pr_url, message=message)

    async def complete(self, pr_url: Optional[str]) -> bool:
        return await self._send(
            CallbackStatus.COMPLETE, pr_url=pr_url, message="Build complete"
        )

    async def failed(self, error: str) -> bool:
        return await self._send(
            CallbackStatus.FAILED, error=error, message=f"Build failed: {error}"
        )

    async def paused_approval(self, reason: str) -> bool:
        return await self._send(CallbackStatus.PAUSED_APPROVAL, message=reason)
