"""Best-effort upload of finished practice sessions.

Uploads never raise and are never awaited by the command that triggers
them; every failure ends as a message to the learner and a log line.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .auth import CredentialStore
from .config import API_BASE, TELEMETRY_TIMEOUT

logger = logging.getLogger(__name__)

MSG_LOGIN_FIRST = 'Please login first to save your practice data. Use the "Login" command.'
MSG_SESSION_EXPIRED = 'Session expired. Please login again using the "Login" command.'
MSG_UNREACHABLE = "Could not reach server. Practice data not saved. Check your connection."

NotifyFn = Callable[[str], Awaitable[None]]


class PracticeRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    question: str
    time_taken: str = Field(..., alias="timeTaken")  # "MM:SS"
    hints_used: int = Field(0, ge=0, alias="hintsUsed")
    solution_viewed: bool = Field(False, alias="solutionViewed")
    language: str
    date: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_payload(self) -> dict:
        return self.model_dump(by_alias=True)


class TelemetryClient:
    def __init__(
        self,
        credentials: CredentialStore,
        notify: NotifyFn | None = None,
        *,
        api_base: str = API_BASE,
        timeout: float = TELEMETRY_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._credentials = credentials
        self._notify = notify
        self._url = f"{api_base.rstrip('/')}/practice"
        self._timeout = timeout
        self._transport = transport

    async def _report(self, message: str) -> None:
        if self._notify is None:
            return
        try:
            await self._notify(message)
        except Exception:
            logger.exception("Failed to show telemetry message")

    async def send_practice_data(self, record: PracticeRecord) -> bool:
        """POST one record. Returns True when the server accepted it."""
        token = await self._credentials.get_token()
        if not token:
            await self._report(MSG_LOGIN_FIRST)
            return False

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._url,
                    json=record.to_payload(),
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            logger.warning("Practice upload failed: %s", e)
            await self._report(MSG_UNREACHABLE)
            return False

        # Token expired or revoked: log out
        if response.status_code == 401:
            await self._credentials.delete_token()
            await self._report(MSG_SESSION_EXPIRED)
            return False

        if not response.is_success:
            logger.warning("Practice upload rejected with status %d", response.status_code)
            await self._report(
                f"Failed to save practice data ({response.status_code}). Will try again next time."
            )
            return False

        logger.info("Practice data saved (%s, %s)", record.language, record.time_taken)
        return True


# Strong references to uploads still in flight
_pending_uploads: set[asyncio.Task] = set()


def _upload_done_callback(task: asyncio.Task):
    """Log exceptions from background uploads instead of silently swallowing."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background practice upload failed: %s", exc, exc_info=exc)


def spawn_practice_upload(client: TelemetryClient, record: PracticeRecord) -> asyncio.Task:
    """Start the upload without waiting for it."""
    task = asyncio.create_task(client.send_practice_data(record))
    _pending_uploads.add(task)
    task.add_done_callback(_pending_uploads.discard)
    task.add_done_callback(_upload_done_callback)
    return task
