"""Two-tier retry policy around single synthesis calls.

A chunk gets a cycle of automatic attempts with a fixed delay between them.
When the cycle is exhausted the coordinator awaits an external decision
(normally a prompt answered by the user). "Retry" starts a fresh cycle, as
many times as the user likes; "stop" ends the chunk as cancelled.

Usage:
    coordinator = RetryCoordinator(fetch, decide=ask_user, notify=show_notice)
    outcome = await coordinator.run(chunk.text, chunk_number=3, is_alive=session.is_alive)
    if outcome.ok:
        play(outcome.audio)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .errors import ProviderError, TransportError

if TYPE_CHECKING:
    from ..services.error_log import ErrorLogStore

logger = logging.getLogger(__name__)

MAX_AUTO_RETRIES_PER_CYCLE = 3
RETRY_DELAY_SECONDS = 3.0


class RetryStatus(str, Enum):
    SUCCESS = "success"
    USER_CANCELLED = "user_cancelled"
    EXHAUSTED_RETRIES = "exhausted_retries"


@dataclass(frozen=True)
class FetchOutcome:
    """Binary per-chunk result: audio bytes, or the reason there are none."""

    status: RetryStatus
    audio: Optional[bytes] = None

    @property
    def ok(self) -> bool:
        return self.status == RetryStatus.SUCCESS and self.audio is not None

    @classmethod
    def success(cls, audio: bytes) -> "FetchOutcome":
        return cls(RetryStatus.SUCCESS, audio)

    @classmethod
    def cancelled(cls) -> "FetchOutcome":
        return cls(RetryStatus.USER_CANCELLED)

    @classmethod
    def exhausted(cls) -> "FetchOutcome":
        return cls(RetryStatus.EXHAUSTED_RETRIES)


@dataclass(frozen=True)
class RetryPrompt:
    """Question put to the decision source after a failed cycle."""

    chunk_number: int
    attempts: int
    message: str


Fetcher = Callable[[str], Awaitable[bytes]]
RetryDecider = Callable[[RetryPrompt], Awaitable[bool]]
Notifier = Callable[[str], None]


def _always_alive() -> bool:
    return True


class RetryCoordinator:
    """Run a fetcher with bounded automatic retries and user-confirmed cycles."""

    def __init__(
        self,
        fetch: Fetcher,
        *,
        decide: Optional[RetryDecider] = None,
        notify: Optional[Notifier] = None,
        error_log: Optional["ErrorLogStore"] = None,
        max_auto_retries: int = MAX_AUTO_RETRIES_PER_CYCLE,
        retry_delay: float = RETRY_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_auto_retries < 1:
            raise ValueError("max_auto_retries must be at least 1")
        self._fetch = fetch
        self._decide = decide
        self._notify = notify
        self._error_log = error_log
        self._max_auto_retries = max_auto_retries
        self._retry_delay = retry_delay
        self._sleep = sleep

    async def run(
        self,
        text: str,
        chunk_number: int,
        *,
        is_alive: Callable[[], bool] = _always_alive,
        is_test: bool = False,
    ) -> FetchOutcome:
        """Fetch ``text`` until it succeeds, the user gives up, or the caller goes away.

        ``chunk_number`` is 1-based and only used in messages. In test mode
        there is no delay, no notice, no error-log entry and no prompt: the
        outcome after one failed cycle is ``EXHAUSTED_RETRIES``.
        """
        while True:
            attempt = 0
            while attempt < self._max_auto_retries:
                if not is_alive():
                    return FetchOutcome.cancelled()

                if attempt > 0 and not is_test:
                    await self._sleep(self._retry_delay)
                    if not is_alive():
                        return FetchOutcome.cancelled()
                    self._announce(
                        f"Auto-retrying chunk {chunk_number} (attempt {attempt + 1})..."
                    )

                try:
                    audio = await self._fetch(text)
                except TransportError as exc:
                    await self._record_failure(
                        f"Request for chunk {chunk_number} failed "
                        f"(attempt {attempt + 1}): {exc}",
                        is_test,
                    )
                    attempt += 1
                    continue
                except ProviderError as exc:
                    await self._record_failure(
                        f"Chunk {chunk_number} API error (attempt {attempt + 1}): "
                        f"{exc.status_code} - {exc.message}",
                        is_test,
                    )
                    attempt += 1
                    continue

                if not is_alive():
                    return FetchOutcome.cancelled()
                return FetchOutcome.success(audio)

            if not is_alive():
                return FetchOutcome.cancelled()
            if is_test:
                return FetchOutcome.exhausted()

            await self._log(
                f"Chunk {chunk_number} failed after {self._max_auto_retries} auto-retries."
            )
            if self._decide is None:
                return FetchOutcome.exhausted()

            prompt = RetryPrompt(
                chunk_number=chunk_number,
                attempts=self._max_auto_retries,
                message=f"Chunk {chunk_number} auto-retry failed. Continue?",
            )
            keep_trying = await self._decide(prompt)
            if not is_alive():
                return FetchOutcome.cancelled()
            if not keep_trying:
                await self._log(f"User chose not to retry chunk {chunk_number} further.")
                return FetchOutcome.cancelled()
            await self._log(f"User chose to continue retrying chunk {chunk_number}.")

    async def _record_failure(self, message: str, is_test: bool) -> None:
        logger.warning(message)
        if is_test:
            return
        if self._error_log is not None:
            await self._error_log.add(message)
        self._announce(message)

    async def _log(self, message: str) -> None:
        logger.info(message)
        if self._error_log is not None:
            await self._error_log.add(message)

    def _announce(self, message: str) -> None:
        if self._notify is not None:
            self._notify(message)


__all__ = [
    "FetchOutcome",
    "MAX_AUTO_RETRIES_PER_CYCLE",
    "RETRY_DELAY_SECONDS",
    "RetryCoordinator",
    "RetryPrompt",
    "RetryStatus",
]
