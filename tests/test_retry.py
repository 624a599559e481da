"""Tests for the two-tier retry coordinator."""

from __future__ import annotations

from datetime import datetime
from typing import List

import pytest

from readaloud.services.error_log import ErrorLogStore
from readaloud.tts.errors import ProviderError, TransportError
from readaloud.tts.retry import (
    RETRY_DELAY_SECONDS,
    RetryCoordinator,
    RetryPrompt,
    RetryStatus,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class ScriptedFetch:
    """Fails the first ``failures`` calls, then returns audio."""

    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or ProviderError(503, "Service Unavailable")
        self.calls = 0

    async def __call__(self, text: str) -> bytes:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return b"mp3:" + text.encode()


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.mark.anyio
async def test_success_after_two_failures_waits_between_attempts() -> None:
    fetch = ScriptedFetch(failures=2)
    sleep = RecordingSleep()
    notices: List[str] = []
    coordinator = RetryCoordinator(fetch, notify=notices.append, sleep=sleep)

    outcome = await coordinator.run("hello", chunk_number=1)

    assert outcome.status is RetryStatus.SUCCESS
    assert outcome.ok
    assert outcome.audio == b"mp3:hello"
    assert fetch.calls == 3
    assert sleep.delays == [RETRY_DELAY_SECONDS, RETRY_DELAY_SECONDS]
    assert "Auto-retrying chunk 1 (attempt 2)..." in notices
    assert "Auto-retrying chunk 1 (attempt 3)..." in notices


@pytest.mark.anyio
async def test_test_mode_gives_up_after_one_cycle_without_prompt() -> None:
    fetch = ScriptedFetch(failures=100)
    sleep = RecordingSleep()
    prompts: List[RetryPrompt] = []

    async def decide(prompt: RetryPrompt) -> bool:
        prompts.append(prompt)
        return True

    coordinator = RetryCoordinator(fetch, decide=decide, sleep=sleep)

    outcome = await coordinator.run("probe", chunk_number=1, is_test=True)

    assert outcome.status is RetryStatus.EXHAUSTED_RETRIES
    assert not outcome.ok
    assert fetch.calls == 3
    assert prompts == []
    assert sleep.delays == []


@pytest.mark.anyio
async def test_user_retry_starts_a_fresh_cycle_then_stop_cancels() -> None:
    fetch = ScriptedFetch(failures=100)
    answers = [True, False]
    prompts: List[RetryPrompt] = []

    async def decide(prompt: RetryPrompt) -> bool:
        prompts.append(prompt)
        return answers.pop(0)

    coordinator = RetryCoordinator(fetch, decide=decide, sleep=RecordingSleep())

    outcome = await coordinator.run("text", chunk_number=4)

    assert outcome.status is RetryStatus.USER_CANCELLED
    assert fetch.calls == 6
    assert len(prompts) == 2
    assert prompts[0].chunk_number == 4
    assert prompts[0].attempts == 3
    assert prompts[0].message == "Chunk 4 auto-retry failed. Continue?"


@pytest.mark.anyio
async def test_user_retry_can_recover() -> None:
    fetch = ScriptedFetch(failures=4, error=TransportError("connection refused"))

    async def decide(prompt: RetryPrompt) -> bool:
        return True

    coordinator = RetryCoordinator(fetch, decide=decide, sleep=RecordingSleep())

    outcome = await coordinator.run("text", chunk_number=2)

    assert outcome.ok
    assert fetch.calls == 5


@pytest.mark.anyio
async def test_dead_caller_cancels_before_fetching() -> None:
    fetch = ScriptedFetch(failures=0)
    coordinator = RetryCoordinator(fetch, sleep=RecordingSleep())

    outcome = await coordinator.run("text", chunk_number=1, is_alive=lambda: False)

    assert outcome.status is RetryStatus.USER_CANCELLED
    assert fetch.calls == 0


@pytest.mark.anyio
async def test_caller_going_away_during_delay_cancels() -> None:
    fetch = ScriptedFetch(failures=100)
    alive = {"value": True}

    async def sleep(seconds: float) -> None:
        alive["value"] = False

    coordinator = RetryCoordinator(fetch, sleep=sleep)

    outcome = await coordinator.run("text", chunk_number=1, is_alive=lambda: alive["value"])

    assert outcome.status is RetryStatus.USER_CANCELLED
    assert fetch.calls == 1


@pytest.mark.anyio
async def test_caller_going_away_while_prompted_cancels_even_on_retry() -> None:
    fetch = ScriptedFetch(failures=100)
    alive = {"value": True}

    async def decide(prompt: RetryPrompt) -> bool:
        alive["value"] = False
        return True

    coordinator = RetryCoordinator(fetch, decide=decide, sleep=RecordingSleep())

    outcome = await coordinator.run("text", chunk_number=1, is_alive=lambda: alive["value"])

    assert outcome.status is RetryStatus.USER_CANCELLED
    assert fetch.calls == 3


@pytest.mark.anyio
async def test_without_decision_source_cycle_is_exhausted() -> None:
    coordinator = RetryCoordinator(ScriptedFetch(failures=100), sleep=RecordingSleep())

    outcome = await coordinator.run("text", chunk_number=1)

    assert outcome.status is RetryStatus.EXHAUSTED_RETRIES


@pytest.mark.anyio
async def test_failures_are_written_to_error_log(tmp_path) -> None:
    log = ErrorLogStore(tmp_path / "errors.json", clock=lambda: datetime(2024, 5, 1, 9, 30, 0))

    async def decide(prompt: RetryPrompt) -> bool:
        return False

    coordinator = RetryCoordinator(
        ScriptedFetch(failures=100),
        decide=decide,
        error_log=log,
        sleep=RecordingSleep(),
    )

    await coordinator.run("text", chunk_number=7)

    entries = await log.entries()
    assert entries[0] == "[2024-05-01 09:30:00] User chose not to retry chunk 7 further."
    assert entries[1] == "[2024-05-01 09:30:00] Chunk 7 failed after 3 auto-retries."
    assert entries[-1] == (
        "[2024-05-01 09:30:00] Chunk 7 API error (attempt 1): 503 - Service Unavailable"
    )
    assert len(entries) == 5


@pytest.mark.anyio
async def test_test_mode_leaves_error_log_untouched(tmp_path) -> None:
    log = ErrorLogStore(tmp_path / "errors.json")
    coordinator = RetryCoordinator(
        ScriptedFetch(failures=100), error_log=log, sleep=RecordingSleep()
    )

    await coordinator.run("text", chunk_number=1, is_test=True)

    assert await log.entries() == []


def test_at_least_one_attempt_is_required() -> None:
    with pytest.raises(ValueError):
        RetryCoordinator(ScriptedFetch(failures=0), max_auto_retries=0)
