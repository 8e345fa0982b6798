"""Bounded polling of CI check status.

wait_for_checks() polls at a fixed interval until the checks reach a
definitive state or the hard maximum wait elapses. Elapsed time is the sum of
the intervals actually slept, so the loop is bounded even when the fetch call
itself is slow or the clock is faked in tests.
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum

from pydantic import BaseModel, ConfigDict

from delivery_governance.errors import ValidationError
from delivery_governance.observability import get_logger

logger = get_logger(__name__)


class CheckStatus(StrEnum):
    PENDING = "PENDING"
    GREEN = "GREEN"
    RED = "RED"


class PollOutcome(StrEnum):
    GREEN = "GREEN"
    RED = "RED"
    TIMEOUT = "TIMEOUT"


class PollResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    outcome: PollOutcome
    polls: int
    waited_seconds: float
    last_status: CheckStatus


async def wait_for_checks(
    fetch: Callable[[], Awaitable[CheckStatus]],
    poll_interval: float,
    max_wait: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollResult:
    """Poll CI checks until GREEN, RED, or max_wait seconds have been waited.

    Args:
        fetch: Returns the current aggregated check status.
        poll_interval: Seconds between polls.
        max_wait: Hard upper bound on total seconds waited.
        sleep: Awaitable sleep; injectable for tests.

    Returns:
        PollResult with the terminal outcome and the number of polls made.

    Raises:
        ValidationError: If poll_interval is not positive or max_wait is negative.
    """
    if poll_interval <= 0:
        raise ValidationError("poll_interval must be positive", field="poll_interval")
    if max_wait < 0:
        raise ValidationError("max_wait must not be negative", field="max_wait")

    waited = 0.0
    polls = 0
    while True:
        status = CheckStatus(await fetch())
        polls += 1
        if status is not CheckStatus.PENDING:
            outcome = PollOutcome(status.value)
            logger.info("Checks reached definitive state", outcome=outcome.value, polls=polls, waited=waited)
            return PollResult(outcome=outcome, polls=polls, waited_seconds=waited, last_status=status)

        remaining = max_wait - waited
        if remaining <= 0:
            logger.warning("Gave up waiting for checks", polls=polls, max_wait=max_wait)
            return PollResult(
                outcome=PollOutcome.TIMEOUT,
                polls=polls,
                waited_seconds=waited,
                last_status=status,
            )

        interval = min(poll_interval, remaining)
        await sleep(interval)
        waited += interval
