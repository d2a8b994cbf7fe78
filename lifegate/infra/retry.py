import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from ..errors import TransactionConflict

log = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    log.warning(
        "ledger transaction conflict (attempt %d): %s",
        state.attempt_number, exc,
    )


async def run_transaction(
    fn: Callable[[], Awaitable[T]], max_attempts: int = 5
) -> T:
    """Re-run `fn` (one whole transaction) while the store reports a conflict.

    Exhaustion re-raises the last TransactionConflict.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.02, min=0.01, max=0.5),
        retry=retry_if_exception_type(TransactionConflict),
        before_sleep=_log_retry,
        reraise=True,
    ):
        with attempt:
            return await fn()
    raise AssertionError("unreachable")
