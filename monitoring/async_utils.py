import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with a per-attempt timeout and exponential backoff."""

    retries: int = 2
    timeout_s: float = 8.0
    backoff_s: float = 0.4

    @property
    def attempts(self) -> int:
        return self.retries + 1

    def delay(self, attempt: int) -> float:
        return self.backoff_s * (2 ** attempt)

    def with_timeout(self, timeout_s: float) -> 'RetryPolicy':
        return replace(self, timeout_s=timeout_s)

    @classmethod
    def from_config(cls, section) -> 'RetryPolicy':
        section = section or {}
        return cls(
            retries=int(section.get('retries', 2)),
            timeout_s=float(section.get('timeout_s', 8.0)),
            backoff_s=float(section.get('backoff_s', 0.4)),
        )


NON_RETRYABLE: tuple = ()


async def retry_with_timeout(
    name: str,
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[str, int, BaseException], None]] = None,
    no_retry: tuple = NON_RETRYABLE,
) -> T:
    """Await ``fn()`` under ``policy``; re-raise the last error once attempts run out.

    Exceptions listed in ``no_retry`` propagate on the first occurrence.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None
    for attempt in range(policy.attempts):
        try:
            result = await asyncio.wait_for(fn(), timeout=policy.timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if no_retry and isinstance(exc, no_retry):
                raise
            if isinstance(exc, asyncio.TimeoutError):
                exc = asyncio.TimeoutError(f"{name} timed out after {policy.timeout_s:.1f}s")
            last_error = exc
            logger.warning(
                "[%s] attempt %s/%s failed: %s",
                name,
                attempt + 1,
                policy.attempts,
                exc,
            )
            if on_retry is not None:
                on_retry(name, attempt, exc)
            if attempt < policy.retries:
                await asyncio.sleep(policy.delay(attempt))
            continue
        if attempt:
            logger.info("[%s] succeeded after %s retries", name, attempt)
        return result

    if last_error is None:
        raise ValueError(f"[{name}] retry policy allows no attempts ({policy.attempts})")
    logger.error("[%s] giving up after %s attempts", name, policy.attempts)
    raise last_error


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            await asyncio.gather(*task_list)
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()
