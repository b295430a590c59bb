"""
Bounded calls to external collaborators.

The imagery provider and the ledger are slow, remote and unreliable. Every
call goes through call_with_timeout so a hung provider costs at most the
configured number of seconds; the worker thread is abandoned, not joined.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Callable, TypeVar

from ..errors import ExternalServiceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(func: Callable[[], T], timeout_seconds: float, operation: str) -> T:
    """
    Run func with a deadline.

    Raises ExternalServiceUnavailableError on timeout or on any exception
    raised by func, chaining the original.
    """
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"ext-{operation}")
    future = executor.submit(func)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as e:
        future.cancel()
        logger.warning(f"{operation} timed out after {timeout_seconds}s")
        raise ExternalServiceUnavailableError(
            operation, f"timed out after {timeout_seconds}s"
        ) from e
    except ExternalServiceUnavailableError:
        raise
    except Exception as e:
        logger.warning(f"{operation} failed: {e}")
        raise ExternalServiceUnavailableError(operation, str(e) or type(e).__name__) from e
    finally:
        executor.shutdown(wait=False)
