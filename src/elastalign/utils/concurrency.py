"""
Bounded batches of worker tasks
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


def run_batch(
    tasks: Sequence[Callable[[], Any]],
    max_workers: int,
    cancel_check: Optional[Callable[[], bool]] = None
) -> List[Any]:
    """
    Run tasks on at most max_workers threads and wait for all of them

    Results keep the order of `tasks`, independent of completion order.
    A task that has not started when cancellation is requested does not run.

    Args:
        tasks: Callables without arguments
        max_workers: Thread count
        cancel_check: Callable returning True when work should stop

    Returns:
        List of task results

    Raises:
        InterruptedError: if cancel_check fires
        Exception: the first error raised by a task, pending tasks are cancelled
    """
    if not tasks:
        return []

    def guarded(task):
        if cancel_check is not None and cancel_check():
            raise InterruptedError("Batch cancelled")
        return task()

    workers = max(1, min(max_workers, len(tasks)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(guarded, task) for task in tasks]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        failed = [f for f in futures if f in done and f.exception() is not None]
        if failed:
            for future in pending:
                future.cancel()
            raise failed[0].exception()

    return [future.result() for future in futures]
