"""
Scoped process pools for embarrassingly parallel model fitting.

Subset fits (dredge) and bootstrap refits (goodness of fit) run on a
ProcessPoolExecutor. A pool is acquired once per pipeline run, shared
across species, and shut down on every exit path by the context manager.
Workers receive picklable task tuples and a module-level function; the
shared detection histories travel with each task and are never mutated.
"""

import contextlib
import os
from concurrent.futures import ProcessPoolExecutor, as_completed

from occupancy_pipeline.logging_config import get_pipeline_logger

log = get_pipeline_logger(__name__)


def resolve_workers(max_workers):
    """Clamp a requested worker count to [1, cpu_count]."""
    if max_workers is None:
        max_workers = max(1, (os.cpu_count() or 2) - 1)
    return max(1, min(int(max_workers), os.cpu_count() or 1))


@contextlib.contextmanager
def scoped_pool(max_workers, name="pool"):
    """Yield a ProcessPoolExecutor, or None for sequential execution.

    Args:
        max_workers: Requested worker count; <= 1 runs in-process.
        name: Label used in log messages.

    The executor is shut down (cancelling queued tasks) when the block
    exits, including on exceptions.
    """
    workers = resolve_workers(max_workers)
    if workers <= 1:
        log.debug("%s: sequential execution", name)
        yield None
        return

    log.info("Starting %s with %d workers", name, workers)
    executor = ProcessPoolExecutor(max_workers=workers)
    try:
        yield executor
    finally:
        executor.shutdown(wait=True, cancel_futures=True)
        log.debug("%s shut down", name)


def map_tasks(fn, tasks, executor=None):
    """Apply *fn* to every task and return results in task order.

    Args:
        fn: Picklable module-level function taking one task.
        tasks: Sequence of task arguments.
        executor: Pool from scoped_pool(); None runs sequentially.

    Returns:
        List of results aligned with *tasks*. The call blocks until every
        task has returned; a worker exception is re-raised after the
        remaining futures are cancelled.
    """
    tasks = list(tasks)
    if executor is None or len(tasks) <= 1:
        return [fn(task) for task in tasks]

    results = [None] * len(tasks)
    futures = {executor.submit(fn, task): i for i, task in enumerate(tasks)}
    try:
        for future in as_completed(futures):
            results[futures[future]] = future.result()
    except Exception:
        for future in futures:
            future.cancel()
        log.error("Parallel task failed; cancelled remaining tasks", exc_info=True)
        raise
    return results
