from __future__ import annotations

import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

log = logging.getLogger("loadtools.workflow.pool")


class CancellationToken(threading.Event):
    """External cancellation for one execution; shared by workers and the loader supervisor."""

    def cancel(self) -> None:
        self.set()

    @property
    def cancelled(self) -> bool:
        return self.is_set()


@dataclass
class PartitionOutcome:
    index: int
    results: List[Any] = field(default_factory=list)
    stopped: bool = False

    @property
    def processed(self) -> int:
        return len(self.results)


def _run_partition(
    index: int,
    items: Sequence[Any],
    work: Callable[[Any], Any],
    should_stop: Callable[[], bool],
) -> PartitionOutcome:
    outcome = PartitionOutcome(index=index)
    for item in items:
        # the current item always finishes; no new item starts after a stop
        if should_stop():
            outcome.stopped = True
            log.debug("Partition %d stopping after %d items", index, outcome.processed)
            break
        outcome.results.append(work(item))
    return outcome


def run_partitions(
    partitions: Sequence[Sequence[Any]],
    work: Callable[[Any], Any],
    workers: int,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[PartitionOutcome]:
    """
    Apply ``work`` to every item, one partition per task on a fixed-size
    thread pool, and wait for all of them. Outcomes come back in partition
    order. Each task runs in a copy of the caller's context so context
    variables (the correlation id) follow the work.
    """
    stop = should_stop or (lambda: False)
    if not partitions:
        return []

    with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="partition") as pool:
        futures = [
            pool.submit(contextvars.copy_context().run, _run_partition, i, part, work, stop)
            for i, part in enumerate(partitions)
        ]
        # result() re-raises worker exceptions in the caller
        return [f.result() for f in futures]


def merged_results(outcomes: Sequence[PartitionOutcome]) -> List[Any]:
    out: List[Any] = []
    for o in outcomes:
        out.extend(o.results)
    return out
