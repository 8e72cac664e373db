"""
Job execution workflow.

Exports the public API:
- LoadJobExecution, JobStatus
- RetryPolicy
- CancellationToken

The Orchestrator lives in ``loadtools.workflow.engine``.
"""
from .policy import RetryPolicy, RetrySchedule, wait_for_retry
from .pool import CancellationToken, run_partitions
from .state import JobStatus, LoadJobExecution
