from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

log = logging.getLogger("loadtools.loader.process")


@dataclass(frozen=True)
class ProcessOutcome:
    returncode: Optional[int]
    timed_out: bool = False
    cancelled: bool = False
    duration: float = 0.0


def _terminate(proc: subprocess.Popen, grace: float) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        log.warning("Loader pid %s ignored SIGTERM; killing", proc.pid)
        proc.kill()
        proc.wait()


def run_loader(
    command: List[str],
    cwd: Path,
    env: Dict[str, str],
    timeout: float,
    stdout_path: Path,
    cancel: Optional[threading.Event] = None,
    poll_interval: float = 0.5,
    grace: float = 5.0,
) -> ProcessOutcome:
    """
    Run the bulk loader inside ``cwd`` with stdout/stderr redirected to
    ``stdout_path``. The process is terminated when ``timeout`` elapses or
    ``cancel`` is set.
    """
    stdout_path = Path(stdout_path)
    stdout_path.parent.mkdir(parents=True, exist_ok=True)
    start = time.monotonic()
    deadline = start + timeout

    with open(stdout_path, "w") as fout:
        proc = subprocess.Popen(
            command,
            cwd=cwd,
            env=env,
            stdout=fout,
            stderr=subprocess.STDOUT,
        )
        while True:
            try:
                rc = proc.wait(timeout=poll_interval)
                return ProcessOutcome(returncode=rc, duration=time.monotonic() - start)
            except subprocess.TimeoutExpired:
                pass
            if cancel is not None and cancel.is_set():
                _terminate(proc, grace)
                return ProcessOutcome(returncode=proc.returncode, cancelled=True,
                                      duration=time.monotonic() - start)
            if time.monotonic() >= deadline:
                log.error("Loader exceeded %.0fs timeout; terminating", timeout)
                _terminate(proc, grace)
                return ProcessOutcome(returncode=proc.returncode, timed_out=True,
                                      duration=time.monotonic() - start)
