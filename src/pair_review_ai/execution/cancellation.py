"""Analysis-id to live-process mapping used for user-triggered cancellation.

One registry instance is owned by whoever orchestrates analyses and is handed
to the executor; there is no module-level instance. Invocations belonging to
one multi-voice review can be grouped under a run id and cancelled together.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Set

from pair_review_ai.domain.contracts import ProcessHandle
from pair_review_ai.observability.structured_log import log_json

logger = logging.getLogger(__name__)


class CancellationRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._processes: Dict[str, List[ProcessHandle]] = {}
        self._cancelled: Set[str] = set()
        self._runs: Dict[str, Set[str]] = {}

    def register_process(self, analysis_id: str, handle: ProcessHandle) -> None:
        with self._lock:
            self._processes.setdefault(analysis_id, []).append(handle)
        log_json(
            logger,
            "cancellation.register",
            analysis_id=analysis_id,
            pid=getattr(handle, "pid", None),
        )

    def unregister_process(self, analysis_id: str, handle: ProcessHandle) -> None:
        with self._lock:
            handles = self._processes.get(analysis_id)
            if not handles:
                return
            remaining = [item for item in handles if item is not handle]
            if remaining:
                self._processes[analysis_id] = remaining
            else:
                del self._processes[analysis_id]

    def is_analysis_cancelled(self, analysis_id: str) -> bool:
        with self._lock:
            return analysis_id in self._cancelled

    def cancel(self, analysis_id: str) -> int:
        """Mark the analysis cancelled and SIGTERM its live processes.

        Returns the number of processes signalled.
        """
        with self._lock:
            self._cancelled.add(analysis_id)
            handles = list(self._processes.get(analysis_id, ()))
        signalled = 0
        for handle in handles:
            if handle.returncode is not None:
                continue
            try:
                handle.terminate()
            except ProcessLookupError:
                continue
            signalled += 1
        log_json(logger, "cancellation.cancel", analysis_id=analysis_id, signalled=signalled)
        return signalled

    def add_to_run(self, run_id: str, analysis_id: str) -> None:
        with self._lock:
            self._runs.setdefault(run_id, set()).add(analysis_id)

    def cancel_run(self, run_id: str) -> int:
        with self._lock:
            analysis_ids = sorted(self._runs.get(run_id, ()))
        return sum(self.cancel(analysis_id) for analysis_id in analysis_ids)

    def clear(self, analysis_id: str) -> None:
        with self._lock:
            self._processes.pop(analysis_id, None)
            self._cancelled.discard(analysis_id)
            for members in self._runs.values():
                members.discard(analysis_id)
            self._runs = {run_id: members for run_id, members in self._runs.items() if members}

    def active_analysis_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._processes)
