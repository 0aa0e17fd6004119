"""
Background execution for workflow runs.

Routes create the pending generation synchronously, answer 202, and hand
the pipeline to this executor. No worker owns a generation: all state is in
the store, so a run lost with its process is finished by webhooks or by
lazy sync on the next read.
"""

from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

# Shared executor for workflow runs
_background_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="workflow_worker")


def get_executor() -> ThreadPoolExecutor:
    return _background_executor


class WorkflowDispatcher:
    """
    Submits engine.run(generation_id) to an executor.
    Tests pass inline=True to run the pipeline in the calling thread.
    """

    def __init__(self, run: Callable[[str], object], executor: Optional[ThreadPoolExecutor] = None, inline: bool = False):
        self._run = run
        self._executor = executor or get_executor()
        self.inline = inline

    def _run_logged(self, generation_id: str) -> None:
        start_time = time.time()
        try:
            self._run(generation_id)
        except Exception as e:
            print(f"[ASYNC] ERROR: workflow run crashed generation={generation_id}: {type(e).__name__}: {e}")
        else:
            duration_ms = int((time.time() - start_time) * 1000)
            print(f"[ASYNC] workflow run done generation={generation_id} duration_ms={duration_ms}")

    def dispatch(self, generation_id: str) -> Optional[Future]:
        if self.inline:
            self._run_logged(generation_id)
            return None
        return self._executor.submit(self._run_logged, generation_id)
