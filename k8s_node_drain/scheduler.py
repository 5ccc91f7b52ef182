"""
Deferred uncordon

Uncordons are either run inline (delay 0) or handed to a timer thread that
outlives the node's step in the batch. The batch never waits on them; the
process owning the scheduler decides at shutdown whether to wait for the
pending ones or to leave those nodes cordoned.
"""

import itertools
import threading
from datetime import datetime
from typing import Dict, List, Optional

from loguru import logger

from .cordon import CordonController
from .errors import NodeDrainError
from .models import TaskState, UncordonTask


class UncordonScheduler:
    def __init__(self, cordon: CordonController, dry_run: bool = False):
        self.cordon = cordon
        self.dry_run = dry_run
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._timers: Dict[int, threading.Timer] = {}
        self._tasks: Dict[int, UncordonTask] = {}

    def schedule(self, node: str, delay: float) -> UncordonTask:
        """Uncordon now when delay is 0, otherwise in the background after `delay` seconds"""
        task = UncordonTask(task_id=next(self._ids), node=node, delay=delay, scheduled_at=datetime.now())

        if delay <= 0:
            # UncordonFailed propagates to the caller
            self.cordon.uncordon(node)
            task.finish(TaskState.DONE)
            return task

        if self.dry_run:
            logger.info(f"[DRY-RUN] Would uncordon node {node} after {delay:g} seconds.")
            task.finish(TaskState.CANCELLED)
            return task

        logger.info(f"Will uncordon node {node} after {delay:g} seconds.")
        timer = threading.Timer(delay, self._run, args=(task,))
        timer.daemon = True
        timer.name = f"uncordon-{node}"
        with self._lock:
            self._timers[task.task_id] = timer
            self._tasks[task.task_id] = task
        timer.start()
        logger.info(f"Uncordon scheduled in background (task {task.task_id}).")
        return task

    def _run(self, task: UncordonTask):
        logger.info(f"Delay complete, uncordoning node {task.node}")
        try:
            self.cordon.uncordon(task.node)
        except NodeDrainError as e:
            logger.error(str(e))
            task.finish(TaskState.FAILED, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error uncordoning node {task.node}")
            task.finish(TaskState.FAILED, str(e))
        else:
            task.finish(TaskState.DONE)
        finally:
            with self._lock:
                self._timers.pop(task.task_id, None)
                self._tasks.pop(task.task_id, None)

    def pending(self) -> List[UncordonTask]:
        with self._lock:
            return [task for task in self._tasks.values() if not task.done]

    def cancel_all(self) -> List[UncordonTask]:
        """Cancel every pending uncordon, returns the tasks that were cancelled"""
        with self._lock:
            items = list(self._timers.items())
            self._timers.clear()
        cancelled = []
        for task_id, timer in items:
            timer.cancel()
            with self._lock:
                task = self._tasks.pop(task_id, None)
            if task is not None and not task.done:
                task.finish(TaskState.CANCELLED)
                cancelled.append(task)
        for task in cancelled:
            logger.warning(f"Pending uncordon of node {task.node} cancelled, node stays cordoned.")
        return cancelled

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> List[UncordonTask]:
        """Wait for pending uncordons, or cancel them; returns the tasks left undone"""
        pending = self.pending()
        if not pending:
            return []
        if not wait:
            return self.cancel_all()

        logger.info(f"Waiting for {len(pending)} scheduled uncordon(s) to complete...")
        for task in pending:
            task.wait(timeout)
        return [task for task in pending if not task.done]
