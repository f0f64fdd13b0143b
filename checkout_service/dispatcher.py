"""
dispatcher.py — Side-Effect Dispatcher

Post-commit work (notifications, loyalty, coupon counter, invoice, shipment)
runs on a thread pool. Every task is wrapped so that an exception is logged
with its order context and then dropped; nothing a task does can reach the
checkout response.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import Callable, List, Optional, Set

from . import config

log = logging.getLogger(__name__)


class SideEffectDispatcher:
    def __init__(self, max_workers: int = config.SIDE_EFFECT_WORKERS):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="side-effect")
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self.failures: List[str] = []

    def dispatch(self, name: str, fn: Callable, *args, order_id: Optional[str] = None,
                 critical: bool = False, **kwargs) -> Future:
        """
        Schedules ``fn(*args, **kwargs)`` and returns immediately.

        Args:
            name (str): Task name used in logs.
            order_id (str): Order the task belongs to, for log context.
            critical (bool): Log a failure at CRITICAL instead of ERROR (money
                was taken but downstream state was not updated).
        """
        future = self._executor.submit(self._run, name, fn, args, kwargs, order_id, critical)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _run(self, name, fn, args, kwargs, order_id, critical):
        prefix = f"[Order: {order_id}]" if order_id else "[Side-effect]"
        try:
            fn(*args, **kwargs)
        except Exception as e:
            with self._lock:
                self.failures.append(name)
            level = logging.CRITICAL if critical else logging.ERROR
            log.log(level, f"{prefix} Task '{name}' failed: {e}", exc_info=True)
            return
        log.info(f"{prefix} Task '{name}' done.")

    def _forget(self, future: Future):
        with self._lock:
            self._pending.discard(future)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Blocks until every task dispatched so far has finished. Returns False on timeout."""
        with self._lock:
            pending = set(self._pending)
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True):
        self._executor.shutdown(wait=wait_for_tasks)
