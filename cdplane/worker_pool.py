"""
The ReconcileWorkerPool runs reconciliation passes on a bounded pool of worker
threads. Each instance key has at most one pass in flight. Requests for a key
that is already running are collapsed into a single pending request which runs
as soon as the current pass ends.
"""

# Standard
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set
import threading
import time

# First Party
import alog

# Local
from . import config
from .controller import ReconciliationResult
from .timers import TimerEvent, TimerThread

log = alog.use_channel("WRKPL")


class ReconcileWorkerPool:
    """Bounded pool of reconcile workers serialized per instance key"""

    def __init__(
        self,
        reconcile: Callable[[str], ReconciliationResult],
        max_workers: Optional[int] = None,
        timer_thread: Optional[TimerThread] = None,
    ):
        """
        Args:
            reconcile:  Callable[[str], ReconciliationResult]
                The function running one pass for an instance key
            max_workers:  Optional[int]
                Size of the pool, config.max_workers if not given
            timer_thread:  Optional[TimerThread]
                The timer thread used for delayed requeues
        """
        self.reconcile = reconcile
        self.max_workers = max_workers or config.max_workers
        self.executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="reconcile"
        )
        self.timer_thread = timer_thread or TimerThread(name="requeue_timer")
        self.in_flight: Set[str] = set()
        self.pending: Set[str] = set()
        self.requeues: Dict[str, TimerEvent] = {}
        self._lock = threading.Condition()
        self._stopped = False

    ## Public Interface ########################################################

    def start(self):
        self.timer_thread.start_thread()

    def stop(self, wait: bool = True):
        """Stop accepting requests and optionally wait for running passes"""
        log.info("Stopping reconcile worker pool")
        with self._lock:
            self._stopped = True
            for event in self.requeues.values():
                event.cancel()
            self.requeues.clear()
            self.pending.clear()
        self.timer_thread.stop_thread()
        self.executor.shutdown(wait=wait)

    def submit(self, instance_key: str) -> bool:
        """Request a pass for an instance key

        Returns:
            started:  bool
                True if a pass was started, False if it was queued behind a
                running pass or the pool is stopped
        """
        with self._lock:
            if self._stopped:
                log.debug("Pool stopped, dropping request for %s", instance_key)
                return False
            requeue = self.requeues.pop(instance_key, None)
            if requeue is not None:
                requeue.cancel()
            if instance_key in self.in_flight:
                log.debug2("%s already running, marking pending", instance_key)
                self.pending.add(instance_key)
                return False
            log.debug2("Starting pass for %s", instance_key)
            self._start(instance_key)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no pass is running or pending. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self.in_flight or self.pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._lock.wait(timeout=remaining)
        return True

    ## Implementation Details ##################################################

    def _run(self, instance_key: str):
        result = None
        try:
            result = self.reconcile(instance_key)
        except Exception as err:  # pylint: disable=broad-exception-caught
            log.error(
                "Unhandled error reconciling %s: %s", instance_key, err, exc_info=True
            )
            result = ReconciliationResult(config.requeue_after_seconds, err)
        finally:
            self._finish(instance_key, result)

    def _finish(self, instance_key: str, result: Optional[ReconciliationResult]):
        with self._lock:
            self.in_flight.discard(instance_key)
            if self._stopped:
                self.pending.discard(instance_key)
            elif instance_key in self.pending:
                self.pending.discard(instance_key)
                log.debug2("Running pending pass for %s", instance_key)
                self._start(instance_key)
            elif result is not None and result.requeue:
                log.debug(
                    "Requeueing %s in %ss", instance_key, result.requeue_after
                )
                event = self.timer_thread.put_event(
                    datetime.now() + timedelta(seconds=result.requeue_after),
                    self.submit,
                    instance_key,
                )
                if event is not None:
                    self.requeues[instance_key] = event
            self._lock.notify_all()

    def _start(self, instance_key: str):
        """Mark a key in flight and hand it to the executor. The caller holds
        the lock and has checked that the pool is not stopped.
        """
        self.in_flight.add(instance_key)
        self.executor.submit(self._run, instance_key)
