"""
Per-instance background timers. A single shared TimerThread executes every
scheduled event, and the TimerRegistry tracks the cancellation handle of each
event under a structured key so that all of an instance's timers can be
cancelled at once.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from heapq import heappop, heappush
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Set, Union
import threading

# First Party
import alog

log = alog.use_channel("TIMER")

# Minimum time the timer thread will sleep between wake ups
MIN_SLEEP_TIME = 0.001


@dataclass(order=True)
class TimerEvent:
    """Class for keeping track of an item in the timer queue. Time is the
    only comparable field to support the TimerThread's priority queue"""

    time: datetime
    action: Callable = field(compare=False)
    args: tuple = field(default_factory=tuple, compare=False)
    kwargs: dict = field(default_factory=dict, compare=False)
    stale: bool = field(default=False, compare=False)

    def cancel(self):
        """Cancel this event. It will not be executed when read from the
        queue"""
        self.stale = True


class TimerKey(NamedTuple):
    """Key for a single per-instance timer, e.g. (instance, "token/admin")"""

    instance_identity: str
    sub_identity: str


class TimerThread(threading.Thread):
    """The TimerThread runs scheduled actions. This is similar to the stdlib
    threading.Timer except that it uses one shared thread for all events
    instead of a thread per event."""

    def __init__(self, name: Optional[str] = None):
        super().__init__(name=name or "timer_thread", daemon=True)
        self.timer_heap: List[TimerEvent] = []
        self.notify_condition = threading.Condition()
        self.shutdown = threading.Event()

    def run(self):
        """Sleep until the next scheduled event and execute all pending
        actions"""
        while not self.should_stop():
            with self.notify_condition:
                time_to_sleep = self._get_time_to_sleep()
                if time_to_sleep:
                    log.debug4("Timer waiting %ss until next event", time_to_sleep)
                else:
                    log.debug4("Timer waiting until event queued")
                self.notify_condition.wait(timeout=time_to_sleep)

            if self.should_stop():
                return

            for event in self._get_all_current_events():
                log.debug2("Timer executing action for event: %s", event)
                try:
                    event.action(*event.args, **event.kwargs)
                except Exception as err:  # pylint: disable=broad-exception-caught
                    log.error(
                        "Timer action %s failed: %s", event.action, err, exc_info=True
                    )

    ## Public Interface ########################################################

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive():
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event and wake the control loop"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()
        with self.notify_condition:
            self.notify_condition.notify_all()

    def should_stop(self) -> bool:
        return self.shutdown.is_set()

    def put_event(
        self, time: datetime, action: Callable, *args: Any, **kwargs: Dict
    ) -> Optional[TimerEvent]:
        """Push an event to the timer

        Args:
            time:  datetime
                The datetime to execute the event at
            action:  Callable
                The action to execute
            *args:  Any
                Args to pass to the action
            **kwargs:  Dict
                Kwargs to pass to the action

        Returns:
            event:  Optional[TimerEvent]
                TimerEvent describing the event which can be cancelled, or None
                if the thread has been stopped
        """
        if self.should_stop():
            return None

        event = TimerEvent(time=time, action=action, args=args, kwargs=kwargs)
        with self.notify_condition:
            heappush(self.timer_heap, event)
            self.notify_condition.notify_all()
        return event

    ## Implementation Details ##################################################

    def _get_time_to_sleep(self) -> Optional[float]:
        with self.notify_condition:
            if self.timer_heap:
                next_time = self.timer_heap[0].time
                time_to_sleep = (next_time - datetime.now()).total_seconds()
                return max(time_to_sleep, MIN_SLEEP_TIME)
            return None

    def _get_all_current_events(self) -> List[TimerEvent]:
        event_list = []
        now = datetime.now()
        with self.notify_condition:
            while self.timer_heap and self.timer_heap[0].time <= now:
                event = heappop(self.timer_heap)
                if event.stale:
                    log.debug2("Skipping cancelled timer event %s", event)
                    continue
                event_list.append(event)
        return event_list


class TimerRegistry:
    """Tracks the scheduled timers of every instance. Retired instances
    accept no new timers until they are reinstated, so an action already
    running when an instance is torn down cannot schedule a new one.
    """

    def __init__(self, timer_thread: Optional[TimerThread] = None):
        self.timer_thread = timer_thread or TimerThread()
        self._timers: Dict[TimerKey, TimerEvent] = {}
        self._by_instance: Dict[str, Dict[str, TimerKey]] = {}
        self._retired: Set[str] = set()
        self._lock = threading.Lock()

    def start(self):
        self.timer_thread.start_thread()

    def stop(self):
        self.timer_thread.stop_thread()

    def schedule(
        self,
        key: TimerKey,
        when: Union[datetime, timedelta],
        action: Callable,
        *args,
        **kwargs,
    ) -> Optional[TimerEvent]:
        """Schedule an action, replacing any timer already held under the key

        Args:
            key:  TimerKey
                The structured key of the timer
            when:  Union[datetime, timedelta]
                Absolute time, or delay from now, at which to run the action
            action:  Callable
                The action to run on the timer thread

        Returns:
            event:  Optional[TimerEvent]
                The cancellation handle for the new timer
        """
        if isinstance(when, timedelta):
            when = datetime.now() + when

        def _fire(*fire_args, **fire_kwargs):
            with self._lock:
                if self._timers.get(key) is event_holder[0]:
                    self._forget(key)
            action(*fire_args, **fire_kwargs)

        event_holder = [None]
        with self._lock:
            if key.instance_identity in self._retired:
                log.debug("Instance of %s is retired, not scheduling", key)
                return None
            self._cancel(key)
            event = self.timer_thread.put_event(when, _fire, *args, **kwargs)
            if event is None:
                log.warning("Timer thread stopped, not scheduling %s", key)
                return None
            event_holder[0] = event
            self._timers[key] = event
            self._by_instance.setdefault(key.instance_identity, {})[
                key.sub_identity
            ] = key
        log.debug2("Scheduled timer %s at %s", key, when)
        return event

    def cancel(self, key: TimerKey) -> bool:
        """Cancel a single timer. Returns whether a timer was cancelled."""
        with self._lock:
            return self._cancel(key)

    def cancel_instance(self, instance_identity: str, retire: bool = False) -> int:
        """Cancel every timer of an instance

        Args:
            instance_identity:  str
                The identity of the instance whose timers are cancelled
            retire:  bool
                Also refuse any new timer for the instance until it is
                reinstated

        Returns:
            cancelled:  int
                The number of timers cancelled
        """
        with self._lock:
            if retire:
                self._retired.add(instance_identity)
            keys = list(self._by_instance.get(instance_identity, {}).values())
            for key in keys:
                self._cancel(key)
        if keys:
            log.debug("Cancelled %d timers for %s", len(keys), instance_identity)
        return len(keys)

    def reinstate(self, instance_identity: str):
        """Allow timers for a previously retired instance again"""
        with self._lock:
            if instance_identity in self._retired:
                log.debug2("Reinstating timers for %s", instance_identity)
                self._retired.discard(instance_identity)

    def is_retired(self, instance_identity: str) -> bool:
        with self._lock:
            return instance_identity in self._retired

    def get(self, key: TimerKey) -> Optional[TimerEvent]:
        with self._lock:
            return self._timers.get(key)

    def keys_for(self, instance_identity: str) -> List[TimerKey]:
        with self._lock:
            return sorted(self._by_instance.get(instance_identity, {}).values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)

    ## Implementation Details ##################################################

    def _cancel(self, key: TimerKey) -> bool:
        event = self._timers.get(key)
        if event is None:
            return False
        event.cancel()
        self._forget(key)
        return True

    def _forget(self, key: TimerKey):
        self._timers.pop(key, None)
        sub_keys = self._by_instance.get(key.instance_identity)
        if sub_keys is not None:
            sub_keys.pop(key.sub_identity, None)
            if not sub_keys:
                del self._by_instance[key.instance_identity]
