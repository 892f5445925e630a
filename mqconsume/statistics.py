"""Rolling statistics on pull and consume activity, keyed by topic and group."""

from __future__ import annotations

import calendar
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable

logger = logging.getLogger(__name__)

_MINUTE_SAMPLES = 7
_HOUR_SAMPLES = 7
_DAY_SAMPLES = 25


@dataclass(frozen=True)
class CallSnapshot:
    """Counters of one stats item at one sampling instant."""

    timestamp: int
    times: int
    value: int


@dataclass(frozen=True)
class StatsSnapshot:
    """Aggregate over a window of samples."""

    sum: int = 0
    tps: float = 0.0
    avgpt: float = 0.0


@dataclass
class ConsumeStatus:
    """Pull and consume figures of one topic in one group."""

    pull_rt: float = 0.0
    pull_tps: float = 0.0
    consume_rt: float = 0.0
    consume_ok_tps: float = 0.0
    consume_failed_tps: float = 0.0
    consume_failed_msgs: int = 0


def compute_stats_data(snapshots: Iterable[CallSnapshot]) -> StatsSnapshot:
    """Summarise the difference between the first and the last sample."""
    samples = list(snapshots)
    if not samples:
        return StatsSnapshot()
    first, last = samples[0], samples[-1]
    total = last.value - first.value
    elapsed_ms = last.timestamp - first.timestamp
    tps = total * 1000.0 / elapsed_ms if elapsed_ms else 0.0
    times_diff = last.times - first.times
    avgpt = total / times_diff if times_diff > 0 else 0.0
    return StatsSnapshot(sum=total, tps=tps, avgpt=avgpt)


def next_minute_time() -> datetime:
    """The moment one minute from now."""
    return datetime.now() + timedelta(minutes=1)


def next_hour_time() -> datetime:
    """The moment one hour from now."""
    return datetime.now() + timedelta(hours=1)


def _next_month_time() -> datetime:
    """One calendar month from now; an overflowing day rolls into the next month."""
    now = datetime.now()
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    first = now.replace(year=year, month=month, day=1)
    return first + timedelta(days=now.day - 1)


class StatsItem:
    """Counters for one key, sampled into minute, hour and day windows."""

    def __init__(self, stats_name: str, stats_key: str) -> None:
        self.stats_name = stats_name
        self.stats_key = stats_key
        self.value = 0
        self.times = 0
        self._counter_lock = threading.Lock()
        self._window_lock = threading.Lock()
        self._minute: deque[CallSnapshot] = deque(maxlen=_MINUTE_SAMPLES)
        self._hour: deque[CallSnapshot] = deque(maxlen=_HOUR_SAMPLES)
        self._day: deque[CallSnapshot] = deque(maxlen=_DAY_SAMPLES)

    def add(self, inc_value: int, inc_times: int) -> None:
        with self._counter_lock:
            self.value += inc_value
            self.times += inc_times

    def _snapshot(self) -> CallSnapshot:
        with self._counter_lock:
            return CallSnapshot(
                timestamp=int(time.time()) * 1000, times=self.times, value=self.value
            )

    def _sample_into(self, window: deque[CallSnapshot]) -> None:
        snapshot = self._snapshot()
        with self._window_lock:
            window.append(snapshot)

    def _compute(self, window: deque[CallSnapshot]) -> StatsSnapshot:
        with self._window_lock:
            samples = list(window)
        return compute_stats_data(samples)

    def sampling_in_seconds(self) -> None:
        """Record a sample in the minute window."""
        self._sample_into(self._minute)

    def sampling_in_minutes(self) -> None:
        """Record a sample in the hour window."""
        self._sample_into(self._hour)

    def sampling_in_hour(self) -> None:
        """Record a sample in the day window."""
        self._sample_into(self._day)

    def stats_in_minute(self) -> StatsSnapshot:
        return self._compute(self._minute)

    def stats_in_hour(self) -> StatsSnapshot:
        return self._compute(self._hour)

    def stats_in_day(self) -> StatsSnapshot:
        return self._compute(self._day)

    def _log(self, title: str, snapshot: StatsSnapshot) -> None:
        logger.info(
            "%s statsName=%s statsKey=%s SUM=%d TPS=%.2f AVGPT=%s",
            title,
            self.stats_name,
            self.stats_key,
            snapshot.sum,
            snapshot.tps,
            snapshot.avgpt,
        )

    def _print_at_minutes(self) -> None:
        self._log("Stats In One Minute.", self.stats_in_minute())

    def _print_at_hour(self) -> None:
        self._log("Stats In One Hour.", self.stats_in_hour())

    def _print_at_day(self) -> None:
        self._log("Stats In One Day.", self.stats_in_day())


class StatsItemSet:
    """Stats items of one kind, sampled and logged by a background thread."""

    def __init__(self, stats_name: str, autostart: bool = True) -> None:
        self.stats_name = stats_name
        self._items: dict[str, StatsItem] = {}
        self._items_lock = threading.Lock()
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None
        if autostart:
            self._thread = threading.Thread(
                target=self._run, name=f"stats-{stats_name}", daemon=True
            )
            self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _run(self) -> None:
        start = time.monotonic()
        month_delay = (_next_month_time() - datetime.now()).total_seconds()
        tasks: list[list] = [
            [start + 10, 10, self.sampling_in_seconds],
            [start + 600, 600, self.sampling_in_minutes],
            [start + 3600, 3600, self.sampling_in_hour],
            [start + 60 + 60, 60, self._print_at_minutes],
            [start + 3600 + 3600, 3600, self._print_at_hour],
            [start + month_delay + 86400, 86400, self._print_at_day],
        ]
        while True:
            wait = max(0.0, min(task[0] for task in tasks) - time.monotonic())
            if self._closed.wait(wait):
                return
            now = time.monotonic()
            for task in tasks:
                if task[0] <= now:
                    task[0] += task[1]
                    self._safely(task[2])

    @staticmethod
    def _safely(action: Callable[[], None]) -> None:
        try:
            action()
        except Exception:
            logger.exception("stats task failed")

    def _each(self) -> list[StatsItem]:
        with self._items_lock:
            return list(self._items.values())

    def _item(self, key: str) -> StatsItem:
        with self._items_lock:
            item = self._items.get(key)
            if item is None:
                item = StatsItem(self.stats_name, key)
                self._items[key] = item
            return item

    def add_value(self, key: str, inc_value: int, inc_times: int) -> None:
        """Add to the counters of key, creating its item if needed."""
        self._item(key).add(inc_value, inc_times)

    def sampling_in_seconds(self) -> None:
        for item in self._each():
            item.sampling_in_seconds()

    def sampling_in_minutes(self) -> None:
        for item in self._each():
            item.sampling_in_minutes()

    def sampling_in_hour(self) -> None:
        for item in self._each():
            item.sampling_in_hour()

    def _print_at_minutes(self) -> None:
        for item in self._each():
            item._print_at_minutes()

    def _print_at_hour(self) -> None:
        for item in self._each():
            item._print_at_hour()

    def _print_at_day(self) -> None:
        for item in self._each():
            item._print_at_day()

    def _lookup(self, key: str) -> StatsItem | None:
        with self._items_lock:
            return self._items.get(key)

    def stats_in_minute(self, key: str) -> StatsSnapshot:
        item = self._lookup(key)
        return item.stats_in_minute() if item else StatsSnapshot()

    def stats_in_hour(self, key: str) -> StatsSnapshot:
        item = self._lookup(key)
        return item.stats_in_hour() if item else StatsSnapshot()

    def stats_in_day(self, key: str) -> StatsSnapshot:
        item = self._lookup(key)
        return item.stats_in_day() if item else StatsSnapshot()

    def close(self) -> None:
        """Stop the background thread."""
        self._closed.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=1.0)


def _key(group: str, topic: str) -> str:
    return f"{topic}@{group}"


class StatsManager:
    """Pull and consume statistics of a consumer."""

    def __init__(self, autostart: bool = True) -> None:
        self.consume_ok_tps = StatsItemSet("CONSUME_OK_TPS", autostart)
        self.consume_rt = StatsItemSet("CONSUME_RT", autostart)
        self.consume_failed_tps = StatsItemSet("CONSUME_FAILED_TPS", autostart)
        self.pull_tps = StatsItemSet("PULL_TPS", autostart)
        self.pull_rt = StatsItemSet("PULL_RT", autostart)
        self._shutdown_lock = threading.Lock()
        self._shut_down = False

    def increase_pull_rt(self, group: str, topic: str, rt: int) -> None:
        self.pull_rt.add_value(_key(group, topic), rt, 1)

    def increase_pull_tps(self, group: str, topic: str, msgs: int) -> None:
        self.pull_tps.add_value(_key(group, topic), msgs, 1)

    def increase_consume_rt(self, group: str, topic: str, rt: int) -> None:
        self.consume_rt.add_value(_key(group, topic), rt, 1)

    def increase_consume_ok_tps(self, group: str, topic: str, msgs: int) -> None:
        self.consume_ok_tps.add_value(_key(group, topic), msgs, 1)

    def increase_consume_failed_tps(self, group: str, topic: str, msgs: int) -> None:
        self.consume_failed_tps.add_value(_key(group, topic), msgs, 1)

    def get_pull_rt(self, group: str, topic: str) -> StatsSnapshot:
        return self.pull_rt.stats_in_minute(_key(group, topic))

    def get_pull_tps(self, group: str, topic: str) -> StatsSnapshot:
        return self.pull_tps.stats_in_minute(_key(group, topic))

    def get_consume_rt(self, group: str, topic: str) -> StatsSnapshot:
        """Minute pull RT, falling back to hourly consume RT when it is empty."""
        snapshot = self.pull_rt.stats_in_minute(_key(group, topic))
        if snapshot.sum == 0:
            return self.consume_rt.stats_in_hour(_key(group, topic))
        return snapshot

    def get_consume_ok_tps(self, group: str, topic: str) -> StatsSnapshot:
        return self.consume_ok_tps.stats_in_minute(_key(group, topic))

    def get_consume_failed_tps(self, group: str, topic: str) -> StatsSnapshot:
        return self.consume_failed_tps.stats_in_minute(_key(group, topic))

    def get_consume_status(self, group: str, topic: str) -> ConsumeStatus:
        return ConsumeStatus(
            pull_rt=self.get_pull_rt(group, topic).avgpt,
            pull_tps=self.get_pull_tps(group, topic).tps,
            consume_rt=self.get_consume_rt(group, topic).avgpt,
            consume_ok_tps=self.get_consume_ok_tps(group, topic).tps,
            consume_failed_tps=self.get_consume_failed_tps(group, topic).tps,
            consume_failed_msgs=self.consume_failed_tps.stats_in_hour(
                _key(group, topic)
            ).sum,
        )

    def shutdown(self) -> None:
        """Stop all background sampling; later calls do nothing."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True
        for item_set in (
            self.consume_ok_tps,
            self.consume_rt,
            self.consume_failed_tps,
            self.pull_tps,
            self.pull_rt,
        ):
            item_set.close()