"""Strategies that split message queues among the consumers of a group."""

from __future__ import annotations

import bisect
import logging
import zlib
from typing import Callable, Sequence

from .message import MessageQueue

logger = logging.getLogger(__name__)

AllocateStrategy = Callable[
    [str, str, Sequence[MessageQueue], Sequence[str]], list[MessageQueue]
]


def _hash(key: str) -> int:
    return zlib.crc32(key.encode("utf-8")) & 0xFFFFFFFF


class ConsistentHash:
    """A hash ring with a fixed number of virtual nodes per member."""

    def __init__(self, number_of_replicas: int = 20) -> None:
        self.number_of_replicas = number_of_replicas
        self._circle: dict[int, str] = {}
        self._sorted: list[int] = []
        self.members: set[str] = set()

    def add(self, member: str) -> None:
        """Place a member's virtual nodes on the ring."""
        for replica in range(self.number_of_replicas):
            self._circle[_hash(f"{replica}{member}")] = member
        self.members.add(member)
        self._sorted = sorted(self._circle)

    def get(self, key: str) -> str:
        """Return the member owning key; raise ValueError on an empty ring."""
        if not self._circle:
            raise ValueError("empty circle")
        index = bisect.bisect_right(self._sorted, _hash(key))
        if index >= len(self._sorted):
            index = 0
        return self._circle[self._sorted[index]]


def _consumer_index(
    consumer_group: str,
    current_cid: str,
    mq_all: Sequence[MessageQueue] | None,
    cid_all: Sequence[str] | None,
) -> int | None:
    """Position of the current consumer, or None when nothing can be allocated."""
    if not current_cid or not mq_all or not cid_all:
        return None
    try:
        return list(cid_all).index(current_cid)
    except ValueError:
        logger.warning(
            "[BUG] ConsumerId not in cidAll: group=%s consumerId=%s cidAll=%s",
            consumer_group,
            current_cid,
            list(cid_all),
        )
        return None


def allocate_by_averagely(consumer_group, current_cid, mq_all, cid_all):
    """Give each consumer a contiguous, near-equal block of queues."""
    index = _consumer_index(consumer_group, current_cid, mq_all, cid_all)
    if index is None:
        return []
    mq_size = len(mq_all)
    cid_size = len(cid_all)
    mod = mq_size % cid_size
    if mq_size <= cid_size:
        average = 1
    elif mod > 0 and index < mod:
        average = mq_size // cid_size + 1
    else:
        average = mq_size // cid_size
    if mod > 0 and index < mod:
        start = index * average
    else:
        start = index * average + mod
    count = min(average, mq_size - start)
    return [mq_all[(start + i) % mq_size] for i in range(max(count, 0))]


def allocate_by_averagely_circle(consumer_group, current_cid, mq_all, cid_all):
    """Deal queues out to consumers in turn."""
    index = _consumer_index(consumer_group, current_cid, mq_all, cid_all)
    if index is None:
        return []
    return list(mq_all[index :: len(cid_all)])


def allocate_by_machine_nearby(consumer_group, current_cid, mq_all, cid_all):
    """Nearby allocation; currently the same as the average strategy."""
    return allocate_by_averagely(consumer_group, current_cid, mq_all, cid_all)


def allocate_by_config(queues):
    """Return a strategy that always yields the given queues."""

    def strategy(consumer_group, current_cid, mq_all, cid_all):
        return queues

    return strategy


def allocate_by_machine_room(consumer_idcs):
    """Return a strategy restricted to brokers named '<idc>@<name>' in the given rooms."""
    rooms = list(consumer_idcs)

    def strategy(consumer_group, current_cid, mq_all, cid_all):
        index = _consumer_index(consumer_group, current_cid, mq_all, cid_all)
        if index is None:
            return []
        in_rooms = []
        for mq in mq_all:
            parts = mq.broker_name.split("@")
            if len(parts) == 2:
                in_rooms.extend(mq for idc in rooms if idc == parts[0])
        mod, rem = divmod(len(in_rooms), len(cid_all))
        start = mod * index
        result = list(mq_all[start : start + mod])
        if rem > index:
            result.append(in_rooms[index + mod * len(cid_all)])
        return result

    return strategy


def allocate_by_consistent_hash(virtual_node_cnt):
    """Return a strategy that places consumers on a hash ring."""

    def strategy(consumer_group, current_cid, mq_all, cid_all):
        if _consumer_index(consumer_group, current_cid, mq_all, cid_all) is None:
            return []
        ring = ConsistentHash(virtual_node_cnt)
        for cid in cid_all:
            ring.add(cid)
        result = []
        for mq in mq_all:
            try:
                owner = ring.get(str(mq))
            except ValueError as exc:
                logger.warning("[BUG] allocate by consistent hash: %s", exc)
                continue
            if owner == current_cid:
                result.append(mq)
        return result

    return strategy