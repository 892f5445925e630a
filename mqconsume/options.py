"""Settings of a push consumer and the enums they are built from."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Callable

from .strategy import AllocateStrategy, allocate_by_averagely

_MAX_INT32 = 2**31 - 1
_DEFAULT_MAX_RECONSUME_TIMES = 16
_MIN_SUSPEND_MILLIS = 10
_MAX_SUSPEND_MILLIS = 30000


class ConsumeFromWhere(enum.Enum):
    """Where a new consumer group starts reading a queue."""

    LAST_OFFSET = "CONSUME_FROM_LAST_OFFSET"
    FIRST_OFFSET = "CONSUME_FROM_FIRST_OFFSET"
    TIMESTAMP = "CONSUME_FROM_TIMESTAMP"


class MessageModel(enum.Enum):
    """Whether every consumer sees every message or the group shares them."""

    BROADCASTING = "BroadCasting"
    CLUSTERING = "Clustering"

    def __str__(self) -> str:
        return self.value


class ConsumeResult(enum.IntEnum):
    """What a consume callback reports for a batch of messages."""

    CONSUME_SUCCESS = 0
    CONSUME_RETRY_LATER = 1
    COMMIT = 2
    ROLLBACK = 3
    SUSPEND_CURRENT_QUEUE_A_MOMENT = 4


def _check_range(
    value: int, low: int, high: int, default: int, name: str
) -> int:
    """Return value, or default when it is zero; raise when out of range."""
    if low <= value <= high:
        return value
    if value == 0:
        return default
    raise ValueError(f"option.{name} out of range [{low}, {high}]")


@dataclass
class PushConsumerOptions:
    """Everything a push consumer can be configured with.

    Durations are in seconds. Numeric limits left at zero are filled in
    with their defaults by :meth:`validate`.
    """

    group_name: str = ""
    namespace: str = ""
    instance_name: str = "DEFAULT"
    name_server_addrs: list[str] = field(default_factory=list)
    consumer_model: MessageModel = MessageModel.CLUSTERING
    consume_orderly: bool = False
    from_where: ConsumeFromWhere = ConsumeFromWhere.LAST_OFFSET
    strategy: AllocateStrategy = allocate_by_averagely
    interceptors: list[Callable[..., Any]] = field(default_factory=list)
    limiter: Callable[[str], None] | None = None
    trace_dispatcher: Any = None

    consume_concurrently_max_span: int = 0
    pull_threshold_for_queue: int = 0
    pull_threshold_for_topic: int = 0
    pull_threshold_size_for_queue: int = 0
    pull_threshold_size_for_topic: int = 0
    pull_interval: float = 0.0
    consume_message_batch_max_size: int = 0
    pull_batch_size: int = 0
    consume_goroutine_nums: int = 0

    max_reconsume_times_option: int = -1
    suspend_current_queue_time: float = 1.0
    consume_timeout: float = 15 * 60.0
    rebalance_lock_interval: float = 20.0
    max_time_consume_continuously: float = 60.0
    auto_commit: bool = True
    post_subscription_when_pull: bool = False

    def validate(self) -> None:
        """Fill in zero limits with defaults; raise ValueError on bad values."""
        self.consume_concurrently_max_span = _check_range(
            self.consume_concurrently_max_span, 1, 65535, 1000,
            "ConsumeConcurrentlyMaxSpan",
        )
        self.pull_threshold_for_queue = _check_range(
            self.pull_threshold_for_queue, 1, 65535, 1024, "PullThresholdForQueue"
        )
        self.pull_threshold_for_topic = _check_range(
            self.pull_threshold_for_topic, 1, 6553500, 102400, "PullThresholdForTopic"
        )
        self.pull_threshold_size_for_queue = _check_range(
            self.pull_threshold_size_for_queue, 1, 1024, 512,
            "PullThresholdSizeForQueue",
        )
        self.pull_threshold_size_for_topic = _check_range(
            self.pull_threshold_size_for_topic, 1, 102400, 51200,
            "PullThresholdSizeForTopic",
        )
        if self.pull_interval < 0 or self.pull_interval * 1000 > 65535:
            raise ValueError("option.PullInterval out of range [0, 65535]")
        self.consume_message_batch_max_size = _check_range(
            self.consume_message_batch_max_size, 1, 1024, 1,
            "ConsumeMessageBatchMaxSize",
        )
        self.pull_batch_size = _check_range(
            self.pull_batch_size, 1, 1024, 32, "PullBatchSize"
        )
        self.consume_goroutine_nums = _check_range(
            self.consume_goroutine_nums, 1, 100000, 20, "ConsumeGoroutineNums"
        )

    def max_reconsume_times(self) -> int:
        """Retry limit for concurrent consumption; -1 means the default of 16."""
        if self.max_reconsume_times_option == -1:
            return _DEFAULT_MAX_RECONSUME_TIMES
        return self.max_reconsume_times_option

    def orderly_max_reconsume_times(self) -> int:
        """Retry limit for orderly consumption; -1 means unlimited."""
        if self.max_reconsume_times_option == -1:
            return _MAX_INT32
        return self.max_reconsume_times_option

    def suspend_delay_millis(self, suspend_time_millis: int) -> int:
        """Delay before resubmitting a queue, clamped to [10, 30000] ms.

        A value of -1 stands for the configured suspend time.
        """
        if suspend_time_millis == -1:
            suspend_time_millis = int(self.suspend_current_queue_time * 1000)
        return max(_MIN_SUSPEND_MILLIS, min(_MAX_SUSPEND_MILLIS, suspend_time_millis))