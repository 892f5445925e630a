"""Message, queue and hook context types shared by the consumer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

PROPERTY_RETRY_TOPIC = "RETRY_TOPIC"
PROPERTY_CONSUME_START_TIME = "CONSUME_START_TIME"


@dataclass(frozen=True)
class MessageQueue:
    """One queue of a topic on one broker."""

    topic: str = ""
    broker_name: str = ""
    queue_id: int = 0

    def __str__(self) -> str:
        return (
            f"MessageQueue [topic={self.topic}, brokerName={self.broker_name}, "
            f"queueId={self.queue_id}]"
        )


@dataclass
class MessageExt:
    """A message as delivered by a broker."""

    topic: str = ""
    body: bytes = b""
    properties: dict[str, str] = field(default_factory=dict)
    queue: MessageQueue = field(default_factory=MessageQueue)
    msg_id: str = ""
    transaction_id: str = ""
    queue_offset: int = 0
    commit_log_offset: int = 0
    reconsume_times: int = 0
    store_host: str = ""
    born_timestamp: int = 0

    def get_property(self, key: str) -> str:
        """Return a property value, or an empty string when absent."""
        return self.properties.get(key, "")

    def with_property(self, key: str, value: str) -> None:
        """Set a property value."""
        self.properties[key] = value


@dataclass
class FilterMessageContext:
    """What a filter hook sees about the messages it may drop."""

    consumer_group: str = ""
    msgs: list[MessageExt] = field(default_factory=list)
    mq: MessageQueue | None = None
    arg: Any = None
    unit_mode: bool = False


FilterMessageHook = Callable[[FilterMessageContext], list[MessageExt]]


@dataclass
class CheckTransactionStateCallback:
    """A broker's request to check the state of a transactional message."""

    addr: str
    msg: MessageExt
    header: Mapping[str, Any] = field(default_factory=dict)