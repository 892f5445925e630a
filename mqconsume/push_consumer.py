"""A consumer that has messages delivered to registered callbacks."""

from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Protocol, Sequence

from .errors import ErrorKind, MQClientError
from .message import (
    PROPERTY_CONSUME_START_TIME,
    PROPERTY_RETRY_TOPIC,
    MessageExt,
    MessageQueue,
)
from .options import ConsumeResult, PushConsumerOptions
from .statistics import StatsManager

logger = logging.getLogger(__name__)

RETRY_GROUP_TOPIC_PREFIX = "%RETRY%"
PROP_CTX_TYPE = "ConsumeContextType"
SUCCESS_RETURN = "SUCCESS"
FAILED_RETURN = "FAILED"
EXCEPTION_RETURN = "EXCEPTION"
TIMEOUT_RETURN = "TIMEOUT"
CONSUMER_PUSH = "ConsumerPush"

CR_SUCCESS = "CR_SUCCESS"
CR_LATER = "CR_LATER"
CR_THROW_EXCEPTION = "CR_THROW_EXCEPTION"

_DEFAULT_CONSUMER_GROUP = "DEFAULT_CONSUMER"
_SEND_BACK_TIMEOUT = 3.0
_RECONSUME_TIME_PROPERTY = "RECONSUME_TIME"


class ConsumerState(enum.Enum):
    """Lifecycle of a consumer."""

    CREATE_JUST = "CreateJust"
    RUNNING = "Running"
    START_FAILED = "StartFailed"
    SHUTDOWN = "Shutdown"


@dataclass(frozen=True)
class MessageSelector:
    """How messages of a subscribed topic are filtered."""

    type: str = ""
    expression: str = ""


@dataclass
class ConsumeContext:
    """What a consume callback and its interceptors know about a delivery."""

    consumer_group: str = ""
    mq: MessageQueue | None = None
    msgs: list[MessageExt] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)
    method: str = CONSUMER_PUSH
    success: bool = False
    orderly: bool = False
    delay_level_when_next_consume: int = 0
    suspend_current_queue_time_millis: int = -1


@dataclass
class ConsumeDirectlyResult:
    """Outcome of consuming one message on a broker's direct request."""

    order: bool = False
    auto_commit: bool = True
    consume_result: str = ""
    remark: str = ""
    spent_time_millis: int = 0


@dataclass
class _ResultHolder:
    consume_result: ConsumeResult = ConsumeResult.CONSUME_SUCCESS


ConsumeCallback = Callable[[ConsumeContext, list[MessageExt]], ConsumeResult]
_Handler = Callable[[ConsumeContext, list[MessageExt], _ResultHolder], None]


class ConsumerClient(Protocol):
    """The broker-facing client a push consumer runs on."""

    def client_id(self) -> str: ...

    def start(self) -> None: ...

    def shutdown(self) -> None: ...

    def register_consumer(self, group: str, consumer: Any) -> None: ...

    def unregister_consumer(self, group: str) -> None: ...

    def update_topic_route_info(self) -> None: ...

    def check_client_in_broker(self) -> None: ...

    def send_heartbeat_to_all_broker_with_lock(self) -> None: ...

    def rebalance_immediately(self) -> None: ...

    def find_broker_addr_by_name(self, broker_name: str) -> str: ...

    def send_message_back(
        self, broker_addr: str, header: dict[str, Any], timeout: float
    ) -> None: ...


def split_batches(
    msgs: Sequence[MessageExt], batch_size: int
) -> Iterator[list[MessageExt]]:
    """Yield consecutive batches of at most batch_size messages."""
    if batch_size < 1:
        raise ValueError("batch size must be positive")
    for start in range(0, len(msgs), batch_size):
        yield list(msgs[start : start + batch_size])


def _bind(interceptor: Callable[..., None], nxt: _Handler) -> _Handler:
    def handler(ctx: ConsumeContext, req: list[MessageExt], reply: _ResultHolder) -> None:
        interceptor(ctx, req, reply, nxt)

    return handler


class PushConsumer:
    """Feeds pulled messages of subscribed topics to their callbacks."""

    def __init__(
        self,
        client: ConsumerClient,
        options: PushConsumerOptions | None = None,
        stats: StatsManager | None = None,
    ) -> None:
        self.options = options if options is not None else PushConsumerOptions()
        self._client = client
        self.stats = stats if stats is not None else StatsManager()
        group = self.options.group_name
        if self.options.namespace:
            group = f"{self.options.namespace}%{group}"
        self.consumer_group = group
        self.state = ConsumerState.CREATE_JUST
        self.paused = False
        self.client_id = ""
        self.consumer_start_timestamp = 0
        self.topic_subscribe_info: dict[str, list[MessageQueue]] = {}
        self._subscriptions: dict[str, MessageSelector] = {}
        self._subscribed_topics: dict[str, None] = {}
        self._callbacks: dict[str, ConsumeCallback] = {}
        self._interceptors = list(self.options.interceptors)
        self._lock = threading.Lock()
        self._start_attempted = False
        self._closed = False
        self._done = threading.Event()
        self._rebalance_thread: threading.Thread | None = None

    def _with_namespace(self, topic: str) -> str:
        if self.options.namespace:
            return f"{self.options.namespace}%{topic}"
        return topic

    def subscribe(
        self, topic: str, selector: MessageSelector, callback: ConsumeCallback
    ) -> None:
        """Register a callback for topic; refused after a failed start or shutdown."""
        if self.state in (ConsumerState.START_FAILED, ConsumerState.SHUTDOWN):
            raise MQClientError(ErrorKind.START_TOPIC)
        topic = self._with_namespace(topic)
        self._subscriptions[topic] = selector
        self._subscribed_topics[topic] = None
        self._callbacks[topic] = callback

    def unsubscribe(self, topic: str) -> None:
        """Drop the subscription data of topic."""
        self._subscriptions.pop(self._with_namespace(topic), None)

    def is_subscribed(self, topic: str) -> bool:
        return self._with_namespace(topic) in self._subscriptions

    def _validate(self) -> None:
        if not self.consumer_group:
            raise MQClientError(ErrorKind.EMPTY_GROUP_ID)
        if self.consumer_group == _DEFAULT_CONSUMER_GROUP:
            raise ValueError(
                f"consumerGroup can't equal [{_DEFAULT_CONSUMER_GROUP}], "
                "please specify another one"
            )
        if not self._subscribed_topics:
            logger.warning("not subscribe any topic yet: group=%s", self.consumer_group)
        try:
            self.options.validate()
        except ValueError as exc:
            raise ValueError(f"the consumer group option validate fail: {exc}") from exc

    def _initial_start(self) -> None:
        logger.info(
            "the consumer start beginning: group=%s model=%s",
            self.consumer_group,
            self.options.consumer_model,
        )
        self.state = ConsumerState.START_FAILED
        self._validate()
        try:
            self._client.register_consumer(self.consumer_group, self)
        except Exception as exc:
            logger.error(
                "the consumer group has been created, specify another one: %s",
                self.consumer_group,
            )
            raise MQClientError(ErrorKind.CREATED) from exc
        self.client_id = self._client.client_id()
        self._client.start()
        self.state = ConsumerState.RUNNING
        self.consumer_start_timestamp = int(time.time() * 1000)

    def start(self) -> None:
        """Start the consumer; raise if it cannot run or a topic has no route."""
        with self._lock:
            first = not self._start_attempted
            self._start_attempted = True
        if first:
            self._initial_start()

        self._client.update_topic_route_info()
        for topic in list(self._subscribed_topics):
            if topic not in self.topic_subscribe_info:
                self.shutdown()
                raise MQClientError(
                    ErrorKind.TOPIC_NOT_EXIST,
                    f"the topic={topic} route info not found, it may not exist",
                )
        self._client.check_client_in_broker()
        self._client.send_heartbeat_to_all_broker_with_lock()
        self._rebalance_thread = threading.Thread(
            target=self._client.rebalance_immediately,
            name=f"rebalance-{self.consumer_group}",
            daemon=True,
        )
        self._rebalance_thread.start()

    def shutdown(self) -> None:
        """Stop the consumer; later calls do nothing."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        if self.options.trace_dispatcher is not None:
            self.options.trace_dispatcher.close()
        self._done.set()
        self._client.unregister_consumer(self.consumer_group)
        self._client.shutdown()
        self.stats.shutdown()
        self.state = ConsumerState.SHUTDOWN

    def suspend(self) -> None:
        """Pause pulling."""
        self.paused = True
        logger.info("suspend consumer: %s", self.consumer_group)

    def resume(self) -> None:
        """Resume pulling and rebalance."""
        self.paused = False
        self._client.rebalance_immediately()
        logger.info("resume consumer: %s", self.consumer_group)

    def where(self) -> str:
        return self.options.from_where.value

    def reset_retry_and_namespace(self, msgs: Sequence[MessageExt]) -> None:
        """Restore the original topic of retried messages and stamp the start time."""
        group_topic = RETRY_GROUP_TOPIC_PREFIX + self.consumer_group
        begin = str(time.time_ns() // 1_000_000)
        for msg in msgs:
            retry_topic = msg.get_property(PROPERTY_RETRY_TOPIC)
            if retry_topic and msg.topic == group_topic:
                msg.topic = retry_topic
            msg.with_property(PROPERTY_CONSUME_START_TIME, begin)

    def _chain(self, final: _Handler) -> _Handler:
        handler = final
        for interceptor in reversed(self._interceptors):
            handler = _bind(interceptor, handler)
        return handler

    def consume_inner(
        self, context: ConsumeContext, msgs: Sequence[MessageExt]
    ) -> ConsumeResult:
        """Run the callback of the messages' topic through the interceptors."""
        if not msgs:
            raise ValueError("msg list empty")
        topic = msgs[0].topic
        callback = self._callbacks.get(topic)
        if callback is None and topic.startswith(RETRY_GROUP_TOPIC_PREFIX):
            callback = self._callbacks.get(msgs[0].get_property(PROPERTY_RETRY_TOPIC))
        if callback is None:
            raise LookupError(f"the consume callback missing for topic: {topic}")
        if not self._interceptors:
            return callback(context, list(msgs))

        def final(ctx: ConsumeContext, req: list[MessageExt], reply: _ResultHolder) -> None:
            reply.consume_result = callback(ctx, req)
            ctx.success = reply.consume_result == ConsumeResult.CONSUME_SUCCESS
            ctx.properties[PROP_CTX_TYPE] = SUCCESS_RETURN if ctx.success else FAILED_RETURN

        holder = _ResultHolder()
        self._chain(final)(context, list(msgs), holder)
        return holder.consume_result

    def consume_message_directly(
        self, msg: MessageExt, broker_name: str
    ) -> ConsumeDirectlyResult:
        """Consume one message now and report how it went."""
        mq = MessageQueue(
            topic=msg.topic, broker_name=broker_name, queue_id=msg.queue.queue_id
        )
        msgs = [msg]
        begin = time.monotonic()
        self.reset_retry_and_namespace(msgs)
        context = ConsumeContext(consumer_group=self.consumer_group, mq=mq, msgs=msgs)
        outcome = ConsumeDirectlyResult(order=False, auto_commit=True)
        try:
            result = self.consume_inner(context, msgs)
        except Exception as exc:
            context.properties[PROP_CTX_TYPE] = EXCEPTION_RETURN
            outcome.consume_result = CR_THROW_EXCEPTION
            outcome.remark = str(exc)
        else:
            if result == ConsumeResult.CONSUME_SUCCESS:
                context.properties[PROP_CTX_TYPE] = SUCCESS_RETURN
                outcome.consume_result = CR_SUCCESS
            elif result == ConsumeResult.CONSUME_RETRY_LATER:
                context.properties[PROP_CTX_TYPE] = FAILED_RETURN
                outcome.consume_result = CR_LATER
        spent = int((time.monotonic() - begin) * 1000)
        outcome.spent_time_millis = spent
        self.stats.increase_consume_rt(self.consumer_group, mq.topic, spent)
        return outcome

    def _send_message_back(
        self, broker_name: str, msg: MessageExt, delay_level: int
    ) -> bool:
        if broker_name:
            addr = self._client.find_broker_addr_by_name(broker_name)
        else:
            addr = msg.store_host
        header = {
            "group": self.consumer_group,
            "originTopic": msg.topic,
            "offset": msg.commit_log_offset,
            "delayLevel": delay_level,
            "originMsgId": msg.msg_id,
            "maxReconsumeTimes": self.options.max_reconsume_times(),
        }
        try:
            self._client.send_message_back(addr, header, _SEND_BACK_TIMEOUT)
        except Exception as exc:
            logger.warning("send message back to %s failed: %s", addr, exc)
            return False
        return True

    def check_reconsume_times(self, msgs: Sequence[MessageExt]) -> bool:
        """Send over-retried messages back; return whether the queue should pause."""
        suspend = False
        limit = self.options.orderly_max_reconsume_times()
        for msg in msgs:
            if msg.reconsume_times > limit:
                logger.warning(
                    "msg will be send to retry topic due to ReconsumeTimes > %d", limit
                )
                msg.with_property(_RECONSUME_TIME_PROPERTY, str(msg.reconsume_times))
                if not self._send_message_back("", msg, -1):
                    suspend = True
                    msg.reconsume_times += 1
            else:
                suspend = True
                msg.reconsume_times += 1
        return suspend