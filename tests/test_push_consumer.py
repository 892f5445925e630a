import threading

import pytest

from mqconsume.errors import ErrorKind, MQClientError
from mqconsume.message import (
    PROPERTY_CONSUME_START_TIME,
    PROPERTY_RETRY_TOPIC,
    MessageExt,
    MessageQueue,
)
from mqconsume.options import (
    ConsumeFromWhere,
    ConsumeResult,
    MessageModel,
    PushConsumerOptions,
)
from mqconsume.push_consumer import (
    CR_LATER,
    CR_SUCCESS,
    CR_THROW_EXCEPTION,
    PROP_CTX_TYPE,
    SUCCESS_RETURN,
    ConsumeContext,
    ConsumerState,
    MessageSelector,
    PushConsumer,
    split_batches,
)
from mqconsume.statistics import StatsManager


class FakeClient:
    def __init__(self, register_error=None, send_back_ok=True):
        self.calls = []
        self.register_error = register_error
        self.send_back_ok = send_back_ok
        self.sent_back = []
        self.rebalanced = threading.Event()

    def client_id(self):
        self.calls.append("client_id")
        return "127.0.0.1@DEFAULT"

    def start(self):
        self.calls.append("start")

    def shutdown(self):
        self.calls.append("shutdown")

    def register_consumer(self, group, consumer):
        self.calls.append("register_consumer")
        if self.register_error is not None:
            raise self.register_error

    def unregister_consumer(self, group):
        self.calls.append("unregister_consumer")

    def update_topic_route_info(self):
        self.calls.append("update_topic_route_info")

    def check_client_in_broker(self):
        self.calls.append("check_client_in_broker")

    def send_heartbeat_to_all_broker_with_lock(self):
        self.calls.append("heartbeat")

    def rebalance_immediately(self):
        self.calls.append("rebalance")
        self.rebalanced.set()

    def find_broker_addr_by_name(self, broker_name):
        return f"addr-of-{broker_name}"

    def send_message_back(self, broker_addr, header, timeout):
        self.sent_back.append((broker_addr, header))
        if not self.send_back_ok:
            raise ConnectionError("broker unreachable")


def make_consumer(client=None, **opts):
    opts.setdefault("group_name", "testGroup")
    opts.setdefault("name_server_addrs", ["127.0.0.1:9876"])
    opts.setdefault("consumer_model", MessageModel.BROADCASTING)
    return PushConsumer(
        client if client is not None else FakeClient(),
        PushConsumerOptions(**opts),
        stats=StatsManager(autostart=False),
    )


def ok_callback(ctx, msgs):
    return ConsumeResult.CONSUME_SUCCESS


def test_subscribe_unsubscribe_resubscribe():
    consumer = make_consumer()
    consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    assert consumer.is_subscribed("TopicTest")
    consumer.unsubscribe("TopicTest")
    assert not consumer.is_subscribed("TopicTest")
    consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    assert consumer.is_subscribed("TopicTest")


def test_start_fails_when_route_info_not_found():
    client = FakeClient()
    consumer = make_consumer(client)
    consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    with pytest.raises(MQClientError) as info:
        consumer.start()
    assert "route info not found" in str(info.value)
    assert "shutdown" in client.calls
    assert "unregister_consumer" in client.calls
    assert consumer.state is ConsumerState.SHUTDOWN


def test_start_succeeds_when_route_info_found():
    client = FakeClient()
    consumer = make_consumer(client)
    consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    consumer.topic_subscribe_info["TopicTest"] = []
    consumer.start()
    assert client.rebalanced.wait(2.0)
    assert consumer.state is ConsumerState.RUNNING
    assert consumer.client_id == "127.0.0.1@DEFAULT"
    for call in ("register_consumer", "start", "check_client_in_broker", "heartbeat"):
        assert call in client.calls
    consumer.shutdown()


def test_start_with_taken_group_raises_created():
    consumer = make_consumer(FakeClient(register_error=RuntimeError("taken")))
    with pytest.raises(MQClientError) as info:
        consumer.start()
    assert info.value.kind is ErrorKind.CREATED
    assert consumer.state is ConsumerState.START_FAILED


def test_start_rejects_default_group():
    consumer = make_consumer(group_name="DEFAULT_CONSUMER")
    with pytest.raises(ValueError, match="DEFAULT_CONSUMER"):
        consumer.start()


def test_start_rejects_bad_option():
    consumer = make_consumer(pull_batch_size=5000)
    with pytest.raises(ValueError, match="PullBatchSize"):
        consumer.start()


def test_subscribe_after_failed_start_is_refused():
    consumer = make_consumer(pull_batch_size=5000)
    with pytest.raises(ValueError):
        consumer.start()
    with pytest.raises(MQClientError) as info:
        consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    assert info.value.kind is ErrorKind.START_TOPIC


def test_namespace_prefixes_group_and_topic():
    consumer = make_consumer(namespace="ns")
    assert consumer.consumer_group == "ns%testGroup"
    consumer.subscribe("TopicTest", MessageSelector(), ok_callback)
    msgs = [MessageExt(topic="ns%TopicTest")]
    assert consumer.consume_inner(ConsumeContext(), msgs) is ConsumeResult.CONSUME_SUCCESS


def test_shutdown_is_idempotent():
    client = FakeClient()
    consumer = make_consumer(client)
    consumer.shutdown()
    consumer.shutdown()
    assert client.calls.count("shutdown") == 1


def test_where_reports_start_point():
    assert make_consumer().where() == "CONSUME_FROM_LAST_OFFSET"
    consumer = make_consumer(from_where=ConsumeFromWhere.TIMESTAMP)
    assert consumer.where() == "CONSUME_FROM_TIMESTAMP"


def test_suspend_and_resume():
    client = FakeClient()
    consumer = make_consumer(client)
    consumer.suspend()
    assert consumer.paused is True
    consumer.resume()
    assert consumer.paused is False
    assert "rebalance" in client.calls


def test_reset_retry_and_namespace_restores_topic():
    consumer = make_consumer()
    retried = MessageExt(topic="%RETRY%testGroup", properties={PROPERTY_RETRY_TOPIC: "orig"})
    other = MessageExt(topic="plain", properties={PROPERTY_RETRY_TOPIC: "orig"})
    consumer.reset_retry_and_namespace([retried, other])
    assert retried.topic == "orig"
    assert other.topic == "plain"
    assert retried.get_property(PROPERTY_CONSUME_START_TIME).isdigit()


def test_consume_inner_empty_and_missing():
    consumer = make_consumer()
    with pytest.raises(ValueError, match="msg list empty"):
        consumer.consume_inner(ConsumeContext(), [])
    with pytest.raises(LookupError, match="nowhere"):
        consumer.consume_inner(ConsumeContext(), [MessageExt(topic="nowhere")])


def test_consume_inner_falls_back_to_retry_topic():
    consumer = make_consumer()
    consumer.subscribe("TopicTest", MessageSelector(), lambda c, m: ConsumeResult.CONSUME_RETRY_LATER)
    msg = MessageExt(topic="%RETRY%other", properties={PROPERTY_RETRY_TOPIC: "TopicTest"})
    assert consumer.consume_inner(ConsumeContext(), [msg]) is ConsumeResult.CONSUME_RETRY_LATER


def test_interceptors_run_in_order_around_callback():
    order = []

    def make(name):
        def interceptor(ctx, msgs, reply, nxt):
            order.append(f"{name}-before")
            nxt(ctx, msgs, reply)
            order.append(f"{name}-after")

        return interceptor

    consumer = make_consumer(interceptors=[make("first"), make("second")])

    def callback(ctx, msgs):
        order.append("callback")
        return ConsumeResult.CONSUME_SUCCESS

    consumer.subscribe("TopicTest", MessageSelector(), callback)
    ctx = ConsumeContext()
    result = consumer.consume_inner(ctx, [MessageExt(topic="TopicTest")])
    assert result is ConsumeResult.CONSUME_SUCCESS
    assert order == ["first-before", "second-before", "callback", "second-after", "first-after"]
    assert ctx.success is True
    assert ctx.properties[PROP_CTX_TYPE] == SUCCESS_RETURN


def test_consume_message_directly_outcomes():
    consumer = make_consumer()
    consumer.subscribe("ok", MessageSelector(), ok_callback)
    consumer.subscribe("later", MessageSelector(), lambda c, m: ConsumeResult.CONSUME_RETRY_LATER)

    def boom(ctx, msgs):
        raise RuntimeError("boom")

    consumer.subscribe("bad", MessageSelector(), boom)
    queue = MessageQueue(queue_id=3)
    ok = consumer.consume_message_directly(MessageExt(topic="ok", queue=queue), "b")
    assert ok.consume_result == CR_SUCCESS
    assert ok.order is False and ok.auto_commit is True
    later = consumer.consume_message_directly(MessageExt(topic="later"), "b")
    assert later.consume_result == CR_LATER
    bad = consumer.consume_message_directly(MessageExt(topic="bad"), "b")
    assert bad.consume_result == CR_THROW_EXCEPTION
    assert bad.remark == "boom"


def test_check_reconsume_times_sends_back_over_limit():
    client = FakeClient()
    consumer = make_consumer(client, max_reconsume_times_option=2)
    over = MessageExt(topic="t", reconsume_times=3, store_host="10.0.0.1:10911")
    assert consumer.check_reconsume_times([over]) is False
    assert over.get_property("RECONSUME_TIME") == "3"
    assert client.sent_back[0][0] == "10.0.0.1:10911"
    assert client.sent_back[0][1]["delayLevel"] == -1
    assert over.reconsume_times == 3


def test_check_reconsume_times_suspends_under_limit_or_on_failure():
    consumer = make_consumer(FakeClient(send_back_ok=False), max_reconsume_times_option=2)
    under = MessageExt(topic="t", reconsume_times=1)
    assert consumer.check_reconsume_times([under]) is True
    assert under.reconsume_times == 2
    over = MessageExt(topic="t", reconsume_times=5)
    assert consumer.check_reconsume_times([over]) is True
    assert over.reconsume_times == 6
    assert consumer.check_reconsume_times([]) is False


def test_split_batches():
    msgs = [MessageExt(queue_offset=i) for i in range(5)]
    batches = list(split_batches(msgs, 2))
    assert [[m.queue_offset for m in b] for b in batches] == [[0, 1], [2, 3], [4]]
    assert list(split_batches([], 3)) == []
    with pytest.raises(ValueError):
        list(split_batches(msgs, 0))