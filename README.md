# mqconsume

The core of a push-style consumer for a broker-based message queue.

- `mqconsume.strategy` holds the queue allocation strategies. A strategy decides which message
  queues one consumer of a group takes. There are averaged, averaged-circle, machine-nearby,
  machine-room, fixed-config and consistent-hash strategies. `ConsistentHash` is the hash
  ring used by the consistent-hash strategy.
- `mqconsume.statistics` keeps rolling pull and consume statistics per topic and group:
  throughput, response times and sums over minute, hour and day windows.
- `mqconsume.options` holds the consumer settings (`PushConsumerOptions`). It range-checks
  the flow-control limits and fills in defaults. It also defines the `ConsumeFromWhere`,
  `MessageModel` and `ConsumeResult` enums.
- `mqconsume.push_consumer` covers subscriptions, start and shutdown and suspend and resume. It
  restores the original topic of retried messages, runs callbacks through interceptors, and
  consumes a single message directly. It handles reconsume limits for orderly consumption.
- `mqconsume.message` defines `MessageQueue`, `MessageExt`, `FilterMessageContext` and
  `CheckTransactionStateCallback`.
- `mqconsume.errors` defines `ErrorKind` and the exception `MQClientError`.

## Install

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Allocating queues

Every strategy has the signature `(consumer_group, current_cid, mq_all, cid_all)` and returns a
list of `MessageQueue`.

```python
from mqconsume.message import MessageQueue
from mqconsume.strategy import allocate_by_averagely, allocate_by_consistent_hash

queues = [MessageQueue(topic="orders", broker_name="broker-a", queue_id=i) for i in range(6)]
consumers = ["10.0.0.1@default", "10.0.0.2@default"]

mine = allocate_by_averagely("group", "10.0.0.1@default", queues, consumers)
# -> queues 0, 1 and 2

strategy = allocate_by_consistent_hash(10)
mine = strategy("group", "10.0.0.2@default", queues, consumers)
```

Four functions return strategies instead of allocating directly:

- `allocate_by_config(queues)`
- `allocate_by_machine_room(consumer_idcs)`
- `allocate_by_consistent_hash(virtual_node_cnt)`
- `allocate_by_machine_nearby`, which allocates directly and gives the same result as
  `allocate_by_averagely`.

A strategy returns an empty list in two cases. The first is when the current consumer id is
empty or there are no queues or no consumers. The second is when the current consumer is not
in the consumer list, which is also logged as a warning.

## Statistics

```python
from mqconsume.statistics import StatsManager

stats = StatsManager()
stats.increase_pull_tps("group", "orders", 32)
status = stats.get_consume_status("group", "orders")
stats.shutdown()
```

Each `StatsItemSet` runs a daemon thread that samples its items and logs summaries. The
`shutdown()` method stops these threads. Pass `autostart=False` to sample by hand with
`sampling_in_seconds()`, `sampling_in_minutes()` and `sampling_in_hour()`.

## Options

```python
from mqconsume.options import PushConsumerOptions

options = PushConsumerOptions(group_name="orders-group", pull_batch_size=0)
options.validate()  # pull_batch_size becomes 32
```

A limit left at zero is replaced by its default. A limit out of range raises `ValueError`.

## Consuming

`PushConsumer` does not talk to brokers itself. It takes a client object that provides the
methods of the `ConsumerClient` protocol in `mqconsume.push_consumer`:

- `client_id`
- `start`
- `shutdown`
- `register_consumer`
- `unregister_consumer`
- `update_topic_route_info`
- `check_client_in_broker`
- `send_heartbeat_to_all_broker_with_lock`
- `rebalance_immediately`
- `find_broker_addr_by_name`
- `send_message_back`

A callback receives a `ConsumeContext` and the list of messages, and returns a `ConsumeResult`.

```python
from mqconsume.message import MessageExt
from mqconsume.options import ConsumeResult, PushConsumerOptions
from mqconsume.push_consumer import ConsumeContext, MessageSelector, PushConsumer

def handle(context: ConsumeContext, msgs: list[MessageExt]) -> ConsumeResult:
    for msg in msgs:
        print(msg.topic, msg.body)
    return ConsumeResult.CONSUME_SUCCESS

consumer = PushConsumer(client, PushConsumerOptions(group_name="orders-group"))
consumer.subscribe("orders", MessageSelector(), handle)
consumer.topic_subscribe_info["orders"] = []   # normally filled from route data
consumer.start()
...
consumer.shutdown()
```

`start()` first validates the group and the options. Every subscribed topic must then have an
entry in `topic_subscribe_info`. Otherwise the consumer shuts down and raises `MQClientError`
of kind `ErrorKind.TOPIC_NOT_EXIST`.

After a failed start or a shutdown, `subscribe()` raises `MQClientError` of kind
`ErrorKind.START_TOPIC`.

`consume_message_directly(msg, broker_name)` runs the callback once and returns a
`ConsumeDirectlyResult`. Its `consume_result` is one of:

- `CR_SUCCESS`
- `CR_LATER`
- `CR_THROW_EXCEPTION`

## Errors

Known failures raise `mqconsume.errors.MQClientError`, which carries an `ErrorKind`. Invalid
option values raise `ValueError`. `consume_inner` raises `ValueError` for an empty batch and
`LookupError` when no callback is registered for the topic.

## What this package does not do

There is no network client, so nothing here opens connections to name servers or brokers. The
package has no pull loop, no process queues and no offset storage, and it does not rebalance by
itself. All of these are left to the `ConsumerClient` that is passed in. The package provides
no command-line tool.