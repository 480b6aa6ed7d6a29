from unittest.mock import patch

import pytest
import redis

from services.queue import QueueManager


@pytest.fixture
def queue():
    return QueueManager()


def test_enqueue_dequeue(queue):
    key = "test_queue"
    value = "test_value"
    queue.enqueue(key, value)
    assert queue.dequeue(key) == value
    assert queue.dequeue(key) is None


def test_queue_length(queue):
    key = "test_queue_len"
    queue.enqueue(key, "v1")
    queue.enqueue(key, "v2")
    assert queue.get_length(key) == 2
    queue.dequeue(key)
    assert queue.get_length(key) == 1
    queue.dequeue(key)
    assert queue.get_length(key) == 0


def test_json_round_trip_keeps_order(queue):
    key = "test_queue_json"
    queue.enqueue_json(key, {"handle_id": "h1", "attempt": 1})
    queue.enqueue_json(key, {"handle_id": "h2", "attempt": 2})

    assert queue.dequeue_json(key) == {"handle_id": "h1", "attempt": 1}
    assert queue.dequeue_json(key) == {"handle_id": "h2", "attempt": 2}
    assert queue.dequeue_json(key) is None


def test_enqueue_failure_raises_connection_error(queue):
    with patch.object(queue.redis, "rpush", side_effect=redis.ConnectionError("down")):
        with pytest.raises(ConnectionError, match="enqueue operation failed"):
            queue.enqueue("test_queue_down", "value")

    # The next call re-checks the connection
    assert queue._connection_checked is False
    queue.enqueue("test_queue_down", "value")
    assert queue.get_length("test_queue_down") == 1


def test_dequeue_failure_raises_connection_error(queue):
    with patch.object(queue.redis, "lpop", side_effect=redis.TimeoutError("slow")):
        with pytest.raises(ConnectionError, match="dequeue operation failed"):
            queue.dequeue("test_queue_down")
