import json
import threading

from elr_receiver.retry_queue import RetryQueue


def test_fifo_order(queue):
    for payload in (b"one", b"two", b"three"):
        queue.enqueue(payload)

    assert queue.size() == 3
    assert [queue.dequeue_one() for _ in range(3)] == [b"one", b"two", b"three"]
    assert queue.dequeue_one() is None
    assert queue.is_empty()


def test_peek_does_not_remove(queue):
    queue.enqueue(b"head")
    queue.enqueue(b"tail")
    assert queue.peek() == b"head"
    assert len(queue) == 2


def test_empty_queue(queue):
    assert queue.peek() is None
    assert queue.dequeue_one() is None
    assert queue.size() == 0


def test_survives_restart(tmp_path):
    path = tmp_path / "queueELR"
    first = RetryQueue(path)
    first.enqueue(b"\x00binary\xffpayload")
    first.enqueue(b"second")
    first.dequeue_one()

    reopened = RetryQueue(path)
    assert reopened.size() == 1
    assert reopened.dequeue_one() == b"second"


def test_binary_payloads_round_trip(queue):
    payload = bytes(range(256))
    queue.enqueue(payload)
    assert queue.dequeue_one() == payload


def test_records_are_json_lines(queue):
    record = queue.enqueue(b"abc")
    (line,) = queue.path.read_text().splitlines()
    stored = json.loads(line)
    assert stored == record
    assert set(stored) == {"id", "enqueued_at", "data"}


def test_torn_trailing_line_is_skipped(queue):
    queue.enqueue(b"good")
    with queue.path.open("a") as f:
        f.write('{"id": "x", "data": "Zm9')

    assert queue.size() == 1
    assert queue.dequeue_one() == b"good"
    assert queue.dequeue_one() is None


def test_dequeue_drops_torn_line_on_rewrite(queue):
    queue.enqueue(b"a")
    with queue.path.open("a") as f:
        f.write("garbage\n")
    queue.enqueue(b"b")

    assert queue.dequeue_one() == b"a"
    assert "garbage" not in queue.path.read_text()
    assert queue.dequeue_one() == b"b"


def test_clear(queue):
    queue.enqueue(b"a")
    queue.enqueue(b"b")
    queue.clear()
    assert queue.is_empty()
    assert queue.path.exists()


def test_creates_parent_directory(tmp_path):
    queue = RetryQueue(tmp_path / "nested" / "dir" / "queueELR")
    queue.enqueue(b"x")
    assert queue.size() == 1


def test_concurrent_enqueue_and_dequeue(queue):
    for i in range(20):
        queue.enqueue(f"seed-{i}".encode())

    taken = []

    def producer(n):
        for i in range(25):
            queue.enqueue(f"{n}-{i}".encode())

    def consumer():
        for _ in range(20):
            taken.append(queue.dequeue_one())

    threads = [threading.Thread(target=producer, args=(n,)) for n in range(4)]
    threads.append(threading.Thread(target=consumer))
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert None not in taken
    assert queue.size() == 20 + 4 * 25 - 20


def test_enqueue_after_torn_line_starts_a_new_line(queue):
    queue.enqueue(b"first")
    with queue.path.open("a") as f:
        f.write('{"id": "torn", "da')

    queue.enqueue(b"second")

    assert queue.size() == 2
    assert queue.dequeue_one() == b"first"
    assert queue.dequeue_one() == b"second"
