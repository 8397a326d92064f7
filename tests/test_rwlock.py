"""
Tests for the reader/writer lock guarding the store.
"""

import threading
import time

import pytest

from recall.util.rwlock import ReadWriteLock


def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = threading.Barrier(3, timeout=5)

    def reader():
        with lock.read():
            # All three readers must be inside at the same time to pass
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    assert not inside.broken


def test_writer_excludes_readers():
    lock = ReadWriteLock()
    events = []

    lock.acquire_write()

    def reader():
        with lock.read():
            events.append("read")

    thread = threading.Thread(target=reader)
    thread.start()
    time.sleep(0.1)
    events.append("write done")
    lock.release_write()
    thread.join(timeout=5)

    assert events == ["write done", "read"]


def test_waiting_writer_blocks_new_readers():
    lock = ReadWriteLock()
    events = []
    lock.acquire_read()

    def writer():
        with lock.write():
            events.append("write")

    def late_reader():
        with lock.read():
            events.append("late read")

    writer_thread = threading.Thread(target=writer)
    writer_thread.start()
    time.sleep(0.1)

    reader_thread = threading.Thread(target=late_reader)
    reader_thread.start()
    time.sleep(0.1)

    # Neither may proceed while the first reader holds the lock
    assert events == []
    lock.release_read()

    writer_thread.join(timeout=5)
    reader_thread.join(timeout=5)
    assert events == ["write", "late read"]


def test_release_without_acquire_raises():
    lock = ReadWriteLock()
    with pytest.raises(RuntimeError):
        lock.release_read()
    with pytest.raises(RuntimeError):
        lock.release_write()


def test_exception_inside_write_releases_lock():
    lock = ReadWriteLock()
    with pytest.raises(ValueError):
        with lock.write():
            raise ValueError("boom")

    # Lock must be free again
    with lock.read():
        pass
    with lock.write():
        pass
