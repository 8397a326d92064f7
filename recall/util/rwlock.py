"""
Reader/writer lock guarding the vector index and record table.
"""

import threading
from contextlib import contextmanager


class ReadWriteLock:
    """Many readers or one writer.

    A waiting writer blocks newly arriving readers, so writers are never
    starved. Readers that were already waiting when a writer releases are
    admitted before the next writer gets in, so readers are not starved
    either.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0
        # Readers admitted by the last writer release that have not entered yet
        self._reader_pass = 0
        self._readers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            self._readers_waiting += 1
            try:
                while self._writer or (self._writers_waiting and not self._reader_pass):
                    self._cond.wait()
            finally:
                self._readers_waiting -= 1
            if self._reader_pass:
                self._reader_pass -= 1
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read called without a matching acquire_read")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers or self._reader_pass:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write called without a matching acquire_write")
            self._writer = False
            self._reader_pass = self._readers_waiting
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()
