# controller/event_dispatcher.py

"""
EventDispatcher: per-flow serialization of controller work.

Each submitted work item carries a shard key (normally a FlowKey). Items with
the same key always land on the same worker queue and run in arrival order;
items with different keys may run in parallel on different workers.

workers=0 runs every item inline in the caller (no queues, no workers).

Under ryu-manager the dispatcher is built with spawn=hub.spawn and
queue_factory=hub.Queue so workers are green threads; tests use the default
OS threads.
"""

from __future__ import annotations

import logging
import queue
import threading

_STOP = object()


def _spawn_thread(fn, *args):
    t = threading.Thread(target=fn, args=args, daemon=True)
    t.start()
    return t


class EventDispatcher:
    def __init__(self, workers: int = 4, *, spawn=None, queue_factory=queue.Queue, logger=None):
        assert workers >= 0, f"EventDispatcher: workers must be >= 0, got {workers}"
        self.workers = int(workers)
        self.logger = logger or logging.getLogger(__name__)
        self._spawn = spawn or _spawn_thread
        self._queues = [queue_factory() for _ in range(self.workers)]
        self._threads = []
        self.running = False

    def start(self):
        if self.running or self.workers == 0:
            self.running = True
            return
        self._threads = [self._spawn(self._run, q) for q in self._queues]
        self.running = True

    def stop(self):
        """Drain queued work, then stop the workers."""
        if not self.running:
            return
        self.running = False
        for q in self._queues:
            q.put(_STOP)
        for t in self._threads:
            wait = getattr(t, "join", None) or t.wait
            wait()
        self._threads = []

    def shard_of(self, shard_key) -> int:
        return hash(shard_key) % self.workers

    def submit(self, shard_key, fn, *args):
        if self.workers == 0:
            fn(*args)
            return
        self._queues[self.shard_of(shard_key)].put((fn, args))

    def _run(self, q):
        while True:
            item = q.get()
            if item is _STOP:
                return
            fn, args = item
            try:
                fn(*args)
            except Exception:
                # One bad event must not kill the worker serving its shard
                self.logger.exception("Dispatcher: unhandled error in %s", getattr(fn, "__name__", fn))
