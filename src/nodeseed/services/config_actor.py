"""Single-owner configuration actor.

The actor owns the live :class:`~nodeseed.config.Configuration`. Other
threads never touch it directly: they submit mutation callables with
:meth:`ConfigActor.modify` and block on the returned :class:`Waiter`.
Mutations run one at a time on the actor thread, in submission order, each
against a deep copy that replaces the live configuration only if the
mutation and validation both succeed.

Applying a mutation does not write anything to disk. Callers that need the
change to be durable wait for it and then call :meth:`ConfigActor.save`::

    cancel = threading.Event()
    actor = ConfigActor(path, cfg)
    actor.start(cancel)
    try:
        actor.modify(lambda c: setattr(c.gui, "user", "admin")).wait()
        actor.save()
    finally:
        cancel.set()
"""

from __future__ import annotations

import copy
import logging
import queue
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from ..config import Configuration, validate, write_config
from ..errors import ActorStoppedError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1

Mutation = Callable[[Configuration], object]
Subscriber = Callable[[Configuration, Configuration], None]


class Waiter:
    """Completion handle for one queued mutation."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self._error: BaseException | None = None

    def _resolve(self, error: BaseException | None = None) -> None:
        self._error = error
        self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> None:
        """Block until the mutation has been applied in memory.

        Re-raises the exception the mutation (or validation of its result)
        raised. Raises ``TimeoutError`` if ``timeout`` elapses first.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"mutation not applied within {timeout}s")
        if self._error is not None:
            raise self._error


@dataclass
class _MutationRequest:
    fn: Mutation
    waiter: Waiter = field(default_factory=Waiter)


class ConfigActor:
    def __init__(self, path: Path, cfg: Configuration) -> None:
        self._path = path
        self._cfg = cfg
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._queue: queue.Queue[_MutationRequest] = queue.Queue()
        self._serving = threading.Event()
        self._subscribers: list[Subscriber] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def serving(self) -> bool:
        return self._serving.is_set()

    def raw_copy(self) -> Configuration:
        """Deep copy of the current in-memory configuration."""
        with self._lock:
            return copy.deepcopy(self._cfg)

    def subscribe(self, callback: Subscriber) -> None:
        """Register ``callback(old, new)``; it runs on the actor thread after each applied mutation."""
        with self._lock:
            self._subscribers.append(callback)

    def serve(self, cancel: threading.Event) -> None:
        """Apply queued mutations until ``cancel`` is set. Blocks the calling thread."""
        with self._lock:
            if self._serving.is_set():
                raise RuntimeError("config actor is already serving")
            self._serving.set()
        logger.debug("Config actor serving %s", self._path)
        try:
            while not cancel.is_set():
                try:
                    request = self._queue.get(timeout=POLL_INTERVAL)
                except queue.Empty:
                    continue
                self._apply(request)
        finally:
            with self._lock:
                self._serving.clear()
                self._fail_pending()
            logger.debug("Config actor stopped")

    def start(self, cancel: threading.Event) -> threading.Thread:
        """Run :meth:`serve` on a daemon thread; returns once the actor is serving."""
        if self.serving:
            raise RuntimeError("config actor is already serving")
        thread = threading.Thread(target=self.serve, args=(cancel,), name="config-actor", daemon=True)
        thread.start()
        while not self._serving.wait(POLL_INTERVAL):
            if not thread.is_alive():
                raise ActorStoppedError("config actor exited before serving")
        return thread

    def modify(self, fn: Mutation) -> Waiter:
        """Queue ``fn`` to run against the configuration. Safe from any thread."""
        request = _MutationRequest(fn=fn)
        with self._lock:
            if not self._serving.is_set():
                raise ActorStoppedError("config actor is not serving")
            self._queue.put(request)
        return request.waiter

    def save(self) -> None:
        """Write the current in-memory configuration to disk."""
        with self._save_lock:
            snapshot = self.raw_copy()
            write_config(self._path, snapshot)
        logger.debug("Saved configuration to %s", self._path)

    def _apply(self, request: _MutationRequest) -> None:
        with self._lock:
            current = self._cfg
            subscribers = list(self._subscribers)
        candidate = copy.deepcopy(current)
        try:
            request.fn(candidate)
            validate(candidate)
        except Exception as e:
            logger.debug("Mutation rejected: %s", e)
            request.waiter._resolve(e)
            return

        with self._lock:
            self._cfg = candidate
        for callback in subscribers:
            try:
                callback(copy.deepcopy(current), copy.deepcopy(candidate))
            except Exception:
                logger.exception("Config subscriber %r failed", callback)
        request.waiter._resolve()

    def _fail_pending(self) -> None:
        while True:
            try:
                request = self._queue.get_nowait()
            except queue.Empty:
                return
            request.waiter._resolve(ActorStoppedError("config actor stopped before applying mutation"))
