import logging
import threading
from typing import Any, Callable, List, Optional

log = logging.getLogger(__name__)


class BackgroundTask:
    """
    Run a zero-argument callable on a daemon thread.

    The handle can be polled, waited on, and notifies completion callbacks.
    Callbacks run on the worker thread *before* waiters are released, so once
    wait() returns every callback registered before completion has finished.
    There is no timeout and no cancellation.
    """

    def __init__(self, fn: Callable[[], Any], name: str = "wizard-task"):
        self._fn = fn
        self.name = name
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[["BackgroundTask"], None]] = []
        self._finished = False
        self._result: Any = None
        self._error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "BackgroundTask":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._result = self._fn()
        except Exception as e:
            log.exception("Background task %s failed", self.name)
            self._error = e
        with self._lock:
            self._finished = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        try:
            for cb in callbacks:
                self._invoke(cb)
        finally:
            self._done.set()

    def _invoke(self, cb: Callable[["BackgroundTask"], None]) -> None:
        try:
            cb(self)
        except Exception:
            log.exception("Completion callback of %s failed", self.name)

    def on_complete(self, callback: Callable[["BackgroundTask"], None]) -> None:
        with self._lock:
            if not self._finished:
                self._callbacks.append(callback)
                return
        # already finished: run on the caller
        self._invoke(callback)

    def poll(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def exception(self) -> Optional[BaseException]:
        if not self._finished:
            self._done.wait()
        return self._error

    def result(self) -> Any:
        if not self._finished:
            self._done.wait()
        if self._error is not None:
            raise self._error
        return self._result
