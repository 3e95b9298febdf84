"""
Cooperative cancellation for in-flight requests.

A CancelToken is handed to whoever performs blocking I/O. The owner calls
cancel(); the I/O side either polls `cancelled` between reads or registers a
callback that tears down the underlying connection.
"""
import threading
from typing import Callable, List, Optional

from .error_handler import RequestCancelled
from .logging_utils import setup_logger

logger = setup_logger("voicechat.cancellation", "voicechat.log")


class CancelToken:
    """One-shot cancellation signal with callbacks"""

    def __init__(self, reason: str = ""):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "") -> None:
        with self._lock:
            if self._event.is_set():
                return
            if reason:
                self.reason = reason
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.debug(f"Cancel callback error: {e}")

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on cancel; immediately if already cancelled"""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(self.reason or "Request aborted")

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def check(token: Optional[CancelToken]) -> None:
    """raise_if_cancelled for an optional token"""
    if token is not None:
        token.raise_if_cancelled()
