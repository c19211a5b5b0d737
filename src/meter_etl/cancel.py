"""meter_etl.cancel

Cooperative cancellation shared by the pipeline and the writer.

A CancelToken is checked at every suspension point (row read, store call,
commit).  Setting it from another thread or a signal handler makes the next
check raise ImportCancelled.
"""

from __future__ import annotations

import threading


class ImportCancelled(Exception):
    """Raised at a suspension point once cancellation has been requested."""


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ImportCancelled("import cancelled")
