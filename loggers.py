from __future__ import annotations

import collections
from typing import List, TextIO

from PyQt5.QtCore import pyqtSignal, QObject

class DebugLogger(QObject):
    """
    Global Qt-based debug logger.

    Usage (anywhere in the detection code):

        from loggers import DEBUG_LOGGER

        DEBUG_LOGGER.log_message("[NetworkSniffer] manifest scheduled ...")

    A UI can connect to ``message_signal`` to show a live log pane. Headless
    callers (CLI, tests) read ``history`` or mirror output with ``attach_stream``.
    """
    message_signal = pyqtSignal(str)

    def __init__(self, max_history: int = 2000):
        super().__init__()
        self.history: collections.deque[str] = collections.deque(maxlen=max_history)
        self._streams: List[TextIO] = []

    def log_message(self, msg: str):
        text = str(msg).rstrip()
        self.history.append(text)
        for stream in list(self._streams):
            try:
                stream.write(text + "\n")
            except Exception:
                self._streams.remove(stream)
        self.message_signal.emit(text)

    def attach_stream(self, stream: TextIO) -> None:
        if stream not in self._streams:
            self._streams.append(stream)

    def detach_stream(self, stream: TextIO) -> None:
        if stream in self._streams:
            self._streams.remove(stream)


DEBUG_LOGGER = DebugLogger()
