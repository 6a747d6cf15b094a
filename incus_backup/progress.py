"""Terminal progress output for transfers."""

import sys
from typing import Optional, TextIO


def format_progress(done: int, total: Optional[int], label: str) -> str:
    if total:
        percent = min(100, int(done * 100 / total))
        return f"[{label}] {percent}% ({done:,}/{total:,} bytes)"
    return f"[{label}] {done:,} bytes"


class ProgressPrinter:
    """Progress callback that rewrites one terminal line per transfer."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stderr
        self._label = None

    def __call__(self, done: int, total: Optional[int], label: str) -> None:
        if self._label is not None and label != self._label:
            self.stream.write("\n")
        self._label = label
        self.stream.write("\r" + format_progress(done, total, label))
        self.stream.flush()

    def finish(self) -> None:
        if self._label is not None:
            self.stream.write("\n")
            self.stream.flush()
            self._label = None
