"""Bounded scrollback replayed to clients when they attach."""

import re
from collections import deque

# CSI sequences: ESC [ params intermediates final
ANSI_CSI_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
LINE_SPLIT_PATTERN = re.compile(r"\r?\n")


def strip_ansi(text: str) -> str:
    return ANSI_CSI_PATTERN.sub("", text)


class ReplayBuffer:
    """
    Most recent PTY output, capped at ``limit`` characters.

    Appends that push the buffer over the cap drop characters from the
    front, so the newest output always survives. A limit of zero (or less)
    disables buffering entirely.

    Not thread-safe; the owning session serializes access with its lock.
    """

    def __init__(self, limit: int = 200_000):
        self.limit = limit
        self._chunks: deque = deque()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def append(self, chunk: str) -> None:
        if self.limit <= 0 or not chunk:
            return

        if len(chunk) >= self.limit:
            self._chunks = deque([chunk[-self.limit:]])
            self._size = self.limit
            return

        self._chunks.append(chunk)
        self._size += len(chunk)
        self._trim()

    def snapshot(self) -> str:
        """Current contents as one string"""
        if len(self._chunks) > 1:
            # Collapse so repeated snapshots stay cheap
            self._chunks = deque(["".join(self._chunks)])
        return self._chunks[0] if self._chunks else ""

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

    def tail(self, max_lines: int = 40, strip_escapes: bool = False) -> str:
        """Last ``max_lines`` logical lines, optionally without ANSI CSI sequences"""
        if max_lines <= 0:
            return ""
        lines = LINE_SPLIT_PATTERN.split(self.snapshot())
        text = "\n".join(lines[-max_lines:])
        return strip_ansi(text) if strip_escapes else text

    def _trim(self) -> None:
        excess = self._size - self.limit
        while excess > 0:
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._size -= len(head)
                excess -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess
                excess = 0
