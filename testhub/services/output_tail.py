from __future__ import annotations

from collections import deque
from typing import Deque, Optional

TRUNCATION_MARKER = "[testhub] output truncated: {dropped} earlier bytes discarded\n"


class OutputTail:
    """Keep the most recent ``max_bytes`` of a byte stream.

    Oldest bytes are evicted first. Eviction is recorded so readers can tell a
    complete log from a clipped one.
    """

    def __init__(self, max_bytes: int) -> None:
        if max_bytes <= 0:
            raise ValueError("Output tail size must be a positive number of bytes.")
        self._max_bytes = max_bytes
        self._chunks: Deque[bytes] = deque()
        self._size = 0
        self._dropped = 0
        self._text: Optional[str] = None

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    @property
    def truncated(self) -> bool:
        return self._dropped > 0

    @property
    def dropped_bytes(self) -> int:
        return self._dropped

    @property
    def total_bytes(self) -> int:
        return self._size + self._dropped

    def __len__(self) -> int:
        return self._size

    def append(self, data: bytes) -> None:
        if not data:
            return
        self._text = None
        if len(data) >= self._max_bytes:
            self._dropped += self._size + len(data) - self._max_bytes
            self._chunks.clear()
            self._chunks.append(bytes(data[-self._max_bytes:]))
            self._size = self._max_bytes
            return
        self._chunks.append(bytes(data))
        self._size += len(data)
        while self._size > self._max_bytes:
            overflow = self._size - self._max_bytes
            head = self._chunks[0]
            if len(head) <= overflow:
                self._chunks.popleft()
                self._size -= len(head)
                self._dropped += len(head)
            else:
                self._chunks[0] = head[overflow:]
                self._size -= overflow
                self._dropped += overflow

    def text(self) -> str:
        if self._text is None:
            body = b"".join(self._chunks).decode("utf-8", errors="replace")
            if self.truncated:
                body = TRUNCATION_MARKER.format(dropped=self._dropped) + body
            self._text = body
        return self._text
