from __future__ import annotations

from collections.abc import AsyncIterator
import io

import anyio.from_thread
from starlette.requests import Request


class RequestBodyReader(io.RawIOBase):
    """Blocking file-like view of a request body for code running in a worker thread.

    Each read pulls the next chunk from the event loop, so the body is consumed as it
    arrives. Only usable from threads started through ``run_in_threadpool``.
    """

    def __init__(self, request: Request) -> None:
        self._chunks: AsyncIterator[bytes] = request.stream().__aiter__()
        self._pending = b""
        self._finished = False

    def readable(self) -> bool:
        return True

    async def _next_chunk(self) -> bytes | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None

    def readinto(self, buffer) -> int:
        while not self._pending and not self._finished:
            chunk = anyio.from_thread.run(self._next_chunk)
            if chunk is None:
                self._finished = True
            else:
                self._pending = chunk

        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size
