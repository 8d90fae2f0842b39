from __future__ import annotations

from collections.abc import Iterator
import logging
from typing import BinaryIO, Protocol

import httpx

from gateway.services.metadata import parse_metadata
from gateway.services.types import Metadata

DEFAULT_CHUNK_SIZE = 64 * 1024


class ExtractionError(RuntimeError):
    def __init__(self, phase: str, message: str) -> None:
        super().__init__(f"{phase} request failed: {message}")
        self.phase = phase


class Extractor(Protocol):
    def analyze(self, stream: BinaryIO) -> tuple[Metadata, str]: ...


class TeeReader:
    """Iterate over a binary stream while keeping a copy of every byte read."""

    def __init__(self, source: BinaryIO, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self._source = source
        self._chunk_size = chunk_size
        self.buffer = bytearray()

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self._read()
            if not chunk:
                return
            yield chunk

    def _read(self) -> bytes:
        chunk = self._source.read(self._chunk_size)
        if chunk:
            self.buffer.extend(chunk)
        return chunk

    def drain(self) -> bytes:
        while self._read():
            pass
        return bytes(self.buffer)


class ExtractionClient:
    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 120.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        http_client: httpx.Client | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
        )
        self._chunk_size = chunk_size
        self._logger = logger or logging.getLogger(__name__)

    def analyze(self, stream: BinaryIO) -> tuple[Metadata, str]:
        """Send the document to the worker twice: metadata first, then text.

        ``stream`` is read exactly once. The metadata request consumes it live; the
        text request is served from the bytes captured along the way.
        """
        body = TeeReader(stream, chunk_size=self._chunk_size)

        try:
            with self._client.stream(
                "PUT",
                "/meta",
                content=body,
                headers={"Accept": "text/csv"},
            ) as response:
                if not response.is_success:
                    response.read()
                    raise ExtractionError("metadata", f"status {response.status_code}: {response.text}")
                metadata = parse_metadata(response.iter_lines(), logger=self._logger)
        except (httpx.HTTPError, OSError) as exc:
            raise ExtractionError("metadata", str(exc)) from exc

        try:
            content = body.drain()
        except OSError as exc:
            raise ExtractionError("metadata", f"read document: {exc}") from exc
        self._logger.debug("buffered %d bytes for text extraction", len(content))

        try:
            response = self._client.put(
                "/tika",
                content=content,
                headers={"Accept": "text/plain"},
            )
        except httpx.HTTPError as exc:
            raise ExtractionError("text", str(exc)) from exc
        if not response.is_success:
            raise ExtractionError("text", f"status {response.status_code}: {response.text}")

        return metadata, response.text

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
