from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import BinaryIO

import pytest

from gateway.config import Settings, get_settings
from gateway.services.index_store import IndexStore
from gateway.services.types import Metadata, WorkerState


class FakeSupervisor:
    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.ensure_calls = 0
        self.active_marks = 0
        self.in_use_depth = 0
        self.closed = False
        self.state = WorkerState.NOT_STARTED

    def ensure_running(self) -> None:
        self.ensure_calls += 1
        if self.error is not None:
            raise self.error
        self.state = WorkerState.RUNNING

    @contextmanager
    def in_use(self) -> Iterator[None]:
        self.in_use_depth += 1
        try:
            yield
        finally:
            self.in_use_depth -= 1
            self.mark_active()

    def mark_active(self) -> None:
        self.active_marks += 1

    def terminate(self) -> None:
        self.state = WorkerState.EXITED

    def close(self) -> None:
        self.closed = True
        self.terminate()


class FakeExtractor:
    """Treats the document as UTF-8 text; the first line becomes the title."""

    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.received: list[bytes] = []

    def analyze(self, stream: BinaryIO) -> tuple[Metadata, str]:
        chunks = []
        while True:
            chunk = stream.read(1024)
            if not chunk:
                break
            chunks.append(chunk)
        payload = b"".join(chunks)
        self.received.append(payload)
        if self.error is not None:
            raise self.error

        text = payload.decode("utf-8")
        title = text.splitlines()[0] if text else ""
        return (
            Metadata(
                author="tester",
                content_type="text/plain; charset=UTF-8",
                title=title,
                data={"Content-Length": str(len(payload))},
            ),
            text,
        )


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return replace(get_settings(), index_path=str(tmp_path / "index"))


@pytest.fixture
def index_store(tmp_path: Path) -> Iterator[IndexStore]:
    store = IndexStore.open(tmp_path / "store")
    yield store
    store.close()
