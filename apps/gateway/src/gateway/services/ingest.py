from __future__ import annotations

from typing import BinaryIO

from gateway.services.extraction_client import Extractor
from gateway.services.index_store import IndexStore
from gateway.services.supervisor import WorkerSupervisor
from gateway.services.types import Document


def ingest_document(
    doc_id: str,
    stream: BinaryIO,
    *,
    supervisor: WorkerSupervisor,
    extraction_client: Extractor,
    index_store: IndexStore,
) -> Document:
    """Extract ``stream`` through the worker and upsert the result under ``doc_id``.

    Raises ``WorkerStartError``, ``ExtractionError`` or ``IndexStoreError``; none of
    them is retried, and a worker that was started stays up for the next request.
    """
    with supervisor.in_use():
        supervisor.ensure_running()
        metadata, text = extraction_client.analyze(stream)

    index_store.store(doc_id, metadata, text)
    return Document(id=doc_id, metadata=metadata, text=text)
