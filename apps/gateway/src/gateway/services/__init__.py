from gateway.services.extraction_client import ExtractionClient, ExtractionError
from gateway.services.index_store import IndexStore, IndexStoreError, to_match_expression
from gateway.services.ingest import ingest_document
from gateway.services.metadata import parse_metadata
from gateway.services.supervisor import WorkerStartError, WorkerSupervisor, build_worker_command
from gateway.services.types import Document, Metadata, SearchHit, WorkerState

__all__ = [
    "Document",
    "ExtractionClient",
    "ExtractionError",
    "IndexStore",
    "IndexStoreError",
    "Metadata",
    "SearchHit",
    "WorkerStartError",
    "WorkerState",
    "WorkerSupervisor",
    "build_worker_command",
    "ingest_document",
    "parse_metadata",
    "to_match_expression",
]
