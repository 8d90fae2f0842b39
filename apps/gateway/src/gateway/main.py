from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
from pathlib import Path
from typing import Annotated, Any, BinaryIO

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData, UploadFile

from gateway.body import RequestBodyReader
from gateway.config import Settings, get_settings
from gateway.logs import configure_logging
from gateway.services.extraction_client import ExtractionClient, ExtractionError, Extractor
from gateway.services.index_store import IndexStore, IndexStoreError
from gateway.services.ingest import ingest_document
from gateway.services.supervisor import WorkerStartError, WorkerSupervisor, build_worker_command
from gateway.services.types import Document, format_timestamp

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


class DocumentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    author: str
    content_type: str = Field(alias="content-type")
    title: str
    data: dict[str, str]
    created: str | None

    @classmethod
    def from_document(cls, document: Document) -> DocumentResponse:
        metadata = document.metadata
        return cls(
            id=document.id,
            author=metadata.author,
            content_type=metadata.content_type,
            title=metadata.title,
            data=dict(metadata.data),
            created=format_timestamp(metadata.created),
        )


def build_supervisor(settings: Settings, logger: logging.Logger) -> WorkerSupervisor:
    return WorkerSupervisor(
        command=build_worker_command(
            java_bin=settings.worker_java_bin,
            jar_path=settings.worker_jar,
            port=settings.worker_port,
        ),
        grace_period_seconds=settings.worker_start_grace_seconds,
        terminate_timeout_seconds=settings.worker_stop_timeout_seconds,
        idle_timeout_seconds=settings.worker_idle_timeout_seconds,
        logger=logger.getChild("supervisor"),
    )


def create_app(
    settings: Settings | None = None,
    *,
    supervisor: WorkerSupervisor | None = None,
    extraction_client: Extractor | None = None,
    index_store: IndexStore | None = None,
    logger: logging.Logger | None = None,
) -> FastAPI:
    """Build the gateway application.

    Components that are not passed in are constructed from ``settings`` when the
    application starts, and the ones built here are torn down on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        resolved = settings or get_settings()
        log = logger or logging.getLogger("gateway")

        store = index_store or IndexStore.open(Path(resolved.index_path), logger=log.getChild("index"))
        worker = supervisor or build_supervisor(resolved, log)
        client = extraction_client or ExtractionClient(
            base_url=resolved.worker_base_url,
            timeout_seconds=resolved.worker_http_timeout_seconds,
            logger=log.getChild("extraction"),
        )

        app.state.index_store = store
        app.state.supervisor = worker
        app.state.extraction_client = client

        if resolved.worker_eager_start:
            log.info("trying extraction worker")
            await run_in_threadpool(worker.ensure_running)
            log.info("extraction worker started")

        try:
            yield
        finally:
            await run_in_threadpool(worker.close)
            if extraction_client is None:
                client.close()
            if index_store is None:
                store.close()

    app = FastAPI(title="Document Index Gateway", version="0.1.0", lifespan=lifespan)
    _register_routes(app)
    return app


def get_index_store(request: Request) -> IndexStore:
    return request.app.state.index_store


def get_supervisor(request: Request) -> WorkerSupervisor:
    return request.app.state.supervisor


def get_extraction_client(request: Request) -> Extractor:
    return request.app.state.extraction_client


def _first_upload(form: FormData) -> UploadFile | None:
    return next((value for _, value in form.multi_items() if isinstance(value, UploadFile)), None)


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health(
        index_store: Annotated[IndexStore, Depends(get_index_store)],
        supervisor: Annotated[WorkerSupervisor, Depends(get_supervisor)],
    ) -> dict[str, Any]:
        try:
            documents = index_store.count()
        except IndexStoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return {"status": "ok", "worker": supervisor.state.value, "documents": documents}

    @app.api_route("/add", methods=["PUT", "POST"])
    async def add_document(
        request: Request,
        index_store: Annotated[IndexStore, Depends(get_index_store)],
        supervisor: Annotated[WorkerSupervisor, Depends(get_supervisor)],
        extraction_client: Annotated[Extractor, Depends(get_extraction_client)],
        query_id: Annotated[str | None, Query(alias="id")] = None,
    ) -> JSONResponse:
        content_type = request.headers.get("content-type", "")
        form: FormData | None = None
        source: BinaryIO
        if content_type.startswith(FORM_CONTENT_TYPES):
            form = await request.form()
            upload = _first_upload(form)
            if upload is None:
                await form.close()
                raise HTTPException(status_code=400, detail="no file given!")
            raw_id = form.get("id")
            doc_id = raw_id if isinstance(raw_id, str) else None
            source = upload.file
        else:
            doc_id = query_id
            source = RequestBodyReader(request)

        try:
            if not doc_id:
                raise HTTPException(status_code=400, detail="id is required!")

            try:
                document = await run_in_threadpool(
                    ingest_document,
                    doc_id,
                    source,
                    supervisor=supervisor,
                    extraction_client=extraction_client,
                    index_store=index_store,
                )
            except WorkerStartError as exc:
                raise HTTPException(status_code=500, detail=f"Start worker: {exc}") from exc
            except ExtractionError as exc:
                raise HTTPException(status_code=500, detail=f"analyze: {exc}") from exc
            except IndexStoreError as exc:
                raise HTTPException(status_code=500, detail=f"store: {exc}") from exc
        finally:
            if form is not None:
                await form.close()

        payload = DocumentResponse.from_document(document)
        return JSONResponse(status_code=201, content=payload.model_dump(by_alias=True))

    @app.get("/search")
    def search(
        index_store: Annotated[IndexStore, Depends(get_index_store)],
        q: str = "",
        limit: int = Query(default=10, ge=1, le=100),
    ) -> list[dict[str, object]]:
        if not q.strip():
            raise HTTPException(status_code=400, detail="q must not be empty")

        try:
            hits = index_store.search(q, limit=limit)
        except IndexStoreError as exc:
            raise HTTPException(status_code=500, detail=f"Search ({q!r}): {exc}") from exc

        return [
            {
                "id": hit.id,
                "score": round(hit.score, 6),
                "title": hit.title,
                "author": hit.author,
                "content-type": hit.content_type,
            }
            for hit in hits
        ]

    @app.get("/documents/{doc_id}")
    def get_document(
        doc_id: str,
        index_store: Annotated[IndexStore, Depends(get_index_store)],
    ) -> dict[str, Any]:
        try:
            document = index_store.get(doc_id)
        except IndexStoreError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        if document is None:
            raise HTTPException(status_code=404, detail="document not found")

        payload = DocumentResponse.from_document(document).model_dump(by_alias=True)
        payload["text"] = document.text
        return payload


def run() -> None:
    import uvicorn

    settings = get_settings()
    logger = configure_logging(settings.verbose)
    logger.info("listening on %s:%s", settings.host, settings.port)
    uvicorn.run(
        create_app(settings, logger=logger),
        host=settings.host,
        port=settings.port,
        log_level="debug" if settings.verbose else "info",
    )


app = create_app()


if __name__ == "__main__":
    run()
