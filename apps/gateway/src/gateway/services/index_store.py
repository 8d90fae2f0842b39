from __future__ import annotations

from datetime import timezone
import logging
from pathlib import Path
import re

from sqlalchemy import func, inspect, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from gateway.db import Base, create_index_engine
from gateway.models import FTS_COLUMNS, FTS_DDL, FTS_TABLE, DocumentRecord
from gateway.services.types import Document, Metadata, SearchHit

INDEX_DB_NAME = "index.db"
DEFAULT_SEARCH_LIMIT = 10


_COLUMN_FILTER = re.compile(rf"^({'|'.join(FTS_COLUMNS)}):(.*)$", re.IGNORECASE)


class IndexStoreError(RuntimeError):
    pass


def to_match_expression(query: str) -> str:
    """Turn free text into an FTS5 ``MATCH`` expression.

    Every whitespace-separated word becomes a quoted FTS5 string, which the
    ``unicode61`` tokenizer splits the same way it split the indexed text, so
    ``e-mail`` matches as the phrase ``e mail`` and ``master,`` as ``master``.
    Words are ANDed. A ``column:word`` prefix naming a searchable column restricts
    that word to the column (``title:travels``). Words without letters or digits
    are dropped; the result is empty when nothing searchable is left.
    """
    terms = []
    for word in query.split():
        column = None
        match = _COLUMN_FILTER.match(word)
        if match is not None:
            column, word = match.group(1).lower(), match.group(2)
        if not any(char.isalnum() for char in word):
            continue
        term = '"' + word.replace('"', '""') + '"'
        terms.append(f"{column} : {term}" if column else term)
    return " ".join(terms)


class IndexStore:
    """Full-text document index kept in a SQLite database with an FTS5 table.

    Use ``IndexStore.open`` once at startup; it decides between opening an existing
    index and creating a new one with the fixed schema.
    """

    def __init__(self, engine: Engine, *, logger: logging.Logger | None = None) -> None:
        self._engine = engine
        self._logger = logger or logging.getLogger(__name__)

    @classmethod
    def open(cls, path: Path, *, logger: logging.Logger | None = None) -> IndexStore:
        log = logger or logging.getLogger(__name__)
        db_path = path / INDEX_DB_NAME
        if path.exists():
            log.info("opening index %s", path)
            engine = create_index_engine(db_path)
            try:
                tables = set(inspect(engine).get_table_names())
            except SQLAlchemyError as exc:
                engine.dispose()
                raise IndexStoreError(f"open index {path}: {exc}") from exc
            missing = {DocumentRecord.__tablename__, FTS_TABLE} - tables
            if missing:
                engine.dispose()
                raise IndexStoreError(f"open index {path}: missing tables {sorted(missing)}")
            return cls(engine, logger=log)

        log.info("creating index %s", path)
        path.mkdir(parents=True, exist_ok=True)
        engine = create_index_engine(db_path)
        try:
            Base.metadata.create_all(bind=engine)
            with engine.begin() as connection:
                connection.execute(text(FTS_DDL))
        except SQLAlchemyError as exc:
            engine.dispose()
            raise IndexStoreError(f"create index {path}: {exc}") from exc
        return cls(engine, logger=log)

    def store(self, doc_id: str, metadata: Metadata, text_content: str) -> None:
        created = metadata.created
        if created is not None and created.tzinfo is not None:
            created = created.astimezone(timezone.utc)

        record = DocumentRecord(
            id=doc_id,
            author=metadata.author,
            content_type=metadata.content_type,
            title=metadata.title,
            created=created,
            data=dict(metadata.data),
            text=text_content,
        )
        self._logger.debug("index document id=%s title=%r", doc_id, metadata.title)

        try:
            with Session(self._engine) as session, session.begin():
                session.merge(record)
                session.execute(
                    text(f"DELETE FROM {FTS_TABLE} WHERE id = :id"),
                    {"id": doc_id},
                )
                session.execute(
                    text(
                        f"""
                        INSERT INTO {FTS_TABLE} (id, author, content_type, title, text)
                        VALUES (:id, :author, :content_type, :title, :text)
                        """
                    ),
                    {
                        "id": doc_id,
                        "author": metadata.author,
                        "content_type": metadata.content_type,
                        "title": metadata.title,
                        "text": text_content,
                    },
                )
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"index document {doc_id!r}: {exc}") from exc

    def search(self, query: str, *, limit: int = DEFAULT_SEARCH_LIMIT) -> list[SearchHit]:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")
        expression = to_match_expression(normalized_query)
        if not expression:
            return []
        self._logger.debug("search %r as %s", normalized_query, expression)

        try:
            with self._engine.connect() as connection:
                rows = connection.execute(
                    text(
                        f"""
                        SELECT d.id, d.title, d.author, d.content_type, {FTS_TABLE}.rank AS rank
                        FROM {FTS_TABLE}
                        JOIN documents d ON d.id = {FTS_TABLE}.id
                        WHERE {FTS_TABLE} MATCH :query
                        ORDER BY {FTS_TABLE}.rank
                        LIMIT :limit
                        """
                    ),
                    {"query": expression, "limit": max(1, limit)},
                ).all()
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"search {normalized_query!r}: {exc}") from exc

        # FTS5 rank is bm25 negated: lower is better.
        return [
            SearchHit(
                id=row.id,
                score=-float(row.rank),
                title=row.title,
                author=row.author,
                content_type=row.content_type,
            )
            for row in rows
        ]

    def get(self, doc_id: str) -> Document | None:
        try:
            with Session(self._engine) as session:
                record = session.get(DocumentRecord, doc_id)
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"get document {doc_id!r}: {exc}") from exc
        if record is None:
            return None

        created = record.created
        if created is not None and created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return Document(
            id=record.id,
            metadata=Metadata(
                author=record.author,
                content_type=record.content_type,
                title=record.title,
                created=created,
                data=dict(record.data or {}),
            ),
            text=record.text,
        )

    def count(self) -> int:
        try:
            with Session(self._engine) as session:
                return int(session.scalar(select(func.count()).select_from(DocumentRecord)) or 0)
        except SQLAlchemyError as exc:
            raise IndexStoreError(f"count documents: {exc}") from exc

    def close(self) -> None:
        self._engine.dispose()
