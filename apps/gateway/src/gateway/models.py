from datetime import datetime

from sqlalchemy import JSON, DateTime, String, Text, text as sql_text
from sqlalchemy.orm import Mapped, mapped_column

from gateway.db import Base


class DocumentRecord(Base):
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(512), primary_key=True)
    author: Mapped[str] = mapped_column(Text, nullable=False, server_default=sql_text("''"))
    content_type: Mapped[str] = mapped_column(Text, nullable=False, server_default=sql_text("''"))
    title: Mapped[str] = mapped_column(Text, nullable=False, server_default=sql_text("''"))
    created: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    data: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    text: Mapped[str] = mapped_column(Text, nullable=False, server_default=sql_text("''"))


# Searchable columns; ``data`` is stored on the table only.
FTS_TABLE = "documents_fts"
FTS_COLUMNS = ("id", "author", "content_type", "title", "text")
FTS_DDL = (
    f"CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} "
    f"USING fts5({', '.join(FTS_COLUMNS)}, tokenize='unicode61')"
)
