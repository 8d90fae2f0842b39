"""Parse the worker's ``"key","value"`` metadata listing.

A typical response for a Word document looks like::

    "cp:revision","2"
    "Author","altbac"
    "Creation-Date","2013-05-03T07:46:00Z"
    "title","A BAGOLY TANODA NYARI TABORA"
    "X-Parsed-By","org.apache.tika.parser.ParserDecorator$1","org.apache.tika.parser.microsoft.OfficeParser"
    "Content-Type","application/msword"

Only the first ``","`` separates key from value; any further quotes in the value are
dropped, so multi-valued entries collapse into one comma-joined string.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
import logging
import re

from gateway.services.types import Metadata

SEPARATOR = '","'
CREATED_FORMATS = ("%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%dT%H:%M:%S.%f%z")
# strptime stops at microseconds; RFC 3339 allows any number of fraction digits.
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


def parse_created(value: str) -> datetime:
    value = _LONG_FRACTION.sub(r"\1", value, count=1)
    for fmt in CREATED_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ValueError(f"not an RFC 3339 timestamp: {value!r}")


def parse_metadata(lines: Iterable[str], *, logger: logging.Logger | None = None) -> Metadata:
    log = logger or logging.getLogger(__name__)
    author = ""
    content_type = ""
    title = ""
    created: datetime | None = None
    data: dict[str, str] = {}

    for raw_line in lines:
        line = raw_line.rstrip('"\r\n').lstrip('"')
        if not line:
            continue
        index = line.find(SEPARATOR)
        if index < 0:
            log.warning("no field separator in metadata line %r", raw_line)
            continue

        key = line[:index]
        value = line[index + len(SEPARATOR):].replace('"', "")
        log.debug("metadata key=%s value=%s", key, value)

        if key == "Content-Type":
            content_type = value
        elif key == "Author":
            author = value
        elif key == "title":
            title = value
        elif key == "Creation-Date":
            try:
                created = parse_created(value)
            except ValueError as exc:
                log.warning("parse Creation-Date %r: %s", value, exc)
        else:
            data[key] = value

    return Metadata(
        author=author,
        content_type=content_type,
        title=title,
        created=created,
        data=data,
    )
