"""Normalization of scraped financial records into knowledge-base documents."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from typing import Any

from brain_integration.types import Document, utcnow

logger = logging.getLogger(__name__)

_IDENTITY_FIELDS = {"company_name", "companyName", "company", "symbol", "ticker", "scraped_at"}
_DESCRIPTIVE_FIELDS = ("exchange", "sector", "industry")
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
_CAMEL_PATTERN = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def records_to_documents(records: Iterable[Any], source: str) -> list[Document]:
    """Turn scraped company records into readable, idempotently keyed documents.

    Records without a company name or symbol cannot be keyed and are skipped.
    """
    documents: list[Document] = []
    for index, record in enumerate(records):
        if not isinstance(record, Mapping):
            logger.warning("Skipping scraped record %d from %s: not a mapping", index, source)
            continue
        company = _first(record, "company_name", "companyName", "company")
        symbol = _first(record, "symbol", "ticker")
        if not company and not symbol:
            logger.warning("Skipping scraped record %d from %s: no company or symbol", index, source)
            continue
        documents.append(_record_to_document(record, source, company, symbol))
    return documents


def _record_to_document(
    record: Mapping[str, Any], source: str, company: str | None, symbol: str | None
) -> Document:
    key = (symbol or _slug(company or "")).lower()
    display = company or symbol or key
    heading = f"{display} ({symbol})" if company and symbol else display

    lines = [f"{heading} financial data from {source}."]
    for field_name in _DESCRIPTIVE_FIELDS:
        if record.get(field_name):
            lines.append(f"{_label(field_name)}: {record[field_name]}")
    lines.extend(figure_lines(record, exclude=_IDENTITY_FIELDS | set(_DESCRIPTIVE_FIELDS)))

    metadata: dict[str, Any] = {
        "company": display,
        "source": source,
        "type": "scraped_financials",
    }
    if symbol:
        metadata["symbol"] = symbol
    for field_name in _DESCRIPTIVE_FIELDS:
        if isinstance(record.get(field_name), str):
            metadata[field_name] = record[field_name]

    created_at = _parse_timestamp(record.get("scraped_at")) or utcnow()
    metadata["date"] = created_at.date().isoformat()
    return Document(
        id=f"scraped:{_slug(source)}:{key}",
        text="\n".join(lines),
        metadata=metadata,
        created_at=created_at,
    )


def figure_lines(record: Mapping[str, Any], exclude: Iterable[str] = ()) -> list[str]:
    """Render fields as `Label: value` lines, e.g. `totalRevenue` -> `Total Revenue: 1000`."""
    skip = set(exclude)
    return [
        f"{_label(name)}: {_format_value(value)}"
        for name, value in record.items()
        if name not in skip and value is not None
    ]


def _first(record: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = record.get(key)
        if value:
            return str(value).strip()
    return None


def _slug(value: str) -> str:
    return _SLUG_PATTERN.sub("-", value.lower()).strip("-")


def _label(field_name: str) -> str:
    words = _CAMEL_PATTERN.sub(" ", field_name).replace("_", " ").split()
    return " ".join(word.capitalize() if word.islower() else word for word in words)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    return str(value)


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
