"""
Ingestion pipeline: normalizes text, embeds it, assigns ids and writes
records to the store, one at a time or in atomic batches. Also hosts the
streaming importers for newline-delimited JSON and CSV/TSV files.

Embedding always happens before the store's write lock is taken.
"""

import asyncio
import csv
import json
import math
import re
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, TextIO, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as SchemaValidationError

from ..util.logging import logger
from ..vector.embeddings import IEmbeddingProvider, embed, embed_async
from .config import IMPORT_BATCH_SIZE
from .errors import ValidationError
from .schema import Record
from .store import RecordStore

_STRIP_CHARS = re.compile(r'[/#$%^&*{}=_`~()"]')
_MULTI_SPACE = re.compile(r"\s{2,}")

ProgressCallback = Callable[[int, Optional[int], int], None]


def sanitize(text: str) -> str:
    """Replace query-syntax characters with spaces and collapse whitespace runs."""
    text = _STRIP_CHARS.sub(" ", text)
    return _MULTI_SPACE.sub(" ", text).strip()


def new_record_id() -> str:
    """Random 128-bit id, hex encoded."""
    return secrets.token_hex(16)


def normalize_header(header: str) -> str:
    """Column name as a data key: lowercase letters, digits and underscores."""
    return re.sub(r"[^a-zA-Z0-9_]", "", re.sub(r"\W", "_", header)).lower()


class IngestItem(BaseModel):
    """One record to ingest, as read from an import file or API call."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    input: str
    result: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('input', 'result')
    @classmethod
    def must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('must not be empty')
        return v

    @field_validator('data', mode='before')
    @classmethod
    def data_defaults_to_empty(cls, v):
        return {} if v is None else v


@dataclass
class ImportReport:
    """Outcome of a streaming import."""
    source: str
    added: int = 0
    skipped: int = 0
    batches: int = 0
    errors: List[str] = field(default_factory=list)


class IngestionPipeline:
    """Turns (input, result, data) triples into stored, indexed records."""

    def __init__(self, store: RecordStore, embedder: IEmbeddingProvider):
        self.store = store
        self.embedder = embedder

    def _prepare(self, input: str, result: str, data: Optional[Dict[str, Any]]) -> Optional[Record]:
        """Sanitize and assign an id; None when input or result ends up empty."""
        if not input or not input.strip() or not result or not result.strip():
            return None
        clean_input = sanitize(input)
        clean_result = sanitize(result)
        if not clean_input or not clean_result:
            return None

        data = dict(data or {})
        record_id = str(data["id"]) if data.get("id") not in (None, "") else new_record_id()
        return Record(id=record_id, vector=[], input=clean_input, result=clean_result, data=data)

    def add(self, input: str, result: str, data: Optional[Dict[str, Any]] = None) -> Optional[Record]:
        """Add one record; returns None (no-op) when input or result is empty."""
        record = self._prepare(input, result, data)
        if record is None:
            logger.log_operation("record.add", "skipped", {"reason": "empty input or result"})
            return None

        record.vector = embed(self.embedder, record.input)
        return self.store.put(record.id, record.vector, record.input, record.result, record.data)

    def add_batch(self, items: Iterable[Union[Dict[str, Any], IngestItem]]) -> List[Record]:
        """Embed every valid item, then write them all in one atomic batch.

        Items without input or result are skipped. Embedding or storage
        failures abort the whole batch.
        """
        records = []
        for item in items:
            record = self._prepare_item(item)
            if record is None:
                continue
            record.vector = embed(self.embedder, record.input)
            records.append(record)

        if records:
            self.store.put_batch(records)
        return records

    async def aadd(self, input: str, result: str, data: Optional[Dict[str, Any]] = None) -> Optional[Record]:
        """Awaitable ``add``; cancelling during the embed leaves the store untouched."""
        record = self._prepare(input, result, data)
        if record is None:
            return None

        record.vector = await embed_async(self.embedder, record.input)
        return await asyncio.to_thread(
            self.store.put, record.id, record.vector, record.input, record.result, record.data)

    async def aadd_batch(self, items: Iterable[Union[Dict[str, Any], IngestItem]]) -> List[Record]:
        """Awaitable ``add_batch``."""
        records = []
        for item in items:
            record = self._prepare_item(item)
            if record is None:
                continue
            record.vector = await embed_async(self.embedder, record.input)
            records.append(record)

        if records:
            await asyncio.to_thread(self.store.put_batch, records)
        return records

    def remove(self, record_id: str) -> bool:
        """Remove a record by id; False when it does not exist."""
        return self.store.delete(record_id)

    def _prepare_item(self, item: Union[Dict[str, Any], IngestItem]) -> Optional[Record]:
        if not isinstance(item, IngestItem):
            try:
                item = IngestItem.model_validate(item)
            except SchemaValidationError as e:
                logger.warning(f"Skipping invalid record: {e.errors()[0]['msg'] if e.errors() else e}")
                return None
        return self._prepare(item.input, item.result, item.data)

    # Streaming importers

    def _flush(self, batch: List[IngestItem], report: ImportReport, total_batches: Optional[int],
               progress: Optional[ProgressCallback]) -> None:
        # A repeated id inside one batch would reject the whole batch; keep the first
        unique, seen = [], set()
        for item in batch:
            item_id = item.data.get("id")
            if item_id not in (None, ""):
                if str(item_id) in seen:
                    report.skipped += 1
                    logger.warning(f"Skipping duplicate id {item_id!r} in import batch")
                    continue
                seen.add(str(item_id))
            unique.append(item)

        written = self.add_batch(unique)
        report.batches += 1
        report.added += len(written)
        report.skipped += len(unique) - len(written)

        logger.log_import_batch(report.source, report.batches, len(written), total_batches)
        if progress is not None:
            progress(report.batches, total_batches, len(written))

    def import_jsonl(self, source: Union[str, Path, TextIO], batch_size: int = None,
                     progress: Optional[ProgressCallback] = None) -> ImportReport:
        """Import one JSON object per line: {"input": ..., "result": ..., "data": {...}}."""
        batch_size = batch_size or IMPORT_BATCH_SIZE
        if isinstance(source, (str, Path)):
            with open(source, "r", encoding="utf-8") as stream:
                return self._import_json_lines(stream, str(source), batch_size, progress)
        return self._import_json_lines(source, getattr(source, "name", "<stream>"), batch_size, progress)

    def _import_json_lines(self, lines: Iterable[str], name: str, batch_size: int,
                           progress: Optional[ProgressCallback]) -> ImportReport:
        report = ImportReport(source=name)
        batch: List[IngestItem] = []

        for line_number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                item = IngestItem.model_validate(json.loads(line))
            except json.JSONDecodeError as e:
                report.skipped += 1
                report.errors.append(f"line {line_number}: invalid JSON ({e.msg})")
                continue
            except SchemaValidationError:
                report.skipped += 1
                report.errors.append(f"line {line_number}: missing input or result")
                continue

            batch.append(item)
            if len(batch) >= batch_size:
                self._flush(batch, report, None, progress)
                batch = []

        if batch:
            self._flush(batch, report, None, progress)

        if report.skipped:
            logger.warning(f"Import of {name} skipped {report.skipped} records")
        return report

    def import_delimited(self, path: Union[str, Path], input_header: str = None, result_header: str = None,
                         batch_size: int = None, progress: Optional[ProgressCallback] = None) -> ImportReport:
        """Import a CSV or TSV file.

        The input column is ``input_header`` or the first column, the result
        column is ``result_header`` or the second column; every other
        non-empty cell goes into ``data`` under its normalized header.
        """
        batch_size = batch_size or IMPORT_BATCH_SIZE
        path = Path(path)
        extension = path.suffix.lower()
        if extension not in (".csv", ".tsv"):
            raise ValidationError("File must have csv or tsv extension")

        with open(path, "r", encoding="utf-8", newline="") as stream:
            rows = list(csv.reader(stream, delimiter="\t" if extension == ".tsv" else ","))
        if not rows:
            return ImportReport(source=str(path))

        headers, rows = rows[0], rows[1:]
        input_index = self._column_index(headers, input_header, 0)
        result_index = self._column_index(headers, result_header, 1)
        if input_index == result_index:
            raise ValidationError(
                f"Input and result would both read column {headers[input_index]!r}; name the other column too")
        data_columns = [(i, normalize_header(h)) for i, h in enumerate(headers)
                        if i not in (input_index, result_index) and normalize_header(h)]

        report = ImportReport(source=str(path))
        total_batches = math.ceil(len(rows) / batch_size)
        logger.info(f"{path} loaded ({len(rows)} rows)")

        batch: List[IngestItem] = []
        for row_number, row in enumerate(rows, start=2):
            padded = row + [""] * (len(headers) - len(row))
            data = {key: padded[i] for i, key in data_columns if padded[i]}
            try:
                item = IngestItem(input=padded[input_index], result=padded[result_index], data=data)
            except SchemaValidationError:
                report.skipped += 1
                report.errors.append(f"row {row_number}: missing input or result")
                continue

            batch.append(item)
            if len(batch) >= batch_size:
                self._flush(batch, report, total_batches, progress)
                batch = []

        if batch:
            self._flush(batch, report, total_batches, progress)

        if report.skipped:
            logger.warning(f"Import of {path} skipped {report.skipped} rows")
        return report

    @staticmethod
    def _column_index(headers: List[str], name: Optional[str], default: int) -> int:
        if name:
            try:
                return headers.index(name)
            except ValueError:
                raise ValidationError(f"Column {name!r} not found in headers {headers}")
        if default >= len(headers):
            raise ValidationError(f"File needs at least {default + 1} columns")
        return default
