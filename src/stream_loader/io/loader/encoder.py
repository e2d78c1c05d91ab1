"""
Staged file encoder.

Serialises a sealed batch into the CSV dialect consumed by
``COPY ... (FORMAT csv, ESCAPE '\\')``:

- fields are separated by ``,`` and records terminated by ``\\n``
- a field containing the delimiter, a line break, ``"`` or ``\\`` is quoted,
  with embedded quotes and backslashes escaped by a backslash
- NULL is an unquoted empty field; an empty string is always quoted

Rows that fail coercion are left out of the file and reported as row errors;
the rest of the batch is still encoded.
"""

import gzip
from typing import Any, List, Optional, Sequence, Tuple

from stream_loader.io.loader.coercion import ValueCoercer
from stream_loader.io.loader.models import (
    Batch,
    CoercionError,
    ColumnKind,
    ErrorRecord,
    RowError,
    RowOk,
    RowOutcome,
    StagedFile,
)

FIELD_DELIMITER = ","
RECORD_DELIMITER = "\n"
QUOTE_CHAR = '"'
ESCAPE_CHAR = "\\"
_NEEDS_QUOTING = (FIELD_DELIMITER, "\n", "\r", QUOTE_CHAR, ESCAPE_CHAR)


def quote_field(text: Optional[str], empty_as_empty: bool = False) -> str:
    """Render one coerced value as a CSV field.

    >>> quote_field('a,b')
    '"a,b"'
    >>> quote_field(None), quote_field(None, empty_as_empty=True), quote_field('')
    ('', '""', '""')
    """
    if text is None:
        return '""' if empty_as_empty else ""
    if text == "" or any(ch in text for ch in _NEEDS_QUOTING):
        escaped = text.replace(ESCAPE_CHAR, ESCAPE_CHAR * 2).replace(
            QUOTE_CHAR, ESCAPE_CHAR + QUOTE_CHAR
        )
        return f"{QUOTE_CHAR}{escaped}{QUOTE_CHAR}"
    return text


class FileEncoder:
    """Encode batches of rows for one target table."""

    def __init__(
        self,
        columns: Sequence[str],
        kinds: Sequence[ColumnKind],
        coercer: ValueCoercer,
        target: str,
        copy_empty_field_as_empty: bool = False,
    ):
        if len(columns) != len(kinds):
            raise ValueError("columns and kinds must have the same length")
        self.columns = list(columns)
        self.kinds = list(kinds)
        self.coercer = coercer
        self.target = target
        self.copy_empty_field_as_empty = copy_empty_field_as_empty

    def encode_row(self, row: Sequence[Any]) -> Tuple[Optional[str], List[CoercionError]]:
        """Encode one row into a CSV record, collecting every column failure."""
        if len(row) != len(self.columns):
            return None, [
                CoercionError(
                    f"Row has {len(row)} values but {len(self.columns)} columns are mapped",
                    value=tuple(row),
                )
            ]

        fields: List[str] = []
        failures: List[CoercionError] = []
        for value, column, kind in zip(row, self.columns, self.kinds):
            try:
                text = self.coercer.coerce(value, column, kind)
            except CoercionError as exc:
                failures.append(exc)
                continue
            fields.append(quote_field(text, self.copy_empty_field_as_empty))

        if failures:
            return None, failures
        return FIELD_DELIMITER.join(fields) + RECORD_DELIMITER, []

    def encode(self, batch: Batch, name: str, compress: bool = False) -> StagedFile:
        """Encode ``batch`` into a ``StagedFile`` named ``name``.

        Every row yields one outcome. An excluded row reports one event per
        failing value plus one row-level event for the exclusion.
        """
        chunks: List[bytes] = []
        outcomes: List[RowOutcome] = []
        offset = 0

        for position, row in enumerate(batch.rows):
            row_index = batch.row_index(position)
            record, failures = self.encode_row(row)
            if failures:
                outcomes.append(self._row_error(batch.seq, name, row_index, tuple(row), failures))
                continue

            data = record.encode("utf-8")
            chunks.append(data)
            outcomes.append(RowOk(row_index=row_index, span=(offset, offset + len(data))))
            offset += len(data)

        payload = b"".join(chunks)
        if compress:
            payload = gzip.compress(payload)

        return StagedFile(
            batch_seq=batch.seq,
            name=name,
            payload=payload,
            outcomes=outcomes,
            compressed=compress,
        )

    def _row_error(self, batch_seq: int, name: str, row_index: int, row: Tuple[Any, ...],
                   failures: List[CoercionError]) -> RowError:
        errors = tuple(
            ErrorRecord(
                target=self.target,
                batch_seq=batch_seq,
                row_index=row_index,
                message=str(exc),
                column=exc.column,
                value=exc.value,
                row=row,
                cause=exc,
            )
            for exc in failures
        )
        report = ErrorRecord(
            target=self.target,
            batch_seq=batch_seq,
            row_index=row_index,
            message=(
                f"Row {row_index} excluded from staged file {name}: "
                f"{len(failures)} value(s) rejected"
            ),
            row=row,
            cause=failures[0],
        )
        return RowError(row_index=row_index, errors=errors, report=report)


def decode_payload(staged: StagedFile, payload: bytes) -> bytes:
    """Return the uncompressed payload fetched back from the stage."""
    return gzip.decompress(payload) if staged.compressed else payload
