"""Where schedule entries are read from and where changed entries are flushed."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_batch

from tariff_formula.models import ScheduleEntry

logger = logging.getLogger(__name__)

_COLUMNS = (
    "hts_number",
    "chapter",
    "description",
    "unit_of_quantity",
    "general_rate",
    "general",
    "other_rate",
    "chapter99",
    "chapter99_links",
    "footnotes",
    "chapter99_applicable_countries",
    "non_ntr_applicable_countries",
    "rate_formula",
    "rate_variables",
    "other_rate_formula",
    "other_rate_variables",
    "adjusted_formula",
    "adjusted_formula_variables",
    "is_formula_generated",
    "is_other_formula_generated",
    "is_adjusted_formula_generated",
    "metadata",
)
_JSON_COLUMNS = frozenset(
    {"rate_variables", "other_rate_variables", "adjusted_formula_variables", "metadata"}
)
_UPDATE_COLUMNS = tuple(column for column in _COLUMNS if column not in {"hts_number", "chapter", "description"})


class ScheduleStore(Protocol):
    def load_entries(self) -> List[ScheduleEntry]:
        ...

    def save_entries(self, entries: Sequence[ScheduleEntry]) -> None:
        ...


class InMemoryScheduleStore:
    """Store backed by a dict; also reads and writes JSON snapshot files."""

    def __init__(self, entries: Iterable[ScheduleEntry] = ()) -> None:
        self._entries: Dict[str, ScheduleEntry] = {}
        for entry in entries:
            self._entries[entry.hts_number] = copy.deepcopy(entry)
        self.save_calls: List[List[str]] = []

    @property
    def writes(self) -> int:
        return sum(len(batch) for batch in self.save_calls)

    def get(self, hts_number: str) -> Optional[ScheduleEntry]:
        entry = self._entries.get(hts_number)
        return copy.deepcopy(entry) if entry is not None else None

    def load_entries(self) -> List[ScheduleEntry]:
        return [copy.deepcopy(entry) for entry in self._entries.values()]

    def save_entries(self, entries: Sequence[ScheduleEntry]) -> None:
        self.save_calls.append([entry.hts_number for entry in entries])
        for entry in entries:
            self._entries[entry.hts_number] = copy.deepcopy(entry)

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryScheduleStore":
        with Path(path).open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        records = payload.get("entries") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise ValueError(f"snapshot {path} must hold a list of entries")
        return cls(ScheduleEntry.from_record(record) for record in records if isinstance(record, dict))

    def dump_json_file(self, path: Path) -> None:
        records = [entry.to_record() for entry in self._entries.values()]
        Path(path).write_text(json.dumps(records, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        logger.info("Wrote %d entries to %s", len(records), path)


class PostgresScheduleStore:
    """``hts_entries`` table access through psycopg2.

    Column names match the :class:`ScheduleEntry` field names. JSON-valued
    columns are ``jsonb``; link and country columns are ``text[]``.
    """

    def __init__(
        self,
        dsn: str,
        table: str = "hts_entries",
        *,
        source_version: Optional[str] = None,
        active_only: bool = False,
    ) -> None:
        self._conn = psycopg2.connect(dsn)
        self._conn.autocommit = False
        self.table = table
        self.source_version = source_version
        self.active_only = active_only

    def close(self) -> None:
        if self._conn:
            self._conn.close()

    def load_entries(self) -> List[ScheduleEntry]:
        query = f"SELECT {', '.join(_COLUMNS)} FROM {self.table} WHERE TRUE"
        params: List[Any] = []
        if self.source_version:
            query += " AND source_version = %s"
            params.append(self.source_version)
        if self.active_only:
            query += " AND is_active = TRUE"
        query += " ORDER BY hts_number"
        with self._conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(query, params)
            rows = cur.fetchall()
        self._conn.rollback()
        return [ScheduleEntry.from_record(row) for row in rows]

    @staticmethod
    def _adapt(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS:
            return Json(value) if value is not None else None
        if column == "footnotes" and isinstance(value, (list, dict)):
            return json.dumps(value, ensure_ascii=False)
        return value

    def save_entries(self, entries: Sequence[ScheduleEntry]) -> None:
        if not entries:
            return
        assignments = ", ".join(f"{column} = %s" for column in _UPDATE_COLUMNS)
        query = f"UPDATE {self.table} SET {assignments} WHERE hts_number = %s"
        values = []
        for entry in entries:
            record = entry.to_record()
            row = [self._adapt(column, record[column]) for column in _UPDATE_COLUMNS]
            row.append(entry.hts_number)
            values.append(tuple(row))
        with self._conn:
            with self._conn.cursor() as cur:
                execute_batch(cur, query, values, page_size=len(values))
