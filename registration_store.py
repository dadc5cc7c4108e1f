"""
Registration Storage
====================

Storage backends for the topic registration workflow.

Two tables are kept:
- Registrations: append-only, one row per accepted student
- Teams: derived per-team aggregate, updated by (Topic, TeamNumber) key

The in-memory store is used by tests; the Excel store persists both tables
as sheets of a single .xlsx workbook.
"""

import math
import os
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd


# =============================================================================
# Table Layout
# =============================================================================

REGISTRATIONS_SHEET = 'Registrations'
TEAMS_SHEET = 'Teams'

REGISTRATION_COLUMNS = [
    'Timestamp', 'Name', 'Matricule', 'Email', 'GitHubUsername',
    'Topic', 'TeamNumber', 'SubProject',
]
TEAM_COLUMNS = ['Topic', 'TeamNumber', 'MemberCount', 'SubProjectsAssigned']

# Integer columns come back from Excel as floats or numpy ints
INTEGER_COLUMNS = {'TeamNumber', 'MemberCount'}


class StoreError(Exception):
    """Base error for storage backends."""


class TableNotFoundError(StoreError):
    """Raised when an expected table is absent."""


def team_key(record: dict) -> Tuple[str, int]:
    """Key of a team aggregate row."""
    return record['Topic'], int(record['TeamNumber'])


def to_python_value(value, column: Optional[str] = None):
    """
    Coerce a cell value read back through pandas into a plain Python value.
    NaN and None become empty strings; integer columns become int.
    """
    if value is None:
        return ''
    if isinstance(value, float) and math.isnan(value):
        return ''
    try:
        if pd.isna(value):
            return ''
    except (TypeError, ValueError):
        pass  # pd.isna is ambiguous for list-like values
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    if isinstance(value, (np.integer, np.floating)):
        value = value.item()
    if column in INTEGER_COLUMNS:
        try:
            return int(value)
        except (TypeError, ValueError):
            return value
    return value


# =============================================================================
# Store Interface
# =============================================================================

class RegistrationStore:
    """
    Interface shared by all storage backends.

    Rows are plain dicts keyed by the column names in REGISTRATION_COLUMNS
    and TEAM_COLUMNS.
    """

    def table_exists(self) -> bool:
        raise NotImplementedError

    def registrations(self) -> List[dict]:
        """Return every registration row in insertion order."""
        raise NotImplementedError

    def append_registration(self, row: dict):
        """Append a row, creating the table if it does not exist yet."""
        raise NotImplementedError

    def teams(self) -> List[dict]:
        raise NotImplementedError

    def put_team(self, record: dict):
        """Insert or replace the aggregate row for (Topic, TeamNumber)."""
        raise NotImplementedError

    def require_registrations(self) -> List[dict]:
        """Like registrations(), but the table must exist."""
        if not self.table_exists():
            raise TableNotFoundError(f"{REGISTRATIONS_SHEET} sheet not found.")
        return self.registrations()


class InMemoryRegistrationStore(RegistrationStore):
    """Store that keeps both tables in process memory."""

    def __init__(self, rows: Optional[List[dict]] = None):
        self._rows = None if rows is None else [dict(r) for r in rows]
        self._teams: Dict[Tuple[str, int], dict] = {}

    def table_exists(self) -> bool:
        return self._rows is not None

    def registrations(self) -> List[dict]:
        return [dict(r) for r in (self._rows or [])]

    def append_registration(self, row: dict):
        if self._rows is None:
            self._rows = []
        self._rows.append({col: row.get(col, '') for col in REGISTRATION_COLUMNS})

    def teams(self) -> List[dict]:
        return [dict(t) for t in self._teams.values()]

    def put_team(self, record: dict):
        self._teams[team_key(record)] = {col: record.get(col, '') for col in TEAM_COLUMNS}


class ExcelRegistrationStore(RegistrationStore):
    """
    Store backed by an Excel workbook.

    Each write rewrites the whole workbook; at this scale (a few hundred rows)
    that is simpler than patching cells and keeps both sheets consistent.

    Args:
        path: Location of the .xlsx file. It is created on first write.
    """

    def __init__(self, path: str):
        self.path = path

    def _read_sheets(self) -> Dict[str, pd.DataFrame]:
        if not os.path.exists(self.path):
            return {}
        return pd.read_excel(self.path, sheet_name=None, engine='openpyxl', dtype=object,
                             keep_default_na=False)

    def _records(self, sheet_name: str, columns: List[str]) -> List[dict]:
        sheets = self._read_sheets()
        df = sheets.get(sheet_name)
        if df is None:
            return []
        records = []
        for _, row in df.iterrows():
            records.append({col: to_python_value(row.get(col), col) for col in columns})
        return records

    def _write(self, registrations: List[dict], teams: List[dict]):
        df_registrations = pd.DataFrame(registrations, columns=REGISTRATION_COLUMNS)
        df_teams = pd.DataFrame(teams, columns=TEAM_COLUMNS)

        folder = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(folder, exist_ok=True)

        with pd.ExcelWriter(self.path, engine='openpyxl') as writer:
            df_registrations.to_excel(writer, sheet_name=REGISTRATIONS_SHEET, index=False)
            df_teams.to_excel(writer, sheet_name=TEAMS_SHEET, index=False)

    def table_exists(self) -> bool:
        return REGISTRATIONS_SHEET in self._read_sheets()

    def registrations(self) -> List[dict]:
        return self._records(REGISTRATIONS_SHEET, REGISTRATION_COLUMNS)

    def append_registration(self, row: dict):
        rows = self.registrations()
        rows.append({col: row.get(col, '') for col in REGISTRATION_COLUMNS})
        self._write(rows, self.teams())

    def teams(self) -> List[dict]:
        return self._records(TEAMS_SHEET, TEAM_COLUMNS)

    def put_team(self, record: dict):
        key = team_key(record)
        teams = self.teams()
        updated = {col: record.get(col, '') for col in TEAM_COLUMNS}
        for i, existing in enumerate(teams):
            if team_key(existing) == key:
                teams[i] = updated
                break
        else:
            teams.append(updated)
        self._write(self.registrations(), teams)
