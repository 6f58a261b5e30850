"""
Google Sheets Audit Storage

DESIGN DECISION: Google Sheets is kept as an optional audit sink because:
1. Non-technical users can read the ledger's history directly in Sheets
2. No extra infrastructure beyond a service account

TRADEOFFS:
- No transactions, so ledger data itself never lives here; balances and
  transactions need the atomic units of the SQL backend
- Reads pull the whole sheet and filter in Python
- Appends are best-effort: a failed audit write never fails a ledger unit
"""

import json
from datetime import datetime
from typing import Optional
from uuid import UUID

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import retry, stop_after_attempt, wait_exponential

from src.config import GoogleSheetsSettings, get_settings
from src.models.audit import AuditEvent, AuditEventType, AuditSeverity
from src.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    StorageError,
)


logger = structlog.get_logger(__name__)

SCOPES = ["https://www.googleapis.com/auth/spreadsheets"]

# Column order matches AuditEvent.to_sheets_row()
AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "is_user_action",
]

_sheets_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


class GoogleSheetsClient:
    """
    Holds an authorized handle on the audit worksheet.

    The handle is opened lazily and cached. After a failed call the flow
    calls `reset()` so the next append re-authorizes from scratch, which
    matters for the long-running billing daemon whose token can expire.
    """

    def __init__(self, settings: Optional[GoogleSheetsSettings] = None):
        self._settings = settings or get_settings().google_sheets
        self._worksheet: Optional[gspread.Worksheet] = None

    def _open_spreadsheet(self) -> gspread.Spreadsheet:
        path = self._settings.credentials_path
        try:
            credentials = Credentials.from_service_account_file(path, scopes=SCOPES)
        except FileNotFoundError:
            raise ConnectionError(f"Google credentials file not found: {path}")

        try:
            return gspread.authorize(credentials).open_by_key(self._settings.spreadsheet_id)
        except gspread.SpreadsheetNotFound:
            raise ConnectionError(f"Spreadsheet not found: {self._settings.spreadsheet_id}")
        except Exception as e:
            raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

    def _ensure_header(self, worksheet: gspread.Worksheet) -> None:
        header = worksheet.row_values(1)
        if not header:
            worksheet.append_row(AUDIT_COLUMNS)
        elif header != AUDIT_COLUMNS:
            logger.warning(
                "sheets_audit_header_mismatch",
                sheet=self._settings.audit_sheet_name,
                found=header,
            )

    @_sheets_retry
    def audit_worksheet(self) -> gspread.Worksheet:
        """The audit worksheet, created with its header row if missing."""
        if self._worksheet is not None:
            return self._worksheet

        spreadsheet = self._open_spreadsheet()
        name = self._settings.audit_sheet_name
        try:
            worksheet = spreadsheet.worksheet(name)
        except gspread.WorksheetNotFound:
            logger.info("sheets_audit_sheet_created", sheet=name)
            worksheet = spreadsheet.add_worksheet(
                title=name,
                rows=5000,
                cols=len(AUDIT_COLUMNS),
            )
        self._ensure_header(worksheet)

        self._worksheet = worksheet
        return worksheet

    def reset(self) -> None:
        self._worksheet = None


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Append-only audit log, one event per row.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    @staticmethod
    def _row_to_event(row: list) -> AuditEvent:
        """Parse one sheet row, keyed by AUDIT_COLUMNS."""
        cells = dict(zip(AUDIT_COLUMNS, row))

        def uuid_or_none(column: str) -> Optional[UUID]:
            value = cells.get(column)
            return UUID(value) if value else None

        details = cells.get("details_json")
        return AuditEvent(
            event_id=UUID(cells["event_id"]),
            timestamp=datetime.fromisoformat(cells["timestamp"]),
            event_type=AuditEventType(cells["event_type"]),
            severity=AuditSeverity(cells["severity"]),
            entity_type=cells.get("entity_type") or None,
            entity_id=uuid_or_none("entity_id"),
            correlation_id=uuid_or_none("correlation_id"),
            description=cells.get("description", ""),
            details=json.loads(details) if details else {},
            error_message=cells.get("error_message") or None,
            is_user_action=cells.get("is_user_action", "").lower() == "true",
        )

    @_sheets_retry
    def _append_row(self, row: list) -> None:
        self._client.audit_worksheet().append_row(row, value_input_option="RAW")

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event. Returns False instead of raising on failure."""
        try:
            self._append_row(event.to_sheets_row())
            return True
        except Exception as e:
            self._client.reset()
            logger.warning(
                "sheets_audit_append_failed",
                event_id=str(event.event_id),
                event_type=event.event_type.value,
                error=str(e),
            )
            return False

    def _read_events(self) -> list[AuditEvent]:
        try:
            rows = self._client.audit_worksheet().get_all_values()
        except Exception as e:
            raise StorageError(f"Failed to read audit events: {e}")

        events = []
        for row in rows[1:]:
            if not row or not row[0]:
                continue
            try:
                events.append(self._row_to_event(row))
            except (KeyError, ValueError) as e:
                logger.debug("sheets_audit_row_skipped", event_id=row[0], error=str(e))
        return events

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Every event of one billing run or user action, oldest first."""
        events = [e for e in self._read_events() if e.correlation_id == correlation_id]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: UUID,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._read_events()
            if (e.entity_type, e.entity_id) == (entity_type, entity_id)
        ]
        return sorted(events, key=lambda e: e.timestamp)

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._read_events(), key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
