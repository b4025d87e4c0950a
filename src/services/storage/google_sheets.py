"""
Google Sheets Storage Implementation

DESIGN DECISION: Google Sheets is used as the shared backend because:
1. Housemates can look at the raw records directly in Sheets
2. No database setup required
3. Built-in backup (Google's infrastructure)
4. Easy to export/migrate later

TRADEOFFS:
- Not suitable for high-volume data (a household is fine)
- No transactions: writes are serialized per group in-process through
  group_write_lock, and every settlement is validated against a snapshot
  read inside that lock
- Limited query capabilities (we filter in Python)

Splits are stored as a JSON column on the expense row, so an expense
and its splits are always written (and deleted) together in one row.
"""

import json
from datetime import datetime
from typing import Optional

import gspread
import structlog
from google.oauth2.service_account import Credentials
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.config import get_settings
from src.models.audit import AuditEvent, AuditEventType, AuditSeverity
from src.models.ledger import (
    Expense,
    ExpenseCategory,
    InconsistencyKind,
    LedgerInconsistency,
    LedgerSnapshot,
    Member,
    PaymentMethod,
    Settlement,
    Split,
    UndoAction,
    UndoActionType,
)
from src.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    LedgerStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger(__name__)


MEMBER_COLUMNS = [
    "id",
    "group_id",
    "display_name",
    "avatar_url",
    "is_admin",
    "joined_at",
]

EXPENSE_COLUMNS = [
    "id",
    "group_id",
    "description",
    "paid_by_id",
    "amount_cents",
    "month",
    "category",
    "notes",
    "is_recurring",
    "recurring_id",
    "created_at",
    "splits_json",
]

SETTLEMENT_COLUMNS = [
    "id",
    "group_id",
    "from_member_id",
    "to_member_id",
    "amount_cents",
    "month",
    "payment_method",
    "created_at",
]

CLOSED_MONTH_COLUMNS = [
    "group_id",
    "month",
    "closed_at",
]

UNDO_COLUMNS = [
    "id",
    "group_id",
    "member_id",
    "action_type",
    "entity_id",
    "entity_data_json",
    "created_at",
    "expires_at",
    "can_undo",
]

AUDIT_COLUMNS = [
    "event_id",
    "timestamp",
    "event_type",
    "severity",
    "group_id",
    "entity_type",
    "entity_id",
    "correlation_id",
    "description",
    "details_json",
    "error_message",
    "actor_id",
]


def _safe_get(row: list, index: int, default: str = "") -> str:
    """Handle short rows (Sheets drops trailing empty cells)."""
    try:
        return row[index] if row[index] else default
    except IndexError:
        return default


class GoogleSheetsClient:
    """
    Low-level Google Sheets client wrapper.

    Handles authentication and provides retry logic for API calls.
    """

    def __init__(self):
        self._client: Optional[gspread.Client] = None
        self._spreadsheet: Optional[gspread.Spreadsheet] = None
        self._settings = get_settings().google_sheets

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def connect(self) -> gspread.Client:
        """
        Establish connection to Google Sheets.

        Uses service account credentials for authentication.
        """
        if self._client is None:
            try:
                scopes = [
                    "https://www.googleapis.com/auth/spreadsheets",
                    "https://www.googleapis.com/auth/drive",
                ]
                credentials = Credentials.from_service_account_file(
                    self._settings.credentials_path,
                    scopes=scopes,
                )
                self._client = gspread.authorize(credentials)
            except FileNotFoundError:
                raise ConnectionError(
                    f"Google credentials file not found: {self._settings.credentials_path}"
                )
            except Exception as e:
                raise ConnectionError(f"Failed to connect to Google Sheets: {e}")

        return self._client

    def get_spreadsheet(self) -> gspread.Spreadsheet:
        """Get the configured spreadsheet."""
        if self._spreadsheet is None:
            client = self.connect()
            try:
                self._spreadsheet = client.open_by_key(
                    self._settings.spreadsheet_id
                )
            except gspread.SpreadsheetNotFound:
                raise ConnectionError(
                    f"Spreadsheet not found: {self._settings.spreadsheet_id}"
                )
        return self._spreadsheet

    def _get_or_create_sheet(
        self,
        title: str,
        columns: list[str],
        rows: int = 1000,
    ) -> gspread.Worksheet:
        spreadsheet = self.get_spreadsheet()
        try:
            sheet = spreadsheet.worksheet(title)
        except gspread.WorksheetNotFound:
            # Create the sheet with headers
            sheet = spreadsheet.add_worksheet(
                title=title,
                rows=rows,
                cols=len(columns),
            )
            sheet.append_row(columns)
        return sheet

    def get_members_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(self._settings.members_sheet_name, MEMBER_COLUMNS)

    def get_expenses_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(self._settings.expenses_sheet_name, EXPENSE_COLUMNS)

    def get_settlements_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(
            self._settings.settlements_sheet_name, SETTLEMENT_COLUMNS
        )

    def get_closed_months_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(
            self._settings.closed_months_sheet_name, CLOSED_MONTH_COLUMNS, rows=200
        )

    def get_undo_sheet(self) -> gspread.Worksheet:
        return self._get_or_create_sheet(self._settings.undo_sheet_name, UNDO_COLUMNS)

    def get_audit_sheet(self) -> gspread.Worksheet:
        # More rows for audit log
        return self._get_or_create_sheet(
            self._settings.audit_sheet_name, AUDIT_COLUMNS, rows=5000
        )


class GoogleSheetsLedgerStorage(LedgerStorageInterface):
    """
    Google Sheets implementation of ledger storage.

    One row per member, expense, settlement, closed month and undo action.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    # -- Row mapping ----------------------------------------------------------

    def _member_to_row(self, member: Member) -> list:
        return [
            member.id,
            member.group_id or "",
            member.display_name,
            member.avatar_url or "",
            str(member.is_admin),
            member.joined_at.isoformat(),
        ]

    def _row_to_member(self, row: list) -> Member:
        return Member(
            id=_safe_get(row, 0),
            group_id=_safe_get(row, 1) or None,
            display_name=_safe_get(row, 2),
            avatar_url=_safe_get(row, 3) or None,
            is_admin=_safe_get(row, 4).lower() == "true",
            joined_at=datetime.fromisoformat(_safe_get(row, 5)),
        )

    def _expense_to_row(self, expense: Expense) -> list:
        return [
            expense.id,
            expense.group_id,
            expense.description,
            expense.paid_by_id,
            str(expense.amount_cents),
            expense.month,
            expense.category.value,
            expense.notes or "",
            str(expense.is_recurring),
            expense.recurring_id or "",
            expense.created_at.isoformat(),
            json.dumps([split.model_dump() for split in expense.splits]),
        ]

    def _row_to_expense(self, row: list) -> Expense:
        splits_json = _safe_get(row, 11)
        splits = []
        if splits_json:
            splits = [
                Split(member_id=item["member_id"], share_cents=int(item["share_cents"]))
                for item in json.loads(splits_json)
            ]

        return Expense(
            id=_safe_get(row, 0),
            group_id=_safe_get(row, 1),
            description=_safe_get(row, 2),
            paid_by_id=_safe_get(row, 3),
            amount_cents=int(_safe_get(row, 4)),
            month=_safe_get(row, 5),
            category=ExpenseCategory(_safe_get(row, 6, "other")),
            notes=_safe_get(row, 7) or None,
            is_recurring=_safe_get(row, 8).lower() == "true",
            recurring_id=_safe_get(row, 9) or None,
            created_at=datetime.fromisoformat(_safe_get(row, 10)),
            splits=splits,
        )

    def _settlement_to_row(self, settlement: Settlement) -> list:
        return [
            settlement.id,
            settlement.group_id,
            settlement.from_member_id,
            settlement.to_member_id,
            str(settlement.amount_cents),
            settlement.month,
            settlement.payment_method.value,
            settlement.created_at.isoformat(),
        ]

    def _row_to_settlement(self, row: list) -> Settlement:
        return Settlement(
            id=_safe_get(row, 0),
            group_id=_safe_get(row, 1),
            from_member_id=_safe_get(row, 2),
            to_member_id=_safe_get(row, 3),
            amount_cents=int(_safe_get(row, 4)),
            month=_safe_get(row, 5),
            payment_method=PaymentMethod(_safe_get(row, 6, "cash")),
            created_at=datetime.fromisoformat(_safe_get(row, 7)),
        )

    def _find_row(self, sheet: gspread.Worksheet, record_id: str) -> Optional[int]:
        """1-based sheet row index of a record, or None."""
        all_rows = sheet.get_all_values()
        for idx, row in enumerate(all_rows[1:], start=2):  # Row 1 is header
            if row and row[0] == record_id:
                return idx
        return None

    def _read_rows(
        self,
        sheet: gspread.Worksheet,
        parse,
        kind: str,
        group_id: str,
        unreadable: Optional[list[LedgerInconsistency]] = None,
    ) -> list:
        """
        Parse the data rows of one group.

        A row that no longer parses is corrupted data. Without an
        ``unreadable`` list we fail loudly instead of silently dropping
        money from the ledger; with one, the row is reported there and
        the rest of the group stays readable.
        """
        records = []
        for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
            if not row or not row[0]:  # Skip empty rows
                continue
            if _safe_get(row, 1) != group_id:
                continue
            try:
                records.append(parse(row))
            except Exception as e:
                message = f"Malformed {kind} row {idx}: {e}"
                if unreadable is None:
                    raise StorageError(message)
                logger.error("unreadable_row", kind=kind, row=idx, error=str(e))
                unreadable.append(LedgerInconsistency(
                    kind=InconsistencyKind.UNREADABLE_RECORD,
                    entity_type=kind,
                    entity_id=row[0],
                    message=message,
                ))
        return records

    def _load(self, get_sheet, parse, kind: str, group_id: str, unreadable=None) -> list:
        try:
            sheet = get_sheet()
            return self._read_rows(sheet, parse, kind, group_id, unreadable)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list {kind}s: {e}")

    def _load_members(self, group_id: str, unreadable=None) -> list[Member]:
        members = self._load(
            self._client.get_members_sheet, self._row_to_member, "member",
            group_id, unreadable,
        )
        members.sort(key=lambda m: (m.joined_at, m.id))
        return members

    def _load_expenses(self, group_id: str, unreadable=None) -> list[Expense]:
        expenses = self._load(
            self._client.get_expenses_sheet, self._row_to_expense, "expense",
            group_id, unreadable,
        )
        # Newest first
        expenses.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return expenses

    def _load_settlements(self, group_id: str, unreadable=None) -> list[Settlement]:
        settlements = self._load(
            self._client.get_settlements_sheet, self._row_to_settlement, "settlement",
            group_id, unreadable,
        )
        settlements.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        return settlements

    async def get_snapshot(self, group_id: str) -> LedgerSnapshot:
        """One read of the group; rows that no longer parse are reported."""
        unreadable: list[LedgerInconsistency] = []
        return LedgerSnapshot(
            group_id=group_id,
            members=self._load_members(group_id, unreadable),
            expenses=self._load_expenses(group_id, unreadable),
            settlements=self._load_settlements(group_id, unreadable),
            closed_months=await self.list_closed_months(group_id),
            unreadable_records=unreadable,
        )

    # -- Members --------------------------------------------------------------

    async def list_members(self, group_id: str) -> list[Member]:
        return self._load_members(group_id)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(DuplicateError),
        reraise=True,
    )
    async def save_member(self, member: Member) -> bool:
        try:
            sheet = self._client.get_members_sheet()
            if self._find_row(sheet, member.id) is not None:
                raise DuplicateError(f"Member already exists: {member.id}")
            sheet.append_row(self._member_to_row(member), value_input_option="RAW")
            return True
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save member: {e}")

    async def delete_member(self, member_id: str) -> bool:
        try:
            sheet = self._client.get_members_sheet()
            idx = self._find_row(sheet, member_id)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete member: {e}")

    # -- Expenses -------------------------------------------------------------

    async def list_expenses(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Expense]:
        expenses = self._load_expenses(group_id)
        return [e for e in expenses if month is None or e.month == month]

    async def get_expense(self, expense_id: str) -> Optional[Expense]:
        try:
            sheet = self._client.get_expenses_sheet()
            for row in sheet.get_all_values()[1:]:
                if row and row[0] == expense_id:
                    return self._row_to_expense(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get expense: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(DuplicateError),
        reraise=True,
    )
    async def save_expense(self, expense: Expense) -> bool:
        """Save an expense (with its splits) as one row."""
        try:
            sheet = self._client.get_expenses_sheet()
            if self._find_row(sheet, expense.id) is not None:
                raise DuplicateError(f"Expense already exists: {expense.id}")
            sheet.append_row(self._expense_to_row(expense), value_input_option="RAW")
            return True
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save expense: {e}")

    async def update_expense(self, expense: Expense) -> bool:
        try:
            sheet = self._client.get_expenses_sheet()
            idx = self._find_row(sheet, expense.id)
            if idx is None:
                raise NotFoundError(f"Expense not found: {expense.id}")

            new_row = self._expense_to_row(expense)
            for col_idx, value in enumerate(new_row, start=1):
                sheet.update_cell(idx, col_idx, value)
            return True
        except NotFoundError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to update expense: {e}")

    async def delete_expense(self, expense_id: str) -> bool:
        try:
            sheet = self._client.get_expenses_sheet()
            idx = self._find_row(sheet, expense_id)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete expense: {e}")

    # -- Settlements ----------------------------------------------------------

    async def list_settlements(
        self,
        group_id: str,
        month: Optional[str] = None,
    ) -> list[Settlement]:
        settlements = self._load_settlements(group_id)
        return [s for s in settlements if month is None or s.month == month]

    async def get_settlement(self, settlement_id: str) -> Optional[Settlement]:
        try:
            sheet = self._client.get_settlements_sheet()
            for row in sheet.get_all_values()[1:]:
                if row and row[0] == settlement_id:
                    return self._row_to_settlement(row)
            return None
        except Exception as e:
            raise StorageError(f"Failed to get settlement: {e}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(DuplicateError),
        reraise=True,
    )
    async def save_settlement(self, settlement: Settlement) -> bool:
        try:
            sheet = self._client.get_settlements_sheet()
            if self._find_row(sheet, settlement.id) is not None:
                raise DuplicateError(f"Settlement already exists: {settlement.id}")
            sheet.append_row(self._settlement_to_row(settlement), value_input_option="RAW")
            return True
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save settlement: {e}")

    async def delete_settlement(self, settlement_id: str) -> bool:
        try:
            sheet = self._client.get_settlements_sheet()
            idx = self._find_row(sheet, settlement_id)
            if idx is None:
                return False
            sheet.delete_rows(idx)
            return True
        except Exception as e:
            raise StorageError(f"Failed to delete settlement: {e}")

    # -- Closed months --------------------------------------------------------

    async def list_closed_months(self, group_id: str) -> list[str]:
        try:
            sheet = self._client.get_closed_months_sheet()
            months = [
                row[1] for row in sheet.get_all_values()[1:]
                if len(row) > 1 and row[0] == group_id
            ]
        except Exception as e:
            raise StorageError(f"Failed to list closed months: {e}")
        return sorted(months, reverse=True)

    async def close_month(self, group_id: str, month: str) -> bool:
        if month in await self.list_closed_months(group_id):
            raise DuplicateError(f"Month is already closed: {month}")
        try:
            sheet = self._client.get_closed_months_sheet()
            sheet.append_row(
                [group_id, month, datetime.utcnow().isoformat()],
                value_input_option="RAW",
            )
            return True
        except Exception as e:
            raise StorageError(f"Failed to close month: {e}")

    async def reopen_month(self, group_id: str, month: str) -> bool:
        try:
            sheet = self._client.get_closed_months_sheet()
            for idx, row in enumerate(sheet.get_all_values()[1:], start=2):
                if len(row) > 1 and row[0] == group_id and row[1] == month:
                    sheet.delete_rows(idx)
                    return True
            return False
        except Exception as e:
            raise StorageError(f"Failed to reopen month: {e}")

    # -- Undo history ---------------------------------------------------------

    def _undo_to_row(self, action: UndoAction) -> list:
        return [
            action.id,
            action.group_id,
            action.member_id,
            action.action_type.value,
            action.entity_id,
            json.dumps(action.entity_data),
            action.created_at.isoformat(),
            action.expires_at.isoformat(),
            str(action.can_undo),
        ]

    def _row_to_undo(self, row: list) -> UndoAction:
        return UndoAction(
            id=_safe_get(row, 0),
            group_id=_safe_get(row, 1),
            member_id=_safe_get(row, 2),
            action_type=UndoActionType(_safe_get(row, 3)),
            entity_id=_safe_get(row, 4),
            entity_data=json.loads(_safe_get(row, 5, "{}")),
            created_at=datetime.fromisoformat(_safe_get(row, 6)),
            expires_at=datetime.fromisoformat(_safe_get(row, 7)),
            can_undo=_safe_get(row, 8).lower() == "true",
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_not_exception_type(DuplicateError),
        reraise=True,
    )
    async def save_undo_action(self, action: UndoAction) -> bool:
        try:
            sheet = self._client.get_undo_sheet()
            if self._find_row(sheet, action.id) is not None:
                raise DuplicateError(f"Undo action already exists: {action.id}")
            sheet.append_row(self._undo_to_row(action), value_input_option="RAW")
            return True
        except DuplicateError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to save undo action: {e}")

    async def get_latest_undo_action(
        self,
        group_id: str,
        member_id: str,
        now: datetime,
    ) -> Optional[UndoAction]:
        try:
            sheet = self._client.get_undo_sheet()
            rows = sheet.get_all_values()[1:]
            # Rows are appended, so the newest is at the bottom
            for row in reversed(rows):
                if not row or _safe_get(row, 1) != group_id or _safe_get(row, 2) != member_id:
                    continue
                action = self._row_to_undo(row)
                if action.is_available(now):
                    return action
            return None
        except Exception as e:
            raise StorageError(f"Failed to read undo history: {e}")

    async def mark_undo_used(self, action_id: str) -> bool:
        try:
            sheet = self._client.get_undo_sheet()
            idx = self._find_row(sheet, action_id)
            if idx is None:
                return False
            sheet.update_cell(idx, UNDO_COLUMNS.index("can_undo") + 1, "False")
            return True
        except Exception as e:
            raise StorageError(f"Failed to update undo history: {e}")


class GoogleSheetsAuditStorage(AuditStorageInterface):
    """
    Google Sheets implementation of audit log storage.

    Audit events are append-only.
    """

    def __init__(self, client: Optional[GoogleSheetsClient] = None):
        self._client = client or GoogleSheetsClient()

    def _row_to_event(self, row: list) -> AuditEvent:
        """Convert a spreadsheet row to an AuditEvent."""
        details_json = _safe_get(row, 9)
        return AuditEvent(
            event_id=_safe_get(row, 0),
            timestamp=datetime.fromisoformat(_safe_get(row, 1)),
            event_type=AuditEventType(_safe_get(row, 2)),
            severity=AuditSeverity(_safe_get(row, 3)),
            group_id=_safe_get(row, 4) or None,
            entity_type=_safe_get(row, 5) or None,
            entity_id=_safe_get(row, 6) or None,
            correlation_id=_safe_get(row, 7) or None,
            description=_safe_get(row, 8),
            details=json.loads(details_json) if details_json else {},
            error_message=_safe_get(row, 10) or None,
            actor_id=_safe_get(row, 11) or None,
        )

    def _read_events(self) -> list[AuditEvent]:
        sheet = self._client.get_audit_sheet()
        events = []
        for row in sheet.get_all_values()[1:]:
            if row and row[0]:
                try:
                    events.append(self._row_to_event(row))
                except Exception:
                    # Audit rows are informational, a bad one is skipped
                    continue
        return events

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            sheet = self._client.get_audit_sheet()
            sheet.append_row(event.to_sheets_row(), value_input_option="RAW")
            return True
        except Exception as e:
            raise StorageError(f"Failed to write audit event: {e}")

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._read_events()
                if e.entity_type == entity_type and e.entity_id == entity_id
            ]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        group_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        try:
            events = [
                e for e in self._read_events()
                if group_id is None or e.group_id == group_id
            ]
        except Exception as e:
            raise StorageError(f"Failed to get audit events: {e}")
        # Sort newest first
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
