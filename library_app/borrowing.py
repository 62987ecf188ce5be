import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from library_app.catalog import CatalogStore
from library_app.database import Database, fits_integer, to_db_timestamp, utcnow
from library_app.errors import ConflictError, NotFoundError, ValidationError
from library_app.models import Borrowing, BorrowingStatus, Fine, FineStatus, FineType, OPEN_STATUSES
from library_app.schemas import BorrowRequest, FineCreate, parse_input

logger = logging.getLogger(__name__)

DEFAULT_LOAN_PERIOD_DAYS = 14
DEFAULT_FINE_DAILY_RATE = 0.5


class BorrowingLedger:
    """Loan records and their status transitions.

    ``active -> returned`` and ``overdue -> returned`` happen through
    ``return_item``; ``active -> overdue`` through ``sweep_overdue``. Nothing
    leaves ``returned``. Borrow and return change the item's availability via
    ``CatalogStore.adjust_availability`` inside the same transaction as the
    borrowing row, so the counter and the ledger never disagree.

    A late return also records an ``overdue`` fine of ``fine_daily_rate`` per
    started day past the due date, in the same transaction.
    """

    def __init__(
        self,
        db: Database,
        catalog: CatalogStore,
        loan_period_days: int = DEFAULT_LOAN_PERIOD_DAYS,
        clock: Callable[[], datetime] = utcnow,
        fine_daily_rate: float = DEFAULT_FINE_DAILY_RATE,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.loan_period_days = loan_period_days
        self.clock = clock
        self.fine_daily_rate = fine_daily_rate

    def borrow(self, user_id: str, item_id: int, loan_period_days: Optional[int] = None) -> Borrowing:
        request = parse_input(
            BorrowRequest,
            {"user_id": user_id, "item_id": item_id, "loan_period_days": loan_period_days},
        )
        days = request.loan_period_days or self.loan_period_days
        if days <= 0:
            raise ValidationError("Loan period must be at least one day.")

        with self.db.transaction() as conn:
            # raises NotFoundError before anything else is checked
            self.catalog.get_item(request.item_id, conn=conn)

            existing = conn.execute(
                "SELECT id FROM borrowings WHERE user_id = ? AND item_id = ? AND status IN (?, ?)",
                (request.user_id, request.item_id, *OPEN_STATUSES),
            ).fetchone()
            if existing:
                logger.warning(f"Duplicate loan rejected: user={request.user_id}, item={request.item_id}")
                raise ConflictError(
                    f"User {request.user_id} already has borrowing {existing['id']} for item {request.item_id}."
                )

            self.catalog.adjust_availability(request.item_id, -1, conn=conn)

            now = self.clock()
            due = now + timedelta(days=days)
            cursor = conn.execute(
                """
                INSERT INTO borrowings (user_id, item_id, borrow_date, due_date, status)
                VALUES (?, ?, ?, ?, ?)
                """,
                (request.user_id, request.item_id, to_db_timestamp(now), to_db_timestamp(due),
                 BorrowingStatus.ACTIVE.value),
            )
            borrowing = self._fetch_borrowing(conn, cursor.lastrowid)
        logger.info(
            f"Item {borrowing.item_id} borrowed by {borrowing.user_id}: "
            f"borrowing={borrowing.id}, due={borrowing.due_date.isoformat()}"
        )
        return borrowing

    def return_item(self, borrowing_id: int) -> Borrowing:
        with self.db.transaction() as conn:
            borrowing = self._fetch_borrowing(conn, borrowing_id)
            if borrowing.status == BorrowingStatus.RETURNED.value:
                logger.warning(f"Borrowing {borrowing_id} already returned")
                raise ConflictError(f"Borrowing {borrowing_id} has already been returned.")

            now = self.clock()
            conn.execute(
                "UPDATE borrowings SET status = ?, return_date = ? WHERE id = ?",
                (BorrowingStatus.RETURNED.value, to_db_timestamp(now), borrowing_id),
            )
            self.catalog.adjust_availability(borrowing.item_id, 1, conn=conn)
            returned = self._fetch_borrowing(conn, borrowing_id)

            days_late = overdue_days(borrowing.due_date, now)
            amount = round(days_late * self.fine_daily_rate, 2)
            if amount > 0:
                fine = self._insert_fine(conn, parse_input(FineCreate, {
                    "user_id": borrowing.user_id,
                    "amount": amount,
                    "reason": f"Item {borrowing.item_id} returned {days_late} day(s) late",
                    "fine_type": FineType.OVERDUE,
                    "borrowing_id": borrowing_id,
                    "overdue_days": days_late,
                }))
                logger.info(f"Fine {fine.id} of {fine.amount:.2f} recorded for {fine.user_id} (borrowing {borrowing_id})")
        logger.info(f"Borrowing {borrowing_id} returned (item {returned.item_id}, was {borrowing.status})")
        return returned

    def sweep_overdue(self, now: Optional[datetime] = None) -> List[Borrowing]:
        """Mark every active borrowing whose due date has passed as overdue.

        Copies stay out, so availability is untouched. Rows already overdue
        or returned are not matched, which makes repeated sweeps no-ops.
        """
        now = now or self.clock()
        cutoff = to_db_timestamp(now)
        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM borrowings WHERE status = ? AND due_date < ? ORDER BY id",
                (BorrowingStatus.ACTIVE.value, cutoff),
            ).fetchall()
            ids = [row["id"] for row in rows]
            if not ids:
                return []
            marks = ", ".join("?" for _ in ids)
            conn.execute(
                f"UPDATE borrowings SET status = ? WHERE status = ? AND id IN ({marks})",
                (BorrowingStatus.OVERDUE.value, BorrowingStatus.ACTIVE.value, *ids),
            )
            swept = [self._fetch_borrowing(conn, i) for i in ids]
        logger.info(f"Overdue sweep at {cutoff}: {len(swept)} borrowing(s) reclassified")
        return swept

    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        with self.db.connection() as conn:
            return self._fetch_borrowing(conn, borrowing_id)

    def list_borrowings(
        self,
        user_id: Optional[str] = None,
        item_id: Optional[int] = None,
        status: Optional[str] = None,
    ) -> List[Borrowing]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        if status:
            allowed = [s.value for s in BorrowingStatus]
            if status not in allowed:
                raise ValidationError(f"Invalid status. Allowed: {', '.join(allowed)}")
            clauses.append("status = ?")
            params.append(status)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.connection() as conn:
            rows = conn.execute(f"SELECT * FROM borrowings{where} ORDER BY borrow_date DESC, id DESC", params).fetchall()
        return [Borrowing.from_row(row) for row in rows]

    # ------------------------- Fines ------------------------- #
    def create_fine(self, payload) -> Fine:
        """Charge a user directly, e.g. for a damaged or lost copy."""
        data = parse_input(FineCreate, payload)
        with self.db.transaction() as conn:
            if data.borrowing_id is not None:
                borrowing = self._fetch_borrowing(conn, data.borrowing_id)
                if borrowing.user_id != data.user_id:
                    raise ValidationError(
                        f"Borrowing {borrowing.id} belongs to {borrowing.user_id}, not {data.user_id}."
                    )
            fine = self._insert_fine(conn, data)
        logger.info(f"Fine {fine.id} of {fine.amount:.2f} recorded for {fine.user_id} ({fine.fine_type})")
        return fine

    def get_fine(self, fine_id: int) -> Fine:
        with self.db.connection() as conn:
            return self._fetch_fine(conn, fine_id)

    def list_fines(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        borrowing_id: Optional[int] = None,
    ) -> List[Fine]:
        clauses, params = [], []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status:
            allowed = [s.value for s in FineStatus]
            if status not in allowed:
                raise ValidationError(f"Invalid status. Allowed: {', '.join(allowed)}")
            clauses.append("status = ?")
            params.append(status)
        if borrowing_id is not None:
            clauses.append("borrowing_id = ?")
            params.append(borrowing_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.connection() as conn:
            rows = conn.execute(f"SELECT * FROM fines{where} ORDER BY created_at DESC, id DESC", params).fetchall()
        return [Fine.from_row(row) for row in rows]

    def pay_fine(self, fine_id: int) -> Fine:
        with self.db.transaction() as conn:
            fine = self._fetch_fine(conn, fine_id)
            if fine.is_paid:
                logger.warning(f"Fine {fine_id} already paid")
                raise ConflictError(f"Fine {fine_id} has already been paid.")
            conn.execute(
                "UPDATE fines SET status = ?, paid_at = ? WHERE id = ?",
                (FineStatus.PAID.value, to_db_timestamp(self.clock()), fine_id),
            )
            paid = self._fetch_fine(conn, fine_id)
        logger.info(f"Fine {fine_id} paid by {paid.user_id}")
        return paid

    def _insert_fine(self, conn: sqlite3.Connection, data: FineCreate) -> Fine:
        cursor = conn.execute(
            """
            INSERT INTO fines (user_id, borrowing_id, amount, reason, fine_type, overdue_days, notes,
                               status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (data.user_id, data.borrowing_id, data.amount, data.reason, FineType(data.fine_type).value,
             data.overdue_days, data.notes, FineStatus.UNPAID.value, to_db_timestamp(self.clock())),
        )
        return self._fetch_fine(conn, cursor.lastrowid)

    @staticmethod
    def _fetch_fine(conn: sqlite3.Connection, fine_id: int) -> Fine:
        row = None
        if fits_integer(fine_id):
            row = conn.execute("SELECT * FROM fines WHERE id = ?", (fine_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Fine {fine_id} not found.")
        return Fine.from_row(row)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _fetch_borrowing(conn: sqlite3.Connection, borrowing_id: int) -> Borrowing:
        row = None
        if fits_integer(borrowing_id):
            row = conn.execute("SELECT * FROM borrowings WHERE id = ?", (borrowing_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Borrowing {borrowing_id} not found.")
        return Borrowing.from_row(row)


def overdue_days(due_date: datetime, returned_at: datetime) -> int:
    """Started days between the due date and the return; 0 when on time."""
    if returned_at <= due_date:
        return 0
    return math.ceil((returned_at - due_date) / timedelta(days=1))
