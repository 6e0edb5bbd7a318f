"""
SQLite-backed stores.

Every write runs inside a ``BEGIN IMMEDIATE`` transaction, so concurrent
commits from threads or processes sharing the database file never lose an
update. Money is stored as decimal text to keep exact arithmetic.
"""

import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

from model_gate.core.errors import (
    ApprovalAlreadyDecided,
    ApprovalNotFound,
    PersistenceFailure,
)
from model_gate.core.pricing import CostEstimate

from .db import DEFAULT_DB_PATH, get_connection, write_transaction
from .interface import ApprovalStore, UsageStore
from .models import ApprovalRecord, Disposition, UsageRecord

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS usage_record (
        period TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        total_cost TEXT NOT NULL,
        run_count INTEGER NOT NULL,
        total_tokens INTEGER NOT NULL,
        PRIMARY KEY (period, agent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_by_model (
        period TEXT NOT NULL,
        agent_id TEXT NOT NULL,
        model TEXT NOT NULL,
        cost TEXT NOT NULL,
        PRIMARY KEY (period, agent_id, model),
        FOREIGN KEY (period, agent_id) REFERENCES usage_record (period, agent_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approval_record (
        id TEXT PRIMARY KEY,
        agent_id TEXT NOT NULL,
        requested_model TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        amount TEXT NOT NULL,
        priced INTEGER NOT NULL,
        prompt_preview TEXT NOT NULL,
        created_at TEXT NOT NULL,
        disposition TEXT NOT NULL,
        reviewer TEXT,
        decided_at TEXT,
        reason TEXT NOT NULL DEFAULT '',
        review_note TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_approval_disposition
    ON approval_record (disposition, created_at)
    """,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger and approval tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    try:
        with write_transaction(db_path) as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
    except sqlite3.Error as e:
        raise PersistenceFailure(f"Could not initialize schema at {db_path}: {e}") from e


class SqliteUsageStore(UsageStore):
    """Usage ledger persisted in SQLite."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def get(self, period: str, agent_id: str) -> Optional[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            return self._load(conn, period, agent_id)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read usage for {period}/{agent_id}: {e}") from e
        finally:
            conn.close()

    def list_period(self, period: str) -> List[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT agent_id FROM usage_record WHERE period = ? ORDER BY agent_id",
                (period,)
            )
            agents = [row[0] for row in cursor.fetchall()]
            return [self._load(conn, period, agent_id) for agent_id in agents]
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read usage for {period}: {e}") from e
        finally:
            conn.close()

    def period_total(self, period: str) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            return self._period_total(conn, period)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read usage for {period}: {e}") from e
        finally:
            conn.close()

    def increment(
        self,
        periods: Sequence[str],
        agent_id: str,
        model: str,
        amount: Decimal,
        tokens: int,
        ceiling: Optional[Tuple[str, Decimal]] = None
    ) -> bool:
        try:
            with write_transaction(self.db_path) as conn:
                if ceiling is not None:
                    ceiling_period, limit = ceiling
                    if self._period_total(conn, ceiling_period) + amount > limit:
                        return False
                for period in dict.fromkeys(periods):
                    self._increment_one(conn, period, agent_id, model, amount, tokens)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not commit usage for {agent_id}: {e}") from e
        return True

    @staticmethod
    def _period_total(conn: sqlite3.Connection, period: str) -> Decimal:
        cursor = conn.execute(
            "SELECT total_cost FROM usage_record WHERE period = ?",
            (period,)
        )
        return sum((Decimal(row[0]) for row in cursor.fetchall()), Decimal("0"))

    @staticmethod
    def _increment_one(
        conn: sqlite3.Connection,
        period: str,
        agent_id: str,
        model: str,
        amount: Decimal,
        tokens: int
    ) -> None:
        row = conn.execute(
            "SELECT total_cost, run_count, total_tokens FROM usage_record "
            "WHERE period = ? AND agent_id = ?",
            (period, agent_id)
        ).fetchone()
        if row is None:
            conn.execute(
                "INSERT INTO usage_record (period, agent_id, total_cost, run_count, total_tokens) "
                "VALUES (?, ?, ?, 1, ?)",
                (period, agent_id, str(amount), tokens)
            )
        else:
            conn.execute(
                "UPDATE usage_record SET total_cost = ?, run_count = ?, total_tokens = ? "
                "WHERE period = ? AND agent_id = ?",
                (str(Decimal(row[0]) + amount), row[1] + 1, row[2] + tokens, period, agent_id)
            )

        model_row = conn.execute(
            "SELECT cost FROM usage_by_model WHERE period = ? AND agent_id = ? AND model = ?",
            (period, agent_id, model)
        ).fetchone()
        model_cost = amount if model_row is None else Decimal(model_row[0]) + amount
        conn.execute(
            "INSERT OR REPLACE INTO usage_by_model (period, agent_id, model, cost) "
            "VALUES (?, ?, ?, ?)",
            (period, agent_id, model, str(model_cost))
        )

    @staticmethod
    def _load(conn: sqlite3.Connection, period: str, agent_id: str) -> Optional[UsageRecord]:
        row = conn.execute(
            "SELECT total_cost, run_count, total_tokens FROM usage_record "
            "WHERE period = ? AND agent_id = ?",
            (period, agent_id)
        ).fetchone()
        if row is None:
            return None
        cursor = conn.execute(
            "SELECT model, cost FROM usage_by_model WHERE period = ? AND agent_id = ?",
            (period, agent_id)
        )
        return UsageRecord(
            period=period,
            agent_id=agent_id,
            total_cost=Decimal(row[0]),
            run_count=row[1],
            total_tokens=row[2],
            cost_by_model={model: Decimal(cost) for model, cost in cursor.fetchall()}
        )


class SqliteApprovalStore(ApprovalStore):
    """Approval queue persisted in SQLite."""

    _COLUMNS = (
        "id, agent_id, requested_model, input_tokens, output_tokens, amount, priced, "
        "prompt_preview, created_at, disposition, reviewer, decided_at, reason, review_note"
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def insert(self, record: ApprovalRecord) -> None:
        try:
            with write_transaction(self.db_path) as conn:
                conn.execute(
                    f"INSERT INTO approval_record ({self._COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.agent_id,
                        record.requested_model,
                        record.estimate.input_tokens,
                        record.estimate.output_tokens,
                        str(record.estimate.amount),
                        int(record.estimate.priced),
                        record.prompt_preview,
                        record.created_at.isoformat(),
                        record.disposition.value,
                        record.reviewer,
                        record.decided_at.isoformat() if record.decided_at else None,
                        record.reason,
                        record.review_note
                    )
                )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not enqueue approval {record.id}: {e}") from e

    def get(self, approval_id: str) -> Optional[ApprovalRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {self._COLUMNS} FROM approval_record WHERE id = ?",
                (approval_id,)
            ).fetchone()
            return self._from_row(row) if row else None
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not read approval {approval_id}: {e}") from e
        finally:
            conn.close()

    def list(self, disposition: Disposition) -> List[ApprovalRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {self._COLUMNS} FROM approval_record WHERE disposition = ? "
                "ORDER BY created_at, rowid",
                (disposition.value,)
            )
            return [self._from_row(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not list approvals: {e}") from e
        finally:
            conn.close()

    def transition(
        self,
        approval_id: str,
        disposition: Disposition,
        reviewer: Optional[str],
        decided_at: datetime,
        note: str = ""
    ) -> ApprovalRecord:
        try:
            with write_transaction(self.db_path) as conn:
                cursor = conn.execute(
                    "UPDATE approval_record SET disposition = ?, reviewer = ?, decided_at = ?, review_note = ? "
                    "WHERE id = ? AND disposition = ?",
                    (
                        disposition.value,
                        reviewer,
                        decided_at.isoformat(),
                        note,
                        approval_id,
                        Disposition.PENDING.value
                    )
                )
                updated = cursor.rowcount
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM approval_record WHERE id = ?",
                    (approval_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not decide approval {approval_id}: {e}") from e

        if row is None:
            raise ApprovalNotFound(approval_id)
        record = self._from_row(row)
        if updated != 1:
            raise ApprovalAlreadyDecided(approval_id, record.disposition.value)
        return record

    def reopen(self, approval_id: str, disposition: Disposition) -> ApprovalRecord:
        try:
            with write_transaction(self.db_path) as conn:
                cursor = conn.execute(
                    "UPDATE approval_record SET disposition = ?, reviewer = NULL, decided_at = NULL, "
                    "review_note = '' WHERE id = ? AND disposition = ?",
                    (Disposition.PENDING.value, approval_id, disposition.value)
                )
                updated = cursor.rowcount
                row = conn.execute(
                    f"SELECT {self._COLUMNS} FROM approval_record WHERE id = ?",
                    (approval_id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Could not reopen approval {approval_id}: {e}") from e

        if row is None:
            raise ApprovalNotFound(approval_id)
        record = self._from_row(row)
        if updated != 1:
            raise ApprovalAlreadyDecided(approval_id, record.disposition.value)
        return record

    @staticmethod
    def _from_row(row) -> ApprovalRecord:
        return ApprovalRecord(
            id=row[0],
            agent_id=row[1],
            requested_model=row[2],
            estimate=CostEstimate(
                model=row[2],
                input_tokens=row[3],
                output_tokens=row[4],
                amount=Decimal(row[5]),
                priced=bool(row[6])
            ),
            prompt_preview=row[7],
            created_at=datetime.fromisoformat(row[8]),
            disposition=Disposition(row[9]),
            reviewer=row[10],
            decided_at=datetime.fromisoformat(row[11]) if row[11] else None,
            reason=row[12],
            review_note=row[13]
        )
