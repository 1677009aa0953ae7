"""PostgreSQL-backed storage with automatic table migration.

Each record is stored as a JSONB document next to the columns that queries
and constraints need. Conditional transitions lock the row with
``SELECT ... FOR UPDATE`` so the compare and the write happen in one
transaction.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Collection
from datetime import UTC, datetime
from typing import Any

from task_marketplace.domain.models import Booking, Task
from task_marketplace.geo.distance import BoundingBox
from task_marketplace.storage.base import TransitionResult, apply_patch, expectation_met

logger = logging.getLogger(__name__)


class PostgresMarketplaceStorage:
    """Persist Tasks and Bookings in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("MARKETPLACE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    converted_to_booking_id TEXT UNIQUE,
                    is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
                    document JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_customer_status
                ON tasks(customer_id, status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_status_created
                ON tasks(status, created_at DESC)
                WHERE NOT is_deleted
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_matched_providers
                ON tasks USING GIN ((document->'matched_providers') jsonb_path_ops)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bookings (
                    booking_id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL REFERENCES tasks(task_id),
                    client_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    document JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            # At most one live booking per task.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_task
                ON bookings(task_id)
                WHERE status <> 'CANCELLED'
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_bookings_client_id
                ON bookings(client_id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_bookings_provider_id
                ON bookings(provider_id)
                """)
            conn.commit()

    # Tasks

    def create_task(self, task: Task) -> Task:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    customer_id,
                    status,
                    version,
                    converted_to_booking_id,
                    is_deleted,
                    document,
                    created_at,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                self._task_params(task),
            )
            conn.commit()
        return task.model_copy(deep=True)

    def get_task(self, task_id: str, *, include_deleted: bool = False) -> Task | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM tasks WHERE task_id = %s",
                (task_id,),
            ).fetchone()
        if row is None:
            return None
        task = self._row_to_task(row)
        if task.is_deleted and not include_deleted:
            return None
        return task

    def list_tasks_by_customer(
        self,
        customer_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        query = "SELECT document FROM tasks WHERE customer_id = %s AND NOT is_deleted"
        params: list[Any] = [customer_id]
        if statuses:
            query += " AND status = ANY(%s)"
            params.append(list(statuses))
        query += " ORDER BY created_at DESC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_tasks_in_area(self, box: BoundingBox, statuses: Collection[str]) -> list[Task]:
        query = """
            SELECT document FROM tasks
            WHERE NOT is_deleted
              AND status = ANY(%s)
              AND (document->'customer_location'->>'latitude')::double precision
                  BETWEEN %s AND %s
              AND (document->'customer_location'->>'longitude')::double precision
                  BETWEEN %s AND %s
            ORDER BY created_at DESC
        """
        params = [list(statuses), box.min_lat, box.max_lat, box.min_lon, box.max_lon]
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_tasks_by_matched_provider(
        self,
        provider_id: str,
        statuses: Collection[str] | None = None,
    ) -> list[Task]:
        query = (
            "SELECT document FROM tasks WHERE NOT is_deleted"
            " AND document->'matched_providers' @> %s::jsonb"
        )
        params: list[Any] = [self._json_wrapper([{"provider_id": provider_id}])]
        if statuses:
            query += " AND status = ANY(%s)"
            params.append(list(statuses))
        query += " ORDER BY created_at DESC"
        with self._lock, self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def transition_task(
        self,
        task_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Task]:
        with self._lock, self._connect() as conn:
            current = self._lock_task(conn, task_id)
            if current is None:
                conn.rollback()
                return TransitionResult(applied=False, record=None)
            if not expectation_met(
                current, expected_status=expected_status, expected_version=expected_version
            ):
                conn.rollback()
                return TransitionResult(applied=False, record=current)
            updated = apply_patch(current, new_status=new_status, fields=fields, now=_now())
            self._write_task(conn, updated)
            conn.commit()
        return TransitionResult(applied=True, record=updated)

    def soft_delete_task(
        self, task_id: str, *, expected_version: int | None = None
    ) -> TransitionResult[Task]:
        with self._lock, self._connect() as conn:
            current = self._lock_task(conn, task_id)
            if current is None:
                conn.rollback()
                return TransitionResult(applied=False, record=None)
            if current.is_deleted or (
                expected_version is not None and current.version != expected_version
            ):
                conn.rollback()
                return TransitionResult(applied=False, record=current)
            now = _now()
            updated = apply_patch(
                current,
                new_status=current.status,
                fields={"is_deleted": True, "deleted_at": now},
                now=now,
            )
            self._write_task(conn, updated)
            conn.commit()
        return TransitionResult(applied=True, record=updated)

    def restore_task(self, task_id: str) -> TransitionResult[Task]:
        with self._lock, self._connect() as conn:
            current = self._lock_task(conn, task_id)
            if current is None:
                conn.rollback()
                return TransitionResult(applied=False, record=None)
            if not current.is_deleted:
                conn.rollback()
                return TransitionResult(applied=False, record=current)
            updated = apply_patch(
                current,
                new_status=current.status,
                fields={"is_deleted": False, "deleted_at": None},
                now=_now(),
            )
            self._write_task(conn, updated)
            conn.commit()
        return TransitionResult(applied=True, record=updated)

    def convert_task(
        self,
        task_id: str,
        *,
        provider_id: str,
        booking: Booking,
    ) -> TransitionResult[Task]:
        with self._lock, self._connect() as conn:
            current = self._lock_task(conn, task_id)
            if current is None:
                conn.rollback()
                return TransitionResult(applied=False, record=None)
            if (
                current.status != "REQUESTED"
                or current.requested_provider_id != provider_id
                or current.converted_to_booking_id is not None
            ):
                conn.rollback()
                return TransitionResult(applied=False, record=current)
            updated = apply_patch(
                current,
                new_status="CONVERTED",
                fields={
                    "converted_to_booking_id": booking.booking_id,
                    "converted_at": booking.created_at,
                },
                now=booking.created_at,
            )
            try:
                self._write_task(conn, updated)
                self._insert_booking(conn, booking)
            except self._psycopg.errors.UniqueViolation:
                conn.rollback()
                logger.warning(
                    "storage event=convert_conflict task_id=%s booking_id=%s",
                    task_id,
                    booking.booking_id,
                )
                latest = self._lock_task(conn, task_id)
                conn.rollback()
                return TransitionResult(applied=False, record=latest)
            conn.commit()
        return TransitionResult(applied=True, record=updated)

    # Bookings

    def create_booking(self, booking: Booking) -> Booking:
        with self._lock, self._connect() as conn:
            self._insert_booking(conn, booking)
            conn.commit()
        return booking.model_copy(deep=True)

    def get_booking(self, booking_id: str) -> Booking | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM bookings WHERE booking_id = %s",
                (booking_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_booking(row)

    def list_bookings(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> list[Booking]:
        where, params = self._party_filter(client_id=client_id, provider_id=provider_id)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT document FROM bookings{where} ORDER BY created_at DESC",
                params,
            ).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def transition_booking(
        self,
        booking_id: str,
        *,
        expected_status: str,
        new_status: str,
        fields: dict[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> TransitionResult[Booking]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM bookings WHERE booking_id = %s FOR UPDATE",
                (booking_id,),
            ).fetchone()
            if row is None:
                conn.rollback()
                return TransitionResult(applied=False, record=None)
            current = self._row_to_booking(row)
            if not expectation_met(
                current, expected_status=expected_status, expected_version=expected_version
            ):
                conn.rollback()
                return TransitionResult(applied=False, record=current)
            updated = apply_patch(current, new_status=new_status, fields=fields, now=_now())
            conn.execute(
                """
                UPDATE bookings
                SET status = %s,
                    version = %s,
                    document = %s,
                    updated_at = %s
                WHERE booking_id = %s
                """,
                (
                    updated.status,
                    updated.version,
                    self._json_wrapper(updated.model_dump(mode="json")),
                    updated.updated_at,
                    updated.booking_id,
                ),
            )
            conn.commit()
        return TransitionResult(applied=True, record=updated)

    def count_bookings_by_status(
        self,
        *,
        client_id: str | None = None,
        provider_id: str | None = None,
    ) -> dict[str, int]:
        where, params = self._party_filter(client_id=client_id, provider_id=provider_id)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"SELECT status, COUNT(*) AS total FROM bookings{where} GROUP BY status",
                params,
            ).fetchall()
        return {str(row["status"]): int(row["total"]) for row in rows}

    # Internals

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _lock_task(self, conn: Any, task_id: str) -> Task | None:
        row = conn.execute(
            "SELECT document FROM tasks WHERE task_id = %s FOR UPDATE",
            (task_id,),
        ).fetchone()
        return self._row_to_task(row) if row is not None else None

    def _write_task(self, conn: Any, task: Task) -> None:
        conn.execute(
            """
            UPDATE tasks
            SET status = %s,
                version = %s,
                converted_to_booking_id = %s,
                is_deleted = %s,
                document = %s,
                updated_at = %s
            WHERE task_id = %s
            """,
            (
                task.status,
                task.version,
                task.converted_to_booking_id,
                task.is_deleted,
                self._json_wrapper(task.model_dump(mode="json")),
                task.updated_at,
                task.task_id,
            ),
        )

    def _insert_booking(self, conn: Any, booking: Booking) -> None:
        conn.execute(
            """
            INSERT INTO bookings (
                booking_id,
                task_id,
                client_id,
                provider_id,
                status,
                version,
                document,
                created_at,
                updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                booking.booking_id,
                booking.task_id,
                booking.client_id,
                booking.provider_id,
                booking.status,
                booking.version,
                self._json_wrapper(booking.model_dump(mode="json")),
                booking.created_at,
                booking.updated_at,
            ),
        )

    def _task_params(self, task: Task) -> tuple[Any, ...]:
        return (
            task.task_id,
            task.customer_id,
            task.status,
            task.version,
            task.converted_to_booking_id,
            task.is_deleted,
            self._json_wrapper(task.model_dump(mode="json")),
            task.created_at,
            task.updated_at,
        )

    @staticmethod
    def _party_filter(
        *, client_id: str | None, provider_id: str | None
    ) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if client_id is not None:
            clauses.append("client_id = %s")
            params.append(client_id)
        if provider_id is not None:
            clauses.append("provider_id = %s")
            params.append(provider_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_document(raw: Any) -> dict[str, Any]:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, dict):
            raise TypeError(f"Unsupported document value: {type(raw)!r}")
        return parsed

    @classmethod
    def _row_to_task(cls, row: Any) -> Task:
        return Task.model_validate(cls._parse_document(row["document"]))

    @classmethod
    def _row_to_booking(cls, row: Any) -> Booking:
        return Booking.model_validate(cls._parse_document(row["document"]))


def _now() -> datetime:
    return datetime.now(tz=UTC)
