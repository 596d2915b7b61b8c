# src/core/repositories/postgres.py
"""
Репозитории PostgreSQL.

Каждая коллекция хранится таблицей (id, version, data JSONB, created_at, updated_at).
Уникальные ключи заданы индексами по выражениям над data (см. migrations/init.sql).
Условное обновление блокирует строку через SELECT ... FOR UPDATE, сверяет
ожидаемые поля в Python и пишет новую версию в той же транзакции.
Перед повторной проверкой пересечений берётся транзакционный advisory lock
на ресурс, поэтому две записи для одной машины или водителя идут по очереди.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TypeVar

from asyncpg import Connection, Record

from src.common.clock import Clock, SystemClock
from src.common.constants import (
    ACTIVE_PAYMENT_STATUSES,
    DRIVER_BOOKING_BLOCKING_STATUSES,
    RESERVATION_BLOCKING_STATUSES,
    TERMINAL_PAYMENT_STATUSES,
    DriverBookingStatus,
    NotificationStatus,
)
from src.common.errors import ConflictError
from src.core.bookings.models import (
    DriverBooking,
    DriverBookingFilter,
    Reservation,
    ReservationFilter,
    intervals_overlap,
)
from src.core.chat.models import Conversation, Message
from src.core.notifications.models import Notification, NotificationFilter
from src.core.payments.models import Payment, PaymentFilter
from src.core.promos.models import PromoCode, normalize_code
from src.core.repositories.interfaces import (
    ConversationRepository,
    DocumentRepository,
    DriverBookingRepository,
    DriverProfileRepository,
    MessageRepository,
    NotificationRepository,
    PaymentRepository,
    PromoCodeRepository,
    Repositories,
    ReservationRepository,
    TrackerRepository,
    UserRepository,
    VehicleRepository,
)
from src.core.repositories.memory import apply_changes, matches_expected
from src.core.tracking.models import TrackerFilter, VehicleTracker
from src.core.users.models import DriverProfile, User, Vehicle
from src.infra.database import DatabaseManager, advisory_lock
from src.shared.models.common import Document

D = TypeVar("D", bound=Document)

# Частичный уникальный индекс: один активный платёж на бронь
ACTIVE_PAYMENT_INDEX = "payments_active_target_uq"


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Where:
    """Собирает условия WHERE и нумерует их плейсхолдеры."""

    def __init__(self) -> None:
        self.clauses: list[str] = []
        self.args: list[Any] = []

    def add(self, clause: str, value: Any) -> "Where":
        """{} в clause заменяется номером плейсхолдера."""
        self.args.append(_plain(value))
        self.clauses.append(clause.format(f"${len(self.args)}"))
        return self

    def add_if(self, clause: str, value: Any) -> "Where":
        if value is not None:
            self.add(clause, value)
        return self

    def raw(self, clause: str) -> "Where":
        self.clauses.append(clause)
        return self

    def sql(self) -> str:
        return " WHERE " + " AND ".join(self.clauses) if self.clauses else ""

    def next_placeholder(self) -> str:
        return f"${len(self.args) + 1}"


class PostgresDocumentRepository(DocumentRepository[D]):
    """Базовая таблица JSONB документов."""

    table: str = ""
    model: type[D]

    def __init__(self, db: DatabaseManager, clock: Clock | None = None) -> None:
        """
        Args:
            db: Менеджер БД
            clock: Часы для updated_at
        """
        self._db = db
        self._clock = clock or SystemClock()

    def _decode(self, row: Record) -> D:
        return self.model.model_validate_json(row["data"])

    async def _insert_with(self, conn: Connection, doc: D) -> D:
        await conn.execute(
            f"""
            INSERT INTO {self.table} (id, version, data, created_at, updated_at)
            VALUES ($1, $2, $3::jsonb, $4, $5)
            """,
            doc.id,
            doc.version,
            doc.model_dump_json(),
            doc.created_at,
            doc.updated_at,
        )
        return doc

    async def _write_with(self, conn: Connection, doc: D) -> D:
        await conn.execute(
            f"UPDATE {self.table} SET version = $2, data = $3::jsonb, updated_at = $4 WHERE id = $1",
            doc.id,
            doc.version,
            doc.model_dump_json(),
            doc.updated_at,
        )
        return doc

    async def _lock_row(self, conn: Connection, doc_id: str) -> Optional[D]:
        row = await conn.fetchrow(f"SELECT data FROM {self.table} WHERE id = $1 FOR UPDATE", doc_id)
        return self._decode(row) if row else None

    async def _modify(
        self,
        doc_id: str,
        build: Callable[[D], Optional[Mapping[str, Any]]],
    ) -> Optional[D]:
        """
        Блокирует строку и применяет изменения, которые вернул build.

        Если build вернул None, документ не меняется.
        """
        async with self._db.transaction() as conn:
            current = await self._lock_row(conn, doc_id)
            if current is None:
                return None
            changes = build(current)
            if changes is None:
                return None
            updated = apply_changes(current, changes, self._clock.now())
            return await self._write_with(conn, updated)

    async def _select(
        self,
        where: Where | None = None,
        order_by: str = "created_at DESC",
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[D]:
        where = where or Where()
        query = f"SELECT data FROM {self.table}{where.sql()} ORDER BY {order_by}"
        args = list(where.args)
        if limit is not None:
            args.append(limit)
            query += f" LIMIT ${len(args)}"
        if offset is not None:
            args.append(offset)
            query += f" OFFSET ${len(args)}"
        rows = await self._db.fetch(query, *args)
        return [self._decode(row) for row in rows]

    async def _first(self, where: Where) -> Optional[D]:
        items = await self._select(where, limit=1)
        return items[0] if items else None

    async def get(self, doc_id: str) -> Optional[D]:
        row = await self._db.fetchrow(f"SELECT data FROM {self.table} WHERE id = $1", doc_id)
        return self._decode(row) if row else None

    async def insert(self, doc: D) -> D:
        async with self._db.acquire() as conn:
            return await self._insert_with(conn, doc)

    async def compare_and_set(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[D]:
        return await self._modify(doc_id, lambda current: changes if matches_expected(current, expected) else None)

    async def delete(self, doc_id: str) -> bool:
        status = await self._db.execute(f"DELETE FROM {self.table} WHERE id = $1", doc_id)
        return status.endswith(" 1")


class ExclusivePostgresRepository(PostgresDocumentRepository[D]):
    """Таблица документов, занимающих интервал времени ресурса."""

    conflict_message = "Resource is already booked for this time"

    def _resource_key(self, doc: D) -> Optional[str]:
        raise NotImplementedError

    async def _overlapping_with(self, conn: Connection, doc: D) -> list[D]:
        raise NotImplementedError

    async def _check_conflicts(self, conn: Connection, doc: D) -> None:
        key = self._resource_key(doc)
        if key is None or not getattr(doc, "is_blocking", False):
            return
        await advisory_lock(conn, key)
        conflicts = await self._overlapping_with(conn, doc)
        if conflicts:
            raise ConflictError(
                self.conflict_message,
                code=self.CONFLICT_CODE,  # type: ignore[attr-defined]
                details={"conflicts": [c.as_ref().to_dict() for c in conflicts]},  # type: ignore[attr-defined]
            )

    async def insert_exclusive(self, doc: D) -> D:
        async with self._db.transaction() as conn:
            await self._check_conflicts(conn, doc)
            return await self._insert_with(conn, doc)

    async def compare_and_set_exclusive(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[D]:
        async with self._db.transaction() as conn:
            current = await self._lock_row(conn, doc_id)
            if current is None or not matches_expected(current, expected):
                return None
            updated = apply_changes(current, changes, self._clock.now())
            await self._check_conflicts(conn, updated)
            return await self._write_with(conn, updated)


# =============================================================================
# СПРАВОЧНИКИ
# =============================================================================

class PostgresUserRepository(PostgresDocumentRepository[User], UserRepository):
    table = "users"
    model = User

    async def get_by_email(self, email: str) -> Optional[User]:
        return await self._first(Where().add("data->>'email' = {}", email.strip().lower()))


class PostgresDriverProfileRepository(PostgresDocumentRepository[DriverProfile], DriverProfileRepository):
    table = "driver_profiles"
    model = DriverProfile

    async def get_by_user(self, user_id: str) -> Optional[DriverProfile]:
        return await self._first(Where().add("data->>'user_id' = {}", user_id))


class PostgresVehicleRepository(PostgresDocumentRepository[Vehicle], VehicleRepository):
    table = "vehicles"
    model = Vehicle


# =============================================================================
# БРОНИРОВАНИЯ
# =============================================================================

class PostgresReservationRepository(ExclusivePostgresRepository[Reservation], ReservationRepository):
    table = "reservations"
    model = Reservation
    conflict_message = "Vehicle is already booked for this time"

    def _resource_key(self, doc: Reservation) -> Optional[str]:
        return f"vehicle:{doc.vehicle_id}" if doc.vehicle_id else None

    @staticmethod
    def _blocking_where(vehicle_id: str, exclude_id: Optional[str]) -> Where:
        where = Where()
        where.add("data->>'vehicle_id' = {}", vehicle_id)
        where.add("data->>'status' = ANY({}::text[])", sorted(RESERVATION_BLOCKING_STATUSES))
        where.add_if("id <> {}", exclude_id)
        return where

    async def _overlapping_with(self, conn: Connection, doc: Reservation) -> list[Reservation]:
        where = self._blocking_where(doc.vehicle_id, doc.id)  # type: ignore[arg-type]
        rows = await conn.fetch(f"SELECT data FROM {self.table}{where.sql()}", *where.args)
        return [
            r for r in (self._decode(row) for row in rows)
            if intervals_overlap(doc.pickup.at, doc.dropoff.at, r.pickup.at, r.dropoff.at)
        ]

    async def get_by_code(self, code: str) -> Optional[Reservation]:
        return await self._first(Where().add("data->>'code' = {}", code))

    async def find_blocking(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[Reservation]:
        candidates = await self._select(
            self._blocking_where(vehicle_id, exclude_id),
            order_by="(data->'pickup'->>'at')::timestamptz",
        )
        return [r for r in candidates if intervals_overlap(start, end, r.pickup.at, r.dropoff.at)]

    async def list(self, flt: ReservationFilter) -> list[Reservation]:
        where = Where()
        where.add_if("data->>'code' = {}", flt.code)
        where.add_if("data->>'user_id' = {}", flt.user_id)
        where.add_if("data->>'created_by' = {}", flt.created_by)
        where.add_if("data->>'status' = {}", flt.status)
        where.add_if("data->>'vehicle_id' = {}", flt.vehicle_id)
        where.add_if("data->>'vehicle_model_id' = {}", flt.vehicle_model_id)
        where.add_if("(data->'pickup'->>'at')::timestamptz >= {}", flt.pickup_from)
        where.add_if("(data->'pickup'->>'at')::timestamptz <= {}", flt.pickup_to)
        where.add_if("(data->'dropoff'->>'at')::timestamptz >= {}", flt.dropoff_from)
        where.add_if("(data->'dropoff'->>'at')::timestamptz <= {}", flt.dropoff_to)
        return await self._select(where)


class PostgresDriverBookingRepository(ExclusivePostgresRepository[DriverBooking], DriverBookingRepository):
    table = "driver_bookings"
    model = DriverBooking
    conflict_message = "Driver is already booked for this time"

    def _resource_key(self, doc: DriverBooking) -> Optional[str]:
        return f"driver:{doc.driver_user_id}"

    @staticmethod
    def _blocking_where(driver_user_id: str, exclude_id: Optional[str]) -> Where:
        where = Where()
        where.add("data->>'driver_user_id' = {}", driver_user_id)
        where.add("data->>'status' = ANY({}::text[])", sorted(DRIVER_BOOKING_BLOCKING_STATUSES))
        where.add_if("id <> {}", exclude_id)
        return where

    async def _overlapping_with(self, conn: Connection, doc: DriverBooking) -> list[DriverBooking]:
        where = self._blocking_where(doc.driver_user_id, doc.id)
        rows = await conn.fetch(f"SELECT data FROM {self.table}{where.sql()}", *where.args)
        return [
            b for b in (self._decode(row) for row in rows)
            if intervals_overlap(doc.start_at, doc.effective_end_at, b.start_at, b.effective_end_at)
        ]

    async def get_by_code(self, code: str) -> Optional[DriverBooking]:
        return await self._first(Where().add("data->>'code' = {}", code))

    async def find_blocking(
        self,
        driver_user_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[DriverBooking]:
        candidates = await self._select(
            self._blocking_where(driver_user_id, exclude_id),
            order_by="(data->>'start_at')::timestamptz",
        )
        return [b for b in candidates if intervals_overlap(start, end, b.start_at, b.effective_end_at)]

    async def list(self, flt: DriverBookingFilter) -> list[DriverBooking]:
        where = Where()
        where.add_if("data->>'status' = {}", flt.status)
        where.add_if("data->>'customer_id' = {}", flt.customer_id)
        where.add_if("data->>'driver_user_id' = {}", flt.driver_user_id)
        where.add_if("(data->>'start_at')::timestamptz >= {}", flt.start_from)
        where.add_if("(data->>'start_at')::timestamptz <= {}", flt.start_to)
        return await self._select(where, order_by="(data->>'start_at')::timestamptz DESC")

    async def list_expirable(self, now: datetime, requested_before: datetime) -> list[DriverBooking]:
        accepted = [DriverBookingStatus.ACCEPTED_BY_DRIVER.value, DriverBookingStatus.AWAITING_PAYMENT.value]
        rows = await self._db.fetch(
            f"""
            SELECT data FROM {self.table}
            WHERE (data->>'status' = ANY($1::text[])
                   AND (data->>'payment_deadline_at')::timestamptz < $2)
               OR (data->>'status' = $3
                   AND (data->>'requested_at')::timestamptz < $4)
            """,
            accepted,
            now,
            DriverBookingStatus.REQUESTED.value,
            requested_before,
        )
        return [self._decode(row) for row in rows]


# =============================================================================
# ПЛАТЕЖИ И ПРОМОКОДЫ
# =============================================================================

class PostgresPaymentRepository(PostgresDocumentRepository[Payment], PaymentRepository):
    table = "payments"
    model = Payment

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        rows = await self._db.fetch(
            f"""
            SELECT data FROM {self.table}
            WHERE data->>'provider_ref' = $1 OR data->>'merchant_reference' = $1
            LIMIT 1
            """,
            reference,
        )
        return self._decode(rows[0]) if rows else None

    async def find_active_for_target(
        self,
        reservation_id: Optional[str] = None,
        driver_booking_id: Optional[str] = None,
    ) -> Optional[Payment]:
        where = Where()
        where.add("data->>'status' = ANY({}::text[])", sorted(ACTIVE_PAYMENT_STATUSES))
        where.add_if("data->>'reservation_id' = {}", reservation_id)
        where.add_if("data->>'driver_booking_id' = {}", driver_booking_id)
        return await self._first(where)

    async def insert_exclusive(self, payment: Payment) -> Payment:
        try:
            return await self.insert(payment)
        except ConflictError as e:
            if (e.details or {}).get("constraint") == ACTIVE_PAYMENT_INDEX:
                raise ConflictError(
                    "An active payment already exists for this booking",
                    code=self.ACTIVE_CONFLICT_CODE,
                ) from e
            raise

    async def list(self, flt: PaymentFilter) -> list[Payment]:
        where = Where()
        where.add_if("data->>'user_id' = {}", flt.user_id)
        where.add_if("data->>'status' = {}", flt.status)
        where.add_if("data->>'reservation_id' = {}", flt.reservation_id)
        where.add_if("data->>'driver_booking_id' = {}", flt.driver_booking_id)
        return await self._select(where)

    async def list_pollable(self, limit: int) -> list[Payment]:
        where = Where()
        where.raw("data->>'poll_url' IS NOT NULL")
        where.add("NOT (data->>'status' = ANY({}::text[]))", sorted(TERMINAL_PAYMENT_STATUSES))
        return await self._select(where, order_by="updated_at ASC", limit=limit)


class PostgresPromoCodeRepository(PostgresDocumentRepository[PromoCode], PromoCodeRepository):
    table = "promo_codes"
    model = PromoCode

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        return await self._first(Where().add("data->>'code' = {}", normalize_code(code)))

    async def list_active(self, now: datetime) -> list[PromoCode]:
        where = Where()
        where.raw("(data->>'active')::boolean")
        where.add("(data->>'valid_from')::timestamptz <= {}", now)
        where.add(
            "(data->>'valid_to' IS NULL OR (data->>'valid_to')::timestamptz >= {})",
            now,
        )
        items = await self._select(where, order_by="data->>'code'")
        return [p for p in items if not p.is_exhausted]

    async def increment_usage(self, promo_id: str) -> bool:
        updated = await self._modify(
            promo_id,
            lambda promo: None if promo.is_exhausted else {"used_count": promo.used_count + 1},
        )
        return updated is not None


# =============================================================================
# ЧАТ
# =============================================================================

class PostgresConversationRepository(PostgresDocumentRepository[Conversation], ConversationRepository):
    table = "conversations"
    model = Conversation

    async def list_for_user(self, user_id: str) -> list[Conversation]:
        where = Where()
        where.raw("NOT (data->>'is_archived')::boolean")
        where.add("data->'participants' @> jsonb_build_array(jsonb_build_object('user_id', {}::text))", user_id)
        return await self._select(
            where,
            order_by="COALESCE((data->>'last_message_at')::timestamptz, created_at) DESC",
        )


class PostgresMessageRepository(PostgresDocumentRepository[Message], MessageRepository):
    table = "messages"
    model = Message

    async def list_for_conversation(
        self,
        conversation_id: str,
        offset: int,
        limit: int,
    ) -> tuple[list[Message], int]:
        where = Where().add("data->>'conversation_id' = {}", conversation_id)
        total = await self._db.fetchval(f"SELECT COUNT(*) FROM {self.table}{where.sql()}", *where.args)
        items = await self._select(where, limit=limit, offset=offset)
        return items, int(total or 0)

    async def add_reader(self, message_id: str, user_id: str) -> Optional[Message]:
        updated = await self._modify(
            message_id,
            lambda m: None if user_id in m.read_by else {"read_by": [*m.read_by, user_id]},
        )
        return updated or await self.get(message_id)


# =============================================================================
# ТРЕКИНГ И УВЕДОМЛЕНИЯ
# =============================================================================

class PostgresTrackerRepository(PostgresDocumentRepository[VehicleTracker], TrackerRepository):
    table = "vehicle_trackers"
    model = VehicleTracker

    async def get_by_device(self, device_id: str) -> Optional[VehicleTracker]:
        return await self._first(Where().add("data->>'device_id' = {}", device_id.strip().upper()))

    async def find_by_vehicle(self, vehicle_id: str, statuses: set[str]) -> Optional[VehicleTracker]:
        where = Where()
        where.add("data->>'vehicle_id' = {}", vehicle_id)
        where.add("data->>'status' = ANY({}::text[])", sorted(_plain(s) for s in statuses))
        return await self._first(where)

    async def list(self, flt: TrackerFilter) -> list[VehicleTracker]:
        where = Where()
        where.add_if("data->>'status' = {}", flt.status)
        where.add_if("data->>'vehicle_id' = {}", flt.vehicle_id)
        where.add_if("data->>'branch_id' = {}", flt.branch_id)
        return await self._select(where)


class PostgresNotificationRepository(PostgresDocumentRepository[Notification], NotificationRepository):
    table = "notifications"
    model = Notification

    async def list(self, flt: NotificationFilter) -> list[Notification]:
        where = Where()
        where.add_if("data->>'status' = {}", flt.status)
        where.add_if("data->>'type' = {}", flt.type)
        where.add_if("data->'audience'->>'scope' = {}", flt.audience_scope)
        where.add_if("data->>'created_by' = {}", flt.created_by)
        return await self._select(where)

    async def list_candidates(self) -> list[Notification]:
        where = Where()
        where.raw("(data->>'is_active')::boolean")
        where.add(
            "data->>'status' = ANY({}::text[])",
            [NotificationStatus.SENT.value, NotificationStatus.SCHEDULED.value],
        )
        return await self._select(where)


def build_postgres_repositories(db: DatabaseManager, clock: Clock | None = None) -> Repositories:
    """Полный набор репозиториев поверх PostgreSQL."""
    clock = clock or SystemClock()
    return Repositories(
        users=PostgresUserRepository(db, clock),
        driver_profiles=PostgresDriverProfileRepository(db, clock),
        vehicles=PostgresVehicleRepository(db, clock),
        reservations=PostgresReservationRepository(db, clock),
        driver_bookings=PostgresDriverBookingRepository(db, clock),
        payments=PostgresPaymentRepository(db, clock),
        promos=PostgresPromoCodeRepository(db, clock),
        conversations=PostgresConversationRepository(db, clock),
        messages=PostgresMessageRepository(db, clock),
        trackers=PostgresTrackerRepository(db, clock),
        notifications=PostgresNotificationRepository(db, clock),
    )
