# src/infra/database.py
"""
PostgreSQL: пул asyncpg, повтор запросов при обрыве соединения,
транзакционные advisory locks и перевод ошибок драйвера в доменные.

Репозитории получают DatabaseManager явно (см. build_postgres_repositories),
модульный экземпляр нужен только bootstrap-коду.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncGenerator, Awaitable, Callable, TypeVar

import asyncpg
from asyncpg import Connection, Pool, Record

from src.common.constants import TypeMsg
from src.common.errors import ConflictError, TransientError
from src.common.logger import get_logger, log_error, log_info, log_warning

if TYPE_CHECKING:
    from src.config.loader import DatabaseSettings

logger = get_logger("database")

T = TypeVar("T")

# Обрыв соединения: запрос можно повторить
CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    ConnectionRefusedError,
    OSError,
    asyncio.TimeoutError,
)

# Ключ advisory lock, под которым применяется init.sql
SCHEMA_LOCK_ID = 731_000_001

# Ошибки гонки нескольких процессов при CREATE ... IF NOT EXISTS
_BENIGN_SCHEMA_ERRORS = ("deadlock detected", "already exists")


async def run_with_retry(call: Callable[[], Awaitable[T]], attempts: int, delay: float) -> T:
    """
    Выполняет call, повторяя его при CONNECTION_ERRORS.
    Пауза перед попыткой n равна delay * n. После последней
    неудачи поднимается TransientError с исходной ошибкой в __cause__.
    """
    last_error: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except CONNECTION_ERRORS as e:
            last_error = e
            if attempt == attempts:
                break
            await log_warning(f"PostgreSQL недоступен, попытка {attempt} из {attempts}: {e}")
            await asyncio.sleep(delay * attempt)

    await log_error(f"PostgreSQL недоступен после {attempts} попыток: {last_error}")
    raise TransientError("Storage temporarily unavailable") from last_error


@asynccontextmanager
async def storage_errors() -> AsyncGenerator[None, None]:
    """
    UniqueViolationError -> ConflictError(DUPLICATE_KEY) с именем индекса в details,
    обрыв соединения -> TransientError. Остальное пробрасывается как есть.
    """
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise ConflictError(
            "Duplicate unique key",
            code="DUPLICATE_KEY",
            details={"constraint": getattr(e, "constraint_name", None)},
        ) from e
    except CONNECTION_ERRORS as e:
        raise TransientError("Storage temporarily unavailable") from e


async def advisory_lock(conn: Connection, key: int | str) -> None:
    """
    Транзакционный advisory lock. Строковые ключи (например "vehicle:<id>")
    хэшируются на стороне PostgreSQL. Lock снимается вместе с транзакцией.
    """
    if isinstance(key, int):
        await conn.execute("SELECT pg_advisory_xact_lock($1)", key)
    else:
        await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", key)


class DatabaseManager:
    """Пул соединений PostgreSQL и короткие запросы поверх него."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 5,
        max_size: int = 20,
        command_timeout: int = 60,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
    ) -> None:
        self._dsn = dsn
        self._pool_kwargs = {
            "min_size": min_size,
            "max_size": max_size,
            "command_timeout": command_timeout,
        }
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._pool: Pool | None = None

    @classmethod
    def from_settings(cls, cfg: DatabaseSettings) -> DatabaseManager:
        return cls(
            cfg.dsn,
            min_size=cfg.DB_MIN_POOL_SIZE,
            max_size=cfg.DB_MAX_POOL_SIZE,
            command_timeout=cfg.DB_COMMAND_TIMEOUT,
            retry_attempts=cfg.DB_RETRY_ATTEMPTS,
            retry_delay=cfg.DB_RETRY_DELAY,
        )

    @property
    def pool(self) -> Pool:
        if self._pool is None:
            raise TransientError("Database pool is not initialized")
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def connect(self) -> None:
        """Создаёт пул. Повторный вызов ничего не делает."""
        if self._pool is not None:
            return

        await log_info("Подключение к PostgreSQL...", type_msg=TypeMsg.INFO)
        self._pool = await run_with_retry(
            lambda: asyncpg.create_pool(dsn=self._dsn, **self._pool_kwargs),
            self._retry_attempts,
            self._retry_delay,
        )
        await log_info(
            f"Пул PostgreSQL готов ({self._pool_kwargs['min_size']}..{self._pool_kwargs['max_size']})",
            type_msg=TypeMsg.INFO,
        )

    async def disconnect(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            await log_info("Пул PostgreSQL закрыт", type_msg=TypeMsg.INFO)

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Соединение из пула вне транзакции."""
        async with storage_errors():
            async with self.pool.acquire() as conn:
                yield conn

    @asynccontextmanager
    async def transaction(self, lock_key: int | str | None = None) -> AsyncGenerator[Connection, None]:
        """
        Транзакция: commit при успехе, rollback при исключении.
        С lock_key сначала берётся advisory lock на этот ключ.

        Example:
            async with db.transaction(f"vehicle:{vehicle_id}") as conn:
                ...  # проверка пересечений и вставка брони
        """
        async with storage_errors():
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    if lock_key is not None:
                        await advisory_lock(conn, lock_key)
                    yield conn

    async def _query(self, method: str, query: str, *args: Any, **kwargs: Any) -> Any:
        # Ошибки соединения должны дойти до run_with_retry непереведёнными
        async def call() -> Any:
            async with self.pool.acquire() as conn:
                return await getattr(conn, method)(query, *args, **kwargs)

        async with storage_errors():
            return await run_with_retry(call, self._retry_attempts, self._retry_delay)

    async def execute(self, query: str, *args: Any) -> str:
        """Возвращает статус команды, например "UPDATE 1"."""
        return await self._query("execute", query, *args)

    async def fetch(self, query: str, *args: Any) -> list[Record]:
        return await self._query("fetch", query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Record | None:
        return await self._query("fetchrow", query, *args)

    async def fetchval(self, query: str, *args: Any, column: int = 0) -> Any:
        return await self._query("fetchval", query, *args, column=column)

    async def health_check(self) -> bool:
        try:
            return await self.fetchval("SELECT 1") == 1
        except Exception as e:
            await log_error(f"PostgreSQL не отвечает: {e}")
            return False


_db_manager: DatabaseManager | None = None


def get_db() -> DatabaseManager:
    """Менеджер, созданный init_db."""
    if _db_manager is None:
        raise TransientError("Database is not initialized")
    return _db_manager


async def init_db(cfg: DatabaseSettings | None = None) -> DatabaseManager:
    """Подключается к PostgreSQL и применяет migrations/init.sql."""
    global _db_manager
    if cfg is None:
        from src.config import settings
        cfg = settings.database

    if _db_manager is None:
        _db_manager = DatabaseManager.from_settings(cfg)
    await _db_manager.connect()
    await log_info(f"PostgreSQL: {cfg.DB_HOST}:{cfg.DB_PORT}/{cfg.DB_NAME}", type_msg=TypeMsg.INFO)

    await _init_schema(_db_manager)
    return _db_manager


async def _init_schema(db: DatabaseManager) -> None:
    """
    Применяет migrations/init.sql. Несколько процессов могут стартовать
    одновременно, поэтому скрипт выполняется под SCHEMA_LOCK_ID.
    """
    from src.config.loader import get_project_root

    schema_path = get_project_root() / "migrations" / "init.sql"
    if not schema_path.exists():
        await log_error(f"Схема не применена, нет файла {schema_path}")
        return

    schema_sql = schema_path.read_text(encoding="utf-8")
    try:
        async with db.transaction(SCHEMA_LOCK_ID) as conn:
            await conn.execute(schema_sql)
    except asyncpg.PostgresError as e:
        if not any(marker in str(e) for marker in _BENIGN_SCHEMA_ERRORS):
            await log_error(f"Ошибка применения схемы: {e}", exc_info=True)
            raise
        await log_warning(f"Схему применил параллельный процесс: {e}")
        return

    await log_info(f"Схема применена: {schema_path.name}", type_msg=TypeMsg.INFO)


async def close_db() -> None:
    global _db_manager
    db, _db_manager = _db_manager, None
    if db is not None:
        await db.disconnect()
