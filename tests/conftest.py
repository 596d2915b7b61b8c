# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.

Сервисы собираются поверх in-memory репозиториев с фиксированными часами,
платёжный шлюз подменяется FakeGateway.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")

from src.common.clock import FixedClock, IdGenerator
from src.common.constants import DriverProfileStatus, UserRole, UserStatus
from src.config.loader import AuthSettings, BookingSettings, Settings
from src.core.bookings.models import (
    DriverBooking,
    DriverPricing,
    Endpoint,
    Location,
    Reservation,
    ReservationPricing,
)
from src.core.repositories.interfaces import Repositories
from src.core.repositories.memory import build_memory_repositories
from src.core.users.models import DriverProfile, User, Vehicle
from src.infra.paynow import InitiateResult, PollResult
from src.infra.security import TokenCodec
from src.services.api.dependencies import ServiceContainer

# Часы тестов в будущем: exp токенов считается от clock.now()
NOW = datetime(2030, 1, 1, 10, 0, tzinfo=timezone.utc)
TEST_SECRET = "test-secret"


# =============================================================================
# ПЛАТЁЖНЫЙ ШЛЮЗ
# =============================================================================

class FakeGateway:
    """Шлюз Paynow в памяти: запоминает вызовы и отдаёт заданный статус."""

    def __init__(self) -> None:
        self.initiated: list[dict[str, Any]] = []
        self.polled: list[str] = []
        self.poll_status = "Created"
        self.poll_error: Exception | None = None
        self.hash_valid = True

    async def initiate(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str | None = None,
    ) -> InitiateResult:
        self.initiated.append(
            {"reference": reference, "amount": amount, "description": description, "email": email}
        )
        return InitiateResult(
            reference=reference,
            poll_url=f"https://paynow.test/poll/{reference}",
            redirect_url=f"https://paynow.test/pay/{reference}",
        )

    async def initiate_mobile(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str,
        phone: str,
        method: str = "ecocash",
    ) -> InitiateResult:
        self.initiated.append(
            {
                "reference": reference,
                "amount": amount,
                "description": description,
                "email": email,
                "phone": phone,
                "method": method,
            }
        )
        return InitiateResult(
            reference=reference,
            poll_url=f"https://paynow.test/poll/{reference}",
            instructions="Dial *151# to approve",
        )

    async def poll(self, poll_url: str) -> PollResult:
        self.polled.append(poll_url)
        if self.poll_error is not None:
            raise self.poll_error
        return PollResult(status=self.poll_status)

    def verify_hash(self, fields: dict[str, str]) -> bool:
        return self.hash_valid

    async def close(self) -> None:
        return None


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "PROJECT_NAME": "car_rental_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "LOG_TO_FILE": False,
        "LOG_FORMAT": "colored",
        "API_HOST": "127.0.0.1",
        "API_PORT": 8081,
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "car_rental_test",
        "DB_USER": "postgres",
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_NAMESPACE": "rental_test",
        "RABBITMQ_EXCHANGE": "rental.test",
        "PAYNOW_BASE_URL": "https://paynow.test/interface",
        "PAYNOW_REQUEST_TIMEOUT": 5,
        "PAYNOW_INITIATE_TIMEOUT": 15,
        "PAYMENT_WINDOW_MINUTES": 45,
        "STORAGE_BACKEND": "memory",
        "WS_PING_INTERVAL": 10,
        "_comment_storage": "memory для тестов",
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


@pytest.fixture
def test_settings() -> Settings:
    """Настройки для сборки контейнера в памяти."""
    return Settings(
        auth=AuthSettings(JWT_SECRET=TEST_SECRET),
        booking=BookingSettings(STORAGE_BACKEND="memory"),
    )


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_db() -> AsyncMock:
    """Мок менеджера базы данных."""
    db = AsyncMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ ЯДРА
# =============================================================================

@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(NOW)


@pytest.fixture
def ids() -> IdGenerator:
    return IdGenerator(seed=1)


@pytest.fixture
def repos(clock: FixedClock) -> Repositories:
    return build_memory_repositories(clock)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def tokens() -> TokenCodec:
    return TokenCodec(TEST_SECRET)


def _user(user_id: str, email: str, *roles: UserRole, phone: str | None = None) -> User:
    return User(
        id=user_id,
        email=email,
        full_name=user_id.replace("-", " ").title(),
        phone=phone,
        roles=list(roles),
        status=UserStatus.ACTIVE,
        created_at=NOW,
        updated_at=NOW,
    )


@pytest.fixture
def customer(repos: Repositories) -> User:
    user = _user("customer-1", "alice@example.com", UserRole.CUSTOMER, phone="0771111111")
    repos.users.preload(user)
    return user


@pytest.fixture
def other_customer(repos: Repositories) -> User:
    user = _user("customer-2", "bob@example.com", UserRole.CUSTOMER)
    repos.users.preload(user)
    return user


@pytest.fixture
def agent(repos: Repositories) -> User:
    user = _user("agent-1", "agent@example.com", UserRole.AGENT)
    repos.users.preload(user)
    return user


@pytest.fixture
def manager(repos: Repositories) -> User:
    user = _user("manager-1", "manager@example.com", UserRole.MANAGER)
    repos.users.preload(user)
    return user


@pytest.fixture
def admin(repos: Repositories) -> User:
    user = _user("admin-1", "admin@example.com", UserRole.ADMIN)
    repos.users.preload(user)
    return user


@pytest.fixture
def driver_user(repos: Repositories) -> User:
    user = _user("driver-1", "driver@example.com", UserRole.DRIVER)
    repos.users.preload(user)
    return user


@pytest.fixture
def driver_profile(repos: Repositories, driver_user: User) -> DriverProfile:
    profile = DriverProfile(
        id="profile-1",
        user_id=driver_user.id,
        status=DriverProfileStatus.APPROVED,
        is_available=True,
        hourly_rate=Decimal("20"),
        created_at=NOW,
        updated_at=NOW,
    )
    repos.driver_profiles.preload(profile)
    return profile


@pytest.fixture
def vehicle(repos: Repositories) -> Vehicle:
    item = Vehicle(
        id="vehicle-1",
        vehicle_model_id="model-1",
        branch_id="branch-1",
        plate_number="AEZ 1234",
        created_at=NOW,
        updated_at=NOW,
    )
    repos.vehicles.preload(item)
    return item


@pytest.fixture
def container(
    test_settings: Settings,
    repos: Repositories,
    gateway: FakeGateway,
    tokens: TokenCodec,
    clock: FixedClock,
    ids: IdGenerator,
) -> ServiceContainer:
    """Граф сервисов поверх памяти."""
    return ServiceContainer(test_settings, repos, gateway, tokens, clock=clock, ids=ids)


@pytest.fixture
def auth_headers(tokens: TokenCodec) -> Callable[[User], dict[str, str]]:
    """Заголовок Authorization для пользователя."""

    def build(user: User) -> dict[str, str]:
        token = tokens.create_user_token(user.id, now=NOW)
        return {"Authorization": f"Bearer {token}"}

    return build


# =============================================================================
# ФАБРИКИ ДОКУМЕНТОВ
# =============================================================================

@pytest.fixture
def make_reservation() -> Callable[..., Any]:
    """Фабрика броней для прямой записи в репозиторий."""
    counter = {"n": 0}

    def build(
        start: datetime,
        hours: float = 24,
        vehicle_id: str | None = "vehicle-1",
        status: str = "pending",
        user_id: str = "customer-1",
        total: str = "100.00",
        **overrides: Any,
    ) -> Reservation:
        counter["n"] += 1
        data: dict[str, Any] = {
            "code": f"RSV-TEST-{counter['n']:06d}",
            "user_id": user_id,
            "created_by": user_id,
            "vehicle_id": vehicle_id,
            "vehicle_model_id": "model-1",
            "pickup": Endpoint(branch_id="branch-1", at=start),
            "dropoff": Endpoint(branch_id="branch-1", at=start + timedelta(hours=hours)),
            "status": status,
            "pricing": ReservationPricing(currency="USD", grand_total=Decimal(total), computed_at=NOW),
            "created_at": NOW + timedelta(seconds=counter["n"]),
        }
        data.update(overrides)
        return Reservation(**data)

    return build


@pytest.fixture
def make_driver_booking() -> Callable[..., Any]:
    """Фабрика заказов водителя для прямой записи в репозиторий."""
    counter = {"n": 0}

    def build(
        start: datetime,
        hours: int = 2,
        status: str = "requested",
        customer_id: str = "customer-1",
        driver_user_id: str = "driver-1",
        with_end: bool = True,
        **overrides: Any,
    ) -> DriverBooking:
        counter["n"] += 1
        data: dict[str, Any] = {
            "code": f"DRV-TEST-{counter['n']:06d}",
            "customer_id": customer_id,
            "created_by": customer_id,
            "driver_profile_id": "profile-1",
            "driver_user_id": driver_user_id,
            "start_at": start,
            "end_at": start + timedelta(hours=hours) if with_end else None,
            "pickup_location": Location(address="Samora Machel Ave 1"),
            "dropoff_location": Location(address="Airport"),
            "pricing": DriverPricing(
                currency="USD",
                hourly_rate_snapshot=Decimal("20.00"),
                hours_requested=Decimal(hours),
                estimated_total=Decimal(20 * hours),
            ),
            "status": status,
            "requested_at": NOW,
            "created_at": NOW + timedelta(seconds=counter["n"]),
        }
        data.update(overrides)
        return DriverBooking(**data)

    return build
