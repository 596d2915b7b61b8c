# tests/core/test_notifications_service.py
"""
Тесты сервиса уведомлений и правил видимости.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest

from src.common.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from src.core.notifications.audience import audience_matches, is_delivered, visible_to
from src.core.notifications.models import (
    Audience,
    Notification,
    NotificationCreateDTO,
    NotificationFilter,
    NotificationUpdateDTO,
)
from src.core.notifications.service import NotificationService
from src.core.users.models import User
from src.infra.event_bus import EventTypes
from src.shared.models.common import PaginationParams
from tests.conftest import NOW


def dto(**overrides: Any) -> NotificationCreateDTO:
    data: dict[str, Any] = {"title": "Maintenance", "message": "Branch closed on Sunday", "status": "sent"}
    data.update(overrides)
    return NotificationCreateDTO(**data)


@pytest.fixture
def service(container: Any) -> NotificationService:
    return container.notifications


class TestAudience:
    """Чистые правила видимости."""

    def test_all(self) -> None:
        assert audience_matches(Audience(), "u1", ["customer"])

    def test_user(self) -> None:
        audience = Audience(scope="user", user_id="u1")

        assert audience_matches(audience, "u1", [])
        assert not audience_matches(audience, "u2", [])

    def test_roles(self) -> None:
        audience = Audience(scope="roles", roles=["agent", "manager"])

        assert audience_matches(audience, "u1", ["manager"])
        assert not audience_matches(audience, "u1", ["customer"])

    def test_scope_requires_target(self) -> None:
        with pytest.raises(ValueError):
            Audience(scope="user")
        with pytest.raises(ValueError):
            Audience(scope="roles")

    def test_scheduled_delivered_when_due(self) -> None:
        n = Notification(title="t", message="m", status="scheduled", send_at=NOW)

        assert is_delivered(n, NOW)
        assert not is_delivered(n, NOW - timedelta(seconds=1))

    def test_expired_hidden(self) -> None:
        n = Notification(title="t", message="m", status="sent", expires_at=NOW)

        assert not visible_to(n, "u1", [], NOW)

    def test_include_future(self) -> None:
        n = Notification(title="t", message="m", status="scheduled", send_at=NOW + timedelta(hours=1))

        assert not visible_to(n, "u1", [], NOW)
        assert visible_to(n, "u1", [], NOW, include_future=True)

    def test_draft_never_visible(self) -> None:
        n = Notification(title="t", message="m")

        assert not visible_to(n, "u1", [], NOW, include_future=True)


class TestManagement:
    """Управление уведомлениями сотрудниками."""

    @pytest.mark.asyncio
    async def test_customer_cannot_create(self, service: NotificationService, customer: User) -> None:
        with pytest.raises(ForbiddenError) as exc_info:
            await service.create(customer, dto())

        assert exc_info.value.code == "NOTIFICATION_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_create_sent_sets_sent_at(self, service: NotificationService, manager: User) -> None:
        created = await service.create(manager, dto())

        assert created.status == "sent"
        assert created.sent_at == NOW
        assert created.created_by == manager.id

    @pytest.mark.asyncio
    async def test_scheduled_requires_send_at(self, service: NotificationService, manager: User) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create(manager, dto(status="scheduled"))

        assert exc_info.value.code == "SEND_AT_REQUIRED"

    @pytest.mark.asyncio
    async def test_cannot_create_cancelled(self, service: NotificationService, manager: User) -> None:
        with pytest.raises(ValidationError):
            await service.create(manager, dto(status="cancelled"))

    @pytest.mark.asyncio
    async def test_draft_lifecycle(self, service: NotificationService, manager: User) -> None:
        draft = await service.create(manager, dto(status="draft"))

        edited = await service.update(manager, draft.id, NotificationUpdateDTO(title="Updated"))
        scheduled = await service.schedule(manager, draft.id, NOW + timedelta(hours=2))
        sent = await service.send_now(manager, draft.id)

        assert edited.title == "Updated"
        assert scheduled.status == "scheduled"
        assert sent.status == "sent"
        assert sent.sent_at == NOW
        with pytest.raises(InvalidStateError) as exc_info:
            await service.update(manager, draft.id, NotificationUpdateDTO(title="Late"))
        assert exc_info.value.code == "NOTIFICATION_NOT_EDITABLE"

    @pytest.mark.asyncio
    async def test_update_cannot_jump_to_sent(self, service: NotificationService, manager: User) -> None:
        draft = await service.create(manager, dto(status="draft"))

        with pytest.raises(ValidationError) as exc_info:
            await service.update(manager, draft.id, NotificationUpdateDTO(status="sent"))

        assert exc_info.value.code == "INVALID_NOTIFICATION_STATUS"

    @pytest.mark.asyncio
    async def test_send_is_idempotent(self, service: NotificationService, manager: User) -> None:
        created = await service.create(manager, dto())

        again = await service.send_now(manager, created.id)

        assert again.version == created.version

    @pytest.mark.asyncio
    async def test_cancel_rules(self, service: NotificationService, manager: User) -> None:
        draft = await service.create(manager, dto(status="draft"))
        sent = await service.create(manager, dto())

        cancelled = await service.cancel(manager, draft.id)
        again = await service.cancel(manager, draft.id)

        assert cancelled.status == "cancelled"
        assert again.version == cancelled.version
        with pytest.raises(InvalidStateError) as exc_info:
            await service.cancel(manager, sent.id)
        assert exc_info.value.code == "NOTIFICATION_ALREADY_SENT"
        with pytest.raises(InvalidStateError):
            await service.send_now(manager, draft.id)

    @pytest.mark.asyncio
    async def test_list_with_filter(self, service: NotificationService, manager: User) -> None:
        await service.create(manager, dto(status="draft"))
        await service.create(manager, dto())

        page = await service.list(manager, NotificationFilter(status="sent"), PaginationParams())

        assert page.total == 1

    @pytest.mark.asyncio
    async def test_sent_event(self, repos: Any, clock: Any, manager: User, mock_event_bus: Any) -> None:
        service = NotificationService(repos, clock, event_bus=mock_event_bus)

        await service.create(manager, dto())

        event = mock_event_bus.publish.call_args[0][0]
        assert event.event_type == EventTypes.NOTIFICATION_SENT


class TestReading:
    """Чтение и квитанции пользователями."""

    @pytest.mark.asyncio
    async def test_list_mine_by_audience(
        self, service: NotificationService, manager: User, customer: User, other_customer: User,
    ) -> None:
        await service.create(manager, dto(title="Everyone"))
        await service.create(manager, dto(title="Alice", audience=Audience(scope="user", user_id=customer.id)))
        await service.create(manager, dto(title="Staff", audience=Audience(scope="roles", roles=["agent"])))

        alice = await service.list_mine(customer, PaginationParams())
        bob = await service.list_mine(other_customer, PaginationParams())

        assert sorted(n.title for n in alice.items) == ["Alice", "Everyone"]
        assert [n.title for n in bob.items] == ["Everyone"]

    @pytest.mark.asyncio
    async def test_role_audience_visible_to_role(
        self, service: NotificationService, manager: User, agent: User,
    ) -> None:
        await service.create(manager, dto(title="Staff", audience=Audience(scope="roles", roles=["agent"])))

        page = await service.list_mine(agent, PaginationParams())

        assert [n.title for n in page.items] == ["Staff"]

    @pytest.mark.asyncio
    async def test_hidden_notification_not_found(
        self, service: NotificationService, manager: User, other_customer: User, customer: User,
    ) -> None:
        created = await service.create(manager, dto(audience=Audience(scope="user", user_id=customer.id)))

        with pytest.raises(NotFoundError):
            await service.get(other_customer, created.id)

    @pytest.mark.asyncio
    async def test_read_receipt_is_set_once(
        self, service: NotificationService, manager: User, customer: User, clock: Any,
    ) -> None:
        created = await service.create(manager, dto())

        first = await service.mark_read(customer, created.id)
        clock.advance(minutes=5)
        second = await service.mark_read(customer, created.id)

        assert first.read_at == NOW
        assert second.read_at == NOW
        acks = await service.list_acknowledgements(manager, created.id)
        assert len(acks) == 1

    @pytest.mark.asyncio
    async def test_action_marks_read(
        self, service: NotificationService, manager: User, customer: User,
    ) -> None:
        created = await service.create(manager, dto())

        ack = await service.mark_action(customer, created.id)

        assert ack.action == "clicked"
        assert ack.read_at == NOW
        assert ack.acted_at == NOW

    @pytest.mark.asyncio
    async def test_only_unread(self, service: NotificationService, manager: User, customer: User) -> None:
        first = await service.create(manager, dto(title="one"))
        await service.create(manager, dto(title="two"))
        await service.mark_read(customer, first.id)

        page = await service.list_mine(customer, PaginationParams(), only_unread=True)

        assert [n.title for n in page.items] == ["two"]

    @pytest.mark.asyncio
    async def test_bulk_read_skips_unknown(
        self, service: NotificationService, manager: User, customer: User,
    ) -> None:
        first = await service.create(manager, dto(title="one"))
        second = await service.create(manager, dto(title="two"))

        marked = await service.bulk_mark_read(customer, [first.id, second.id, first.id, "missing"])

        assert marked == 2

    @pytest.mark.asyncio
    async def test_disabled_hidden(self, service: NotificationService, manager: User, customer: User) -> None:
        created = await service.create(manager, dto())

        await service.disable(manager, created.id)

        assert (await service.list_mine(customer, PaginationParams())).total == 0
