# src/common/constants.py
"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# ПОЛЬЗОВАТЕЛИ
# =============================================================================

class UserRole(str, Enum):
    """Роли пользователей."""
    CUSTOMER = "customer"
    AGENT = "agent"
    MANAGER = "manager"
    ADMIN = "admin"
    DRIVER = "driver"


STAFF_ROLES: frozenset[str] = frozenset({
    UserRole.AGENT.value,
    UserRole.MANAGER.value,
    UserRole.ADMIN.value,
})


class UserStatus(str, Enum):
    """Статусы учётной записи."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class DriverProfileStatus(str, Enum):
    """Статусы профиля водителя."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VehicleStatus(str, Enum):
    """Статусы единицы автопарка."""
    AVAILABLE = "available"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"
    RETIRED = "retired"


# =============================================================================
# БРОНИРОВАНИЯ
# =============================================================================

class ResourceKind(str, Enum):
    """Тип ресурса, время которого бронируется."""
    VEHICLE = "vehicle"
    DRIVER = "driver"


class ReservationStatus(str, Enum):
    """Статусы бронирования автомобиля."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CHECKED_OUT = "checked_out"
    RETURNED = "returned"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class CreatedChannel(str, Enum):
    """Канал создания брони."""
    WEB = "web"
    MOBILE = "mobile"
    KIOSK = "kiosk"
    AGENT = "agent"
    OTHER = "other"


class PaymentSummaryStatus(str, Enum):
    """Сводный статус оплаты брони."""
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    REFUNDED = "refunded"
    VOID = "void"


class DriverBookingStatus(str, Enum):
    """Статусы заказа водителя."""
    REQUESTED = "requested"
    ACCEPTED_BY_DRIVER = "accepted_by_driver"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    DECLINED_BY_DRIVER = "declined_by_driver"
    CANCELLED_BY_CUSTOMER = "cancelled_by_customer"
    CANCELLED_BY_DRIVER = "cancelled_by_driver"
    EXPIRED = "expired"
    COMPLETED = "completed"


RESERVATION_BLOCKING_STATUSES: frozenset[str] = frozenset({
    ReservationStatus.PENDING.value,
    ReservationStatus.CONFIRMED.value,
    ReservationStatus.CHECKED_OUT.value,
})

DRIVER_BOOKING_BLOCKING_STATUSES: frozenset[str] = frozenset({
    DriverBookingStatus.REQUESTED.value,
    DriverBookingStatus.ACCEPTED_BY_DRIVER.value,
    DriverBookingStatus.AWAITING_PAYMENT.value,
    DriverBookingStatus.CONFIRMED.value,
})


# =============================================================================
# ПЛАТЕЖИ И ПРОМОКОДЫ
# =============================================================================

class Currency(str, Enum):
    """Поддерживаемые валюты."""
    USD = "USD"
    ZWL = "ZWL"


class PaymentStatus(str, Enum):
    """Статусы платежа."""
    UNPAID = "unpaid"
    PENDING = "pending"
    SENT = "sent"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_DELIVERY = "awaiting_delivery"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    VOID = "void"


TERMINAL_PAYMENT_STATUSES: frozenset[str] = frozenset({
    PaymentStatus.PAID.value,
    PaymentStatus.CANCELLED.value,
    PaymentStatus.FAILED.value,
    PaymentStatus.REFUNDED.value,
    PaymentStatus.VOID.value,
})

ACTIVE_PAYMENT_STATUSES: frozenset[str] = frozenset({
    PaymentStatus.PENDING.value,
    PaymentStatus.SENT.value,
    PaymentStatus.AWAITING_CONFIRMATION.value,
    PaymentStatus.AWAITING_DELIVERY.value,
})


class PaymentMethod(str, Enum):
    """Способы оплаты."""
    CARD = "card"
    WALLET = "wallet"
    BANK = "bank"
    CASH = "cash"


class PaymentProvider(str, Enum):
    """Платёжные провайдеры."""
    PAYNOW = "paynow"


class PromoType(str, Enum):
    """Тип скидки промокода."""
    PERCENT = "percent"
    FIXED = "fixed"


class PromoRejectReason(str, Enum):
    """Причины, по которым промокод не применён."""
    INVALID_CODE = "INVALID_CODE"
    NOT_STARTED = "NOT_STARTED"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"


# =============================================================================
# ЧАТ
# =============================================================================

class ConversationType(str, Enum):
    """Тип беседы."""
    DIRECT = "direct"
    GROUP = "group"


class ConversationContextType(str, Enum):
    """К чему привязана беседа."""
    RESERVATION = "reservation"
    DRIVER_BOOKING = "driver_booking"
    GENERAL = "general"


class AttachmentType(str, Enum):
    """Тип вложения в сообщении."""
    IMAGE = "image"
    FILE = "file"


# =============================================================================
# ТРЕКИНГ
# =============================================================================

class TrackerStatus(str, Enum):
    """Статусы GPS-трекера."""
    INACTIVE = "inactive"
    ACTIVE = "active"
    MAINTENANCE = "maintenance"


class LocationSource(str, Enum):
    """Источник координат."""
    GPS = "gps"
    NETWORK = "network"
    MIXED = "mixed"
    UNKNOWN = "unknown"


# =============================================================================
# УВЕДОМЛЕНИЯ
# =============================================================================

class AudienceScope(str, Enum):
    """Кому адресовано уведомление."""
    ALL = "all"
    USER = "user"
    ROLES = "roles"


class NotificationType(str, Enum):
    """Тип уведомления."""
    INFO = "info"
    SYSTEM = "system"
    PROMO = "promo"
    BOOKING = "booking"
    PAYMENT = "payment"
    MAINTENANCE = "maintenance"
    ALERT = "alert"


class NotificationPriority(str, Enum):
    """Приоритет уведомления."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationChannel(str, Enum):
    """Каналы доставки."""
    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationStatus(str, Enum):
    """Жизненный цикл уведомления."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"
