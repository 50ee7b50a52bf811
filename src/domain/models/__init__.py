from domain.models.billing import (
    DEFAULT_CURRENCY,
    SEVERITY_RANK,
    SOURCE_AWS_COST_EXPLORER,
    TOTAL_DIMENSION,
    Anomaly,
    AnomalyDetection,
    AnomalySeverity,
    AnomalyStatus,
    CostPoint,
    DailyPoint,
    ProviderCostRow,
)
from domain.models.connection import Connection, ConnectionStatus, ProviderCredentials
from domain.models.notification import (
    NotificationChannel,
    NotificationContact,
    NotificationKind,
    NotificationReservation,
    ReservationKey,
    ReservationState,
    SendOutcome,
    SendStatus,
)
from domain.models.results import ConditionalUpdateResult
from domain.models.run_lock import RunLock
from domain.models.sync import MAX_WINDOW_DAYS, MIN_WINDOW_DAYS, PROVIDER_MESSAGES, SyncErrorCode

__all__ = [
    "DEFAULT_CURRENCY",
    "MAX_WINDOW_DAYS",
    "MIN_WINDOW_DAYS",
    "PROVIDER_MESSAGES",
    "SEVERITY_RANK",
    "SOURCE_AWS_COST_EXPLORER",
    "TOTAL_DIMENSION",
    "Anomaly",
    "AnomalyDetection",
    "AnomalySeverity",
    "AnomalyStatus",
    "ConditionalUpdateResult",
    "Connection",
    "ConnectionStatus",
    "CostPoint",
    "DailyPoint",
    "NotificationChannel",
    "NotificationContact",
    "NotificationKind",
    "NotificationReservation",
    "ProviderCostRow",
    "ProviderCredentials",
    "ReservationKey",
    "ReservationState",
    "RunLock",
    "SendOutcome",
    "SendStatus",
    "SyncErrorCode",
]
