"""
Model package initializer.

Importing this package registers every ORM mapping so the worker, scripts
and tests see a complete metadata.
"""

from finopsbridge.models.activity_log import ActivityLog, ActivityType
from finopsbridge.models.cloud import AccountStatus, CloudAccount, ProviderKind
from finopsbridge.models.policy import Policy, PolicyType
from finopsbridge.models.violation import (
    TERMINAL_STATUSES,
    Violation,
    ViolationSeverity,
    ViolationStatus,
)
from finopsbridge.models.webhook import Webhook, WebhookChannel

__all__ = [
    "AccountStatus",
    "ActivityLog",
    "ActivityType",
    "CloudAccount",
    "Policy",
    "PolicyType",
    "ProviderKind",
    "TERMINAL_STATUSES",
    "Violation",
    "ViolationSeverity",
    "ViolationStatus",
    "Webhook",
    "WebhookChannel",
]
