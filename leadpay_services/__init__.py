"""
leadpay_services -- integration shell around the kernel.

Responsibility:
    Owns transaction boundaries (LeadPayPlatform), talks to the payment
    processor (PayoutSettlementService) and sends notifications.

Architecture position:
    Services -- outer layer.

        leadpay_services/ -> leadpay_kernel/  (allowed)
        leadpay_services/ -> leadpay_config/  (allowed)
        leadpay_kernel/   -> leadpay_services/ (FORBIDDEN)
"""

from leadpay_services.notifications import (
    LoggingNotifier,
    Notification,
    NotificationDispatcher,
    NotificationKind,
    Notifier,
)
from leadpay_services.payouts import (
    PaymentProcessor,
    PayoutSettlementService,
    ProcessorReceipt,
)
from leadpay_services.platform import LeadPayPlatform

__all__ = [
    "LeadPayPlatform",
    "LoggingNotifier",
    "Notification",
    "NotificationDispatcher",
    "NotificationKind",
    "Notifier",
    "PaymentProcessor",
    "PayoutSettlementService",
    "ProcessorReceipt",
]
