from subtrack.subscription.billing import BillingOrchestrator, BillingRunResult, RenewalOutcome, RenewalStatus
from subtrack.subscription.enums import BillingCycle, Currency, SubscriptionStatus
from subtrack.subscription.events import SUBSCRIPTION_RENEWED, SubscriptionRenewed
from subtrack.subscription.models import BillingHistory, Subscription
from subtrack.subscription.money import Money
from subtrack.subscription.repository import BillingHistoryRepository, SubscriptionRepository
from subtrack.subscription.schemas import (
    BillingHistoryRead,
    BudgetCategoryRead,
    MonthlyBudgetRead,
    SubscriptionCreate,
    SubscriptionRead,
)
from subtrack.subscription.service import SubscriptionService, subscription_service

__all__ = [
    "BillingCycle",
    "Currency",
    "SubscriptionStatus",
    "Money",
    "Subscription",
    "BillingHistory",
    "SubscriptionRenewed",
    "SUBSCRIPTION_RENEWED",
    "SubscriptionRepository",
    "BillingHistoryRepository",
    "BillingOrchestrator",
    "BillingRunResult",
    "RenewalOutcome",
    "RenewalStatus",
    "SubscriptionCreate",
    "SubscriptionRead",
    "BillingHistoryRead",
    "BudgetCategoryRead",
    "MonthlyBudgetRead",
    "SubscriptionService",
    "subscription_service",
]
