from provider_gateway.models.budget_alert import BudgetAlertRow
from provider_gateway.models.cache_entry import CachedResponse
from provider_gateway.models.usage_record import UsageRow

__all__ = [
    "BudgetAlertRow",
    "CachedResponse",
    "UsageRow",
]
