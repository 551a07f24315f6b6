"""USDC payout clients and settlement coordination."""

from .client import (  # noqa: F401
    HttpPayoutTransferClient,
    InMemoryPayoutTransferClient,
    PayoutTransferClient,
    TransferRequest,
    TransferResult,
    UnconfiguredTransferClient,
    get_transfer_client,
)
from .coordinator import (  # noqa: F401
    BudgetSettings,
    MilestoneClaim,
    MilestoneEligibility,
    PayoutCoordinator,
    PayoutOutcome,
    PayoutStats,
    budget_period_start,
)
