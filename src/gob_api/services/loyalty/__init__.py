"""Points ledger, reward catalog gating, and the transaction log.

``RedemptionService`` lives in ``gob_api.services.loyalty.redemptions`` and is
imported from there; it depends on the payout coordinator, which in turn
depends on this package.
"""

from .catalog import RewardCatalogGate, RewardVisibility, get_reward_limit, resolve_reward_visibility  # noqa: F401
from .errors import OperationResult, RewardsError  # noqa: F401
from .ledger import LedgerBalance, LedgerEntry, PointsLedger, recompute_tier  # noqa: F401
from .transactions import ReconciliationReport, TransactionRecorder  # noqa: F401
