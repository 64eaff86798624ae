"""SQLAlchemy models package."""

from .customer import Customer  # noqa: F401
from .loyalty import PointEntryType, PointLedgerEntry, Tier, TierHistory  # noqa: F401
from .notification import NotificationLog, PushSubscription  # noqa: F401
from .reward import CustomerReward, Reward, RewardRule, RewardSource, RewardTrigger  # noqa: F401
from .transaction import (  # noqa: F401
    Campaign,
    Transaction,
    TransactionCampaignUsage,
    TransactionItem,
    TransactionStatus,
)
from .user import StaffRole, StaffUser  # noqa: F401
