"""Models package."""

from .tenant import Tenant
from .social_account import SocialAccount
from .social_daily_metric import SocialDailyMetric
from .social_post import SocialPost
from .sync_log import SyncLog
