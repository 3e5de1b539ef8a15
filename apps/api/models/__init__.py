"""Models package."""

from .preferences import Preferences
from .watched_channel import WatchedChannel
from .feedback_category import FeedbackCategory
from .product_category import ProductCategory
from .content_item import ContentItem
from .reply import Reply
from .bucket import Bucket, BucketMembership
from .window_metrics_snapshot import WindowMetricsSnapshot
from .notification_record import NotificationRecord
from .job_schedule import JobSchedule
from .job_run import JobRun
