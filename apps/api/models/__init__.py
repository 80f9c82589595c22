"""Models package."""

from .user import User
from .plan import Plan
from .credit_transaction import CreditTransaction
from .notification import Notification
from .submission import Submission
from .processed_webhook_event import ProcessedWebhookEvent
