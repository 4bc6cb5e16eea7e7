"""Models package."""

from .user import User
from .credit_account import CreditAccount
from .credit_adjustment import CreditAdjustment
from .subscription import Subscription
from .payment_event import ProcessedPaymentEvent, ReconciliationFailure
