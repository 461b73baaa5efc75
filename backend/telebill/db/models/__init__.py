"""Import models so Alembic can autogenerate migrations."""
from telebill.db.models.user import User  # noqa: F401
from telebill.db.models.plan import BillingCycle, Plan  # noqa: F401
from telebill.db.models.subscription import Subscription, SubscriptionStatus  # noqa: F401
from telebill.db.models.billing_record import BillingRecord, BillingRecordStatus, FailureKind  # noqa: F401
from telebill.db.models.subscription_status_history import SubscriptionStatusHistory  # noqa: F401
from telebill.db.models.notification_outbox import NotificationOutbox  # noqa: F401
