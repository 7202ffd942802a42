# Import all models so Flask-Migrate / Alembic can discover them.
from tuition_sync.models.billing import (  # noqa: F401
    BillingAccount,
    BillingAssignment,
    Program,
    Subscription,
)
from tuition_sync.models.enrollment import Enrollment  # noqa: F401
from tuition_sync.models.history import SubscriptionHistory  # noqa: F401
from tuition_sync.models.processed_event import ProcessedEvent  # noqa: F401
