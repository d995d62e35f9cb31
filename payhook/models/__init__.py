# Models package — import all models here so Alembic can discover them.

from payhook.models.user import User  # noqa: F401
from payhook.models.subscription import Subscription  # noqa: F401
from payhook.models.payment import Payment  # noqa: F401
from payhook.models.webhook_event import WebhookEvent  # noqa: F401
