# Models package — import all models here so Alembic can discover them.

from app.models.user import User, OwnedItem, PurchaseHistoryEntry  # noqa: F401
from app.models.transaction import PurchaseTransaction  # noqa: F401
from app.models.subscription import ArtistSubscription  # noqa: F401
from app.models.webhook_event import WebhookEvent  # noqa: F401
from app.models.invoice import InvoiceSequence  # noqa: F401
from app.models.audit import AuditEvent  # noqa: F401
