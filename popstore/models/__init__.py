# Models package — import all models here so Alembic can discover them.

from popstore.models.user import User  # noqa: F401
from popstore.models.plan import StorePlan  # noqa: F401
from popstore.models.store import Store, Product  # noqa: F401
from popstore.models.order import Order  # noqa: F401
from popstore.models.commission import Commission  # noqa: F401
from popstore.models.stripe_event import StripeEvent  # noqa: F401
from popstore.models.audit import AuditEvent  # noqa: F401
