# Models package — import all models here so Alembic can discover them.

from checkout_broker.models.order import Order  # noqa: F401
from checkout_broker.models.idempotency_claim import IdempotencyClaim  # noqa: F401
from checkout_broker.models.gateway_event import GatewayEvent  # noqa: F401
