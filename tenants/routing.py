"""
Inbound phone number -> owning tenant.

Resolution order (first match wins):
  1. sandbox   - configured test number routes to the pinned test tenant
  2. continuity - tenant of the customer's most recent conversation
  3. default   - earliest-registered verified tenant
Otherwise no tenant; the caller drops the message.

Rule 3 stands in for an explicit phone-number-to-tenant binding, which is not
modelled yet. With more than one verified tenant, new customers all land on
the oldest one.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from models import Tenant
from conversations.models import Conversation
from shared_utils.errors import RoutingError
from shared_utils.phone import normalize_phone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RoutingDecision:
    tenant_id: str
    rule: str


class TenantRouter:

    def __init__(
        self,
        db: Session,
        test_numbers: Iterable[str] = (),
        test_tenant_id: Optional[str] = None,
        default_country_code: str = "1",
    ):
        self.db = db
        # Configured numbers may be written without the leading +
        normalized = (normalize_phone(number, default_country_code) for number in test_numbers or ())
        self.test_numbers = {number for number in normalized if number}
        self.test_tenant_id = test_tenant_id

    def resolve(self, phone: str) -> Optional[RoutingDecision]:
        decision = (
            self._sandbox_tenant(phone)
            or self._continuity_tenant(phone)
            or self._default_tenant()
        )
        if decision:
            logger.debug(f"Routed {phone} to tenant {decision.tenant_id} via {decision.rule}")
        return decision

    def resolve_or_raise(self, phone: str) -> RoutingDecision:
        decision = self.resolve(phone)
        if decision is None:
            raise RoutingError(phone)
        return decision

    def _sandbox_tenant(self, phone: str) -> Optional[RoutingDecision]:
        if phone not in self.test_numbers or not self.test_tenant_id:
            return None
        if self.db.get(Tenant, self.test_tenant_id) is None:
            logger.warning(f"Test tenant {self.test_tenant_id} is configured but does not exist")
            return None
        return RoutingDecision(self.test_tenant_id, "sandbox")

    def _continuity_tenant(self, phone: str) -> Optional[RoutingDecision]:
        conversation = (
            self.db.query(Conversation)
            .filter(Conversation.customer_phone == phone)
            .order_by(Conversation.id.desc())
            .first()
        )
        if conversation:
            return RoutingDecision(conversation.tenant_id, "continuity")
        return None

    def _default_tenant(self) -> Optional[RoutingDecision]:
        tenant = (
            self.db.query(Tenant)
            .filter(Tenant.verified.is_(True))
            .order_by(Tenant.created_at, Tenant.id)
            .first()
        )
        if tenant:
            return RoutingDecision(tenant.id, "default")
        return None
