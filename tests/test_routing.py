"""
Tests for inbound phone -> tenant resolution.
"""
from datetime import datetime, timedelta

import pytest

from conversations.models import Conversation
from models import Tenant
from shared_utils.errors import RoutingError
from tenants.routing import TenantRouter

TEST_NUMBER = "+15556485637"


def add_tenant(db, tenant_id, verified=True, created_at=None):
    tenant = Tenant(
        id=tenant_id,
        organization=f"{tenant_id} org",
        verified=verified,
        created_at=created_at or datetime.utcnow(),
    )
    db.add(tenant)
    db.commit()
    return tenant


class TestTenantRouter:
    def test_sandbox_number_routes_to_test_tenant(self, db_session):
        add_tenant(db_session, "oldest", created_at=datetime.utcnow() - timedelta(days=10))
        add_tenant(db_session, "sandbox", verified=False)

        decision = TenantRouter(db_session, [TEST_NUMBER], "sandbox").resolve(TEST_NUMBER)

        assert decision.tenant_id == "sandbox"
        assert decision.rule == "sandbox"

    @pytest.mark.parametrize("configured", ["15556485637", " +1 (555) 648-5637 "])
    def test_configured_test_numbers_are_normalized(self, db_session, configured):
        add_tenant(db_session, "oldest", created_at=datetime.utcnow() - timedelta(days=10))
        add_tenant(db_session, "sandbox", verified=False)

        decision = TenantRouter(db_session, [configured], "sandbox").resolve(TEST_NUMBER)

        assert decision.tenant_id == "sandbox"

    def test_unusable_test_numbers_are_ignored(self, db_session):
        assert TenantRouter(db_session, ["", "abc"], "sandbox").test_numbers == set()

    def test_sandbox_ignored_when_test_tenant_missing(self, db_session):
        add_tenant(db_session, "only")
        decision = TenantRouter(db_session, [TEST_NUMBER], "ghost").resolve(TEST_NUMBER)
        assert decision.tenant_id == "only"
        assert decision.rule == "default"

    def test_continuity_uses_most_recent_conversation(self, db_session):
        add_tenant(db_session, "first", created_at=datetime.utcnow() - timedelta(days=5))
        add_tenant(db_session, "second")
        phone = "+14155550100"
        db_session.add(Conversation(tenant_id="first", customer_phone=phone, status="archived"))
        db_session.commit()
        db_session.add(Conversation(tenant_id="second", customer_phone=phone, status="active"))
        db_session.commit()

        decision = TenantRouter(db_session).resolve(phone)

        assert decision.tenant_id == "second"
        assert decision.rule == "continuity"

    def test_new_customer_gets_earliest_verified_tenant(self, db_session):
        add_tenant(db_session, "unverified_old", verified=False, created_at=datetime.utcnow() - timedelta(days=30))
        add_tenant(db_session, "verified_old", created_at=datetime.utcnow() - timedelta(days=20))
        add_tenant(db_session, "verified_new")

        decision = TenantRouter(db_session).resolve("+14155550199")

        assert decision.tenant_id == "verified_old"
        assert decision.rule == "default"

    def test_no_tenants_resolves_to_none(self, db_session):
        assert TenantRouter(db_session, [TEST_NUMBER], None).resolve("+14155550100") is None

    def test_resolve_or_raise(self, db_session):
        with pytest.raises(RoutingError) as exc_info:
            TenantRouter(db_session).resolve_or_raise("+14155550100")
        assert exc_info.value.phone == "+14155550100"
