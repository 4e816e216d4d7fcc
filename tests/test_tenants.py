"""
Tenant resolution tests: secret lookup, eager config snapshot, misses.
"""

import pytest

from clinic_bot.tenants import TenantNotFound, resolve_tenant, resolve_tenant_by_session_id
from tests.conftest import WEBHOOK_SECRET, make_clinic


class TestResolveTenant:

    def test_resolves_by_secret(self, db, clinic):
        tenant = resolve_tenant(db, WEBHOOK_SECRET)
        assert tenant.id == clinic.id
        assert tenant.session.api_key == "api-key-101"
        assert tenant.user.clinic_name == "Smile Dental"

    def test_config_snapshot(self, db, clinic):
        config = resolve_tenant(db, WEBHOOK_SECRET).config
        assert config.address == "12 Palm Street, Dubai"
        assert config.currency == "AED"
        assert config.language_preference == "bilingual"
        assert config.working_hours["monday"] == {"open": "09:00", "close": "17:00"}
        assert [s.name_en for s in config.services] == ["Cleaning"]
        assert [k.keyword for k in config.keywords] == ["help with insurance"]

    def test_unknown_secret(self, db, clinic):
        with pytest.raises(TenantNotFound):
            resolve_tenant(db, "whsec-nobody")

    def test_empty_secret(self, db, clinic):
        with pytest.raises(TenantNotFound):
            resolve_tenant(db, None)

    def test_secret_match_is_exact(self, db, clinic):
        with pytest.raises(TenantNotFound):
            resolve_tenant(db, WEBHOOK_SECRET.upper())

    def test_picks_the_right_clinic(self, db, clinic):
        other = make_clinic(db, email="other@example.com", secret="whsec-two", provider_id="202")
        assert resolve_tenant(db, "whsec-two").id == other.id
        assert resolve_tenant(db, WEBHOOK_SECRET).id == clinic.id

    def test_inactive_account_not_resolved(self, db, clinic):
        clinic.user.is_active = False
        db.add(clinic.user)
        db.commit()
        with pytest.raises(TenantNotFound):
            resolve_tenant(db, WEBHOOK_SECRET)

    def test_default_currency_applies(self, db):
        wa = make_clinic(db, secret="whsec-nocur")
        wa.user.currency = None
        db.add(wa.user)
        db.commit()
        assert resolve_tenant(db, "whsec-nocur", default_currency="SAR").config.currency == "SAR"

    def test_by_provider_session_id(self, db, clinic):
        assert resolve_tenant_by_session_id(db, "101").id == clinic.id
        with pytest.raises(TenantNotFound):
            resolve_tenant_by_session_id(db, "999")
