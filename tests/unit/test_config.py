"""
Unit Tests - Configuration
==========================
Settings validation and derived values.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from config import Settings


def make_settings(**overrides) -> Settings:
    values = {
        "supabase_url": "https://project.supabase.co/",
        "supabase_service_role_key": "service-key",
        "meli_client_id": "",
        "meli_client_secret": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSettings:
    """Validation rules of the Settings model."""

    @pytest.mark.unit
    def test_urls(self):
        settings = make_settings()
        assert settings.supabase_url == "https://project.supabase.co"
        assert settings.rest_url == "https://project.supabase.co/rest/v1"
        assert settings.auth_url == "https://project.supabase.co/auth/v1"

    @pytest.mark.unit
    def test_blank_service_key_rejected(self):
        with pytest.raises(PydanticValidationError):
            make_settings(supabase_service_role_key="   ")

    @pytest.mark.unit
    def test_token_storage_normalized(self):
        assert make_settings(token_storage=" KV ").token_storage == "kv"
        with pytest.raises(PydanticValidationError):
            make_settings(token_storage="s3")

    @pytest.mark.unit
    def test_multiget_batch_limit(self):
        with pytest.raises(PydanticValidationError):
            make_settings(meli_items_batch_size=21)

    @pytest.mark.unit
    def test_order_cap_must_cover_a_page(self):
        with pytest.raises(PydanticValidationError):
            make_settings(meli_page_limit=50, meli_max_orders=10)

    @pytest.mark.unit
    def test_meli_configured(self):
        assert make_settings().meli_configured is False
        assert make_settings(meli_client_id="id", meli_client_secret="secret").meli_configured is True

    @pytest.mark.unit
    def test_defaults(self):
        settings = make_settings()
        assert settings.token_storage == "database"
        assert settings.scan_debounce_seconds == 2.0
        assert settings.meli_page_limit == 50
