"""
Tests for configuration loading.
"""

import pytest
from pydantic import ValidationError

from src.config import (
    AppSettings,
    LedgerSettings,
    get_settings,
    validate_all_settings,
)


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestLedgerSettings:

    def test_defaults(self, monkeypatch):
        for name in (
            "LEDGER_CURRENCY_SYMBOL",
            "LEDGER_INVARIANT_TOLERANCE_CENTS",
            "LEDGER_SETTLEMENT_TOLERANCE_CENTS",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = LedgerSettings()
        assert settings.currency_symbol == "€"
        assert settings.currency_code == "EUR"
        assert settings.invariant_tolerance_cents == 0
        assert settings.settlement_tolerance_cents == 0

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LEDGER_CURRENCY_SYMBOL", "£")
        monkeypatch.setenv("LEDGER_SETTLEMENT_TOLERANCE_CENTS", "2")

        settings = get_settings().ledger
        assert settings.currency_symbol == "£"
        assert settings.settlement_tolerance_cents == 2

    def test_tolerance_bounds(self):
        with pytest.raises(ValidationError):
            LedgerSettings(invariant_tolerance_cents=-1)

    def test_currency_code_format(self):
        with pytest.raises(ValidationError):
            LedgerSettings(currency_code="euro")


class TestAppSettings:

    def test_storage_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "google_sheets")
        assert AppSettings().uses_google_sheets is True

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            AppSettings(storage_backend="postgres")

    def test_validate_all_settings_skips_sheets_for_memory(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        results = validate_all_settings()
        assert results["ledger"] is True
        assert results["app"] is True
        assert "google_sheets" not in results

    def test_validate_all_settings_reports_missing_sheets_config(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "google_sheets")
        monkeypatch.delenv("GOOGLE_SHEETS_CREDENTIALS_PATH", raising=False)
        monkeypatch.delenv("GOOGLE_SHEETS_SPREADSHEET_ID", raising=False)

        results = validate_all_settings()
        assert results["google_sheets"] is False
        assert "google_sheets_error" in results


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
