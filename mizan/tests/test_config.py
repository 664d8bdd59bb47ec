import os
import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from mizan.config import Settings


class SettingsTests(unittest.TestCase):
    @patch.dict(os.environ, {}, clear=True)
    def test_defaults(self) -> None:
        settings = Settings.from_env()

        self.assertEqual(settings.default_currency, "USD")
        self.assertEqual(settings.fx_cache_ttl_hours, 12)
        self.assertEqual(settings.report_epoch, date(2024, 1, 1))
        self.assertEqual(settings.reconcile_tolerance, Decimal("0.01"))
        self.assertEqual(settings.log_format, "json")
        self.assertEqual(settings.fx_provider, "live")

    @patch.dict(
        os.environ,
        {
            "DATABASE_URL": "postgresql://localhost/mizan",
            "DEFAULT_CURRENCY": "eur",
            "FX_API_URL": "https://fx.example/v6/latest/",
            "FX_PROVIDER": "Static",
            "FX_CACHE_TTL_HOURS": "6",
            "FX_MAX_WORKERS": "0",
            "REPORT_EPOCH": "2023-01-01",
            "LOG_LEVEL": "debug",
            "LOG_FORMAT": " TEXT ",
        },
        clear=True,
    )
    def test_reads_environment(self) -> None:
        settings = Settings.from_env()

        self.assertEqual(settings.database_url, "postgresql://localhost/mizan")
        self.assertEqual(settings.default_currency, "EUR")
        self.assertEqual(settings.fx_api_url, "https://fx.example/v6/latest")
        self.assertEqual(settings.fx_provider, "static")
        self.assertEqual(settings.fx_cache_ttl_hours, 6)
        self.assertEqual(settings.fx_max_workers, 1)
        self.assertEqual(settings.report_epoch, date(2023, 1, 1))
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.log_format, "text")

    @patch.dict(os.environ, {"DEFAULT_CURRENCY": "euros"}, clear=True)
    def test_invalid_currency_falls_back(self) -> None:
        self.assertEqual(Settings.from_env().default_currency, "USD")

    @patch.dict(os.environ, {"FX_CACHE_TTL_HOURS": "soon"}, clear=True)
    def test_invalid_number_raises(self) -> None:
        with self.assertRaises(ValueError):
            Settings.from_env()


    @patch.dict(os.environ, {"FX_PROVIDER": "offline"}, clear=True)
    def test_unknown_fx_provider_raises(self) -> None:
        with self.assertRaises(ValueError):
            Settings.from_env()

if __name__ == "__main__":
    unittest.main()
