#!/usr/bin/env python3
"""Tests for agent_links/config.py: environment-driven settings."""

import os
import unittest
from unittest.mock import patch

from agent_links.config import DEFAULT_QC_API_URL, QCSettings, get_settings


class TestQCSettings(unittest.TestCase):

    def test_defaults(self):
        settings = QCSettings()
        self.assertEqual(settings.qc_api_url, DEFAULT_QC_API_URL)
        self.assertIsNone(settings.qc_proxy_url)
        self.assertFalse(settings.proxy_enabled)
        self.assertEqual(settings.agent_code, "KakoBuy")

    def test_proxy_enabled(self):
        self.assertTrue(QCSettings(qc_proxy_url="http://proxy/qc").proxy_enabled)


class TestGetSettings(unittest.TestCase):

    def setUp(self):
        get_settings.cache_clear()
        self.addCleanup(get_settings.cache_clear)

    def test_reads_environment(self):
        env = {"QC_API_TOKEN": "secret", "QC_DEADLINE": "30", "AFF_CODE": "promo"}
        with patch.dict(os.environ, env), patch("agent_links.config._load_dotenv"):
            settings = get_settings()
        self.assertEqual(settings.qc_api_token, "secret")
        self.assertEqual(settings.qc_deadline, 30.0)
        self.assertEqual(settings.aff_code, "promo")

    def test_invalid_value(self):
        with patch.dict(os.environ, {"QC_REQUEST_TIMEOUT": "-1"}), patch("agent_links.config._load_dotenv"):
            with self.assertRaises(RuntimeError) as ctx:
                get_settings()
        self.assertIn("QC_REQUEST_TIMEOUT", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
