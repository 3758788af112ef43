#!/usr/bin/env python3
"""Tests for convert_links.py: report building for the CLI."""

import unittest
from unittest.mock import AsyncMock, patch

import convert_links
from agent_links.config import QCSettings


class TestFormatQcSection(unittest.TestCase):

    def test_error(self):
        text = convert_links.format_qc_section(
            "u", 404, {"status": "error", "message": "No QC images found", "error_code": "no_images_found"})
        self.assertIn("**Error** (no_images_found, HTTP 404): No QC images found", text)

    def test_success(self):
        body = {
            "normalizedUrl": "https://item.taobao.com/item.htm?id=1",
            "data": [{"image_url": "https://qc/1.jpg"}],
            "galleries": [{
                "date": "2026-10-01 10:00:00", "time": "10:00:00", "image_count": 1,
                "images": [{"image_url": "https://qc/1.jpg"}],
            }],
        }
        text = convert_links.format_qc_section("u", 200, body)
        self.assertIn("**Photos**: 1 in 1 galleries", text)
        self.assertIn("- https://qc/1.jpg", text)


class TestRun(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        patcher = patch("convert_links.get_settings", return_value=QCSettings(aff_code="latam"))
        patcher.start()
        self.addCleanup(patcher.stop)

    async def test_links_only(self):
        with patch("convert_links.handle_qc_request", new=AsyncMock()) as qc:
            report = await convert_links.run(["https://oopbuy.com/product/1/3"])
        self.assertIn("https://item.taobao.com/item.htm?id=3", report)
        self.assertIn("affcode=latam", report)
        qc.assert_not_awaited()

    async def test_short_link_resolved_once(self):
        resolver = AsyncMock(return_value="https://item.taobao.com/item.htm?id=752468272997")
        with patch("agent_links.agent_link.resolve_short_link", new=resolver), \
             patch("agent_links.short_link_resolver.resolve_short_link", new=resolver):
            report = await convert_links.run(["https://e.tb.cn/h.abc"])
        resolver.assert_awaited_once()
        self.assertIn("https://item.taobao.com/item.htm?id=752468272997", report)
        self.assertIn("affcode=latam", report)

    async def test_with_qc(self):
        body = {"status": "error", "message": "Invalid goods URL", "error_code": "invalid_goods_url"}
        with patch("convert_links.handle_qc_request", new=AsyncMock(return_value=(400, body))) as qc:
            report = await convert_links.run(["https://example.com/x"], with_qc=True)
        qc.assert_awaited_once_with({'goodsUrl': "https://example.com/x"})
        self.assertIn("## QC: https://example.com/x", report)
        self.assertIn("could not convert", report)


if __name__ == "__main__":
    unittest.main()
