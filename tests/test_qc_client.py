#!/usr/bin/env python3
"""Tests for agent_links/qc_client.py: retry loop, error taxonomy, wire handler."""

import asyncio
import json
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, patch

import aiohttp

from agent_links.config import QCSettings
from agent_links.qc_client import (
    ProviderResponse,
    QCRetrievalEngine,
    QCRetrievalError,
    QCState,
    handle_qc_request,
    is_supported_goods_url,
)

GOODS_URL = "https://item.taobao.com/item.htm?id=752468272997"

SUCCESS_BODY = json.dumps({
    "status": "success",
    "data": [
        {"image_url": "https://img/1.jpg", "qc_date": "2026-10-01 10:00:00", "product_name": "Hoodie"},
        {"image_url": "https://img/2.jpg", "qc_date": "2026-10-01 10:03:00", "product_name": "Hoodie"},
        {"image_url": "https://img/3.jpg", "qc_date": "2026-10-01 10:12:00", "product_name": "Hoodie"},
    ],
})


def ok(body=SUCCESS_BODY):
    return ProviderResponse(status=200, text=body)


def direct_settings(**overrides):
    return QCSettings(qc_api_token="t", qc_proxy_url=None, **overrides)


def proxy_settings(**overrides):
    return QCSettings(qc_api_token="t", qc_proxy_url="http://proxy.local/api/qc-images", **overrides)


class EngineTestCase(unittest.IsolatedAsyncioTestCase):

    def make_engine(self, settings=None, sleep=None):
        self.states = []
        self.sleep = sleep or AsyncMock()
        return QCRetrievalEngine(
            settings or direct_settings(),
            session=object(),
            sleep=self.sleep,
            on_state=self.states.append,
        )


# ---------------------------------------------------------------
# Validation
# ---------------------------------------------------------------

class TestValidation(EngineTestCase):

    async def test_missing_goods_url(self):
        engine = self.make_engine()
        with self.assertRaises(QCRetrievalError) as ctx:
            await engine.retrieve("")
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("missing_goods_url", 400))

    async def test_not_a_url(self):
        engine = self.make_engine()
        with self.assertRaises(QCRetrievalError) as ctx:
            await engine.retrieve("just some text")
        self.assertEqual(ctx.exception.error_code, "invalid_goods_url")

    async def test_unsupported_marketplace_after_normalization(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock()) as direct:
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve("https://example.com/item?id=1")
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("invalid_goods_url", 400))
        direct.assert_not_awaited()

    def test_is_supported_goods_url(self):
        self.assertTrue(is_supported_goods_url(GOODS_URL))
        self.assertTrue(is_supported_goods_url("https://www.jd.com/1.html"))
        self.assertFalse(is_supported_goods_url("https://cnfans.com/product?id=1"))
        self.assertFalse(is_supported_goods_url("ftp://item.taobao.com/x"))


# ---------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------

class TestRetrieve(EngineTestCase):

    async def test_success_with_galleries(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok())):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.status, "success")
        self.assertEqual(len(result.data), 3)
        self.assertEqual([g.image_count for g in result.galleries], [2, 1])
        self.assertEqual(result.normalizedUrl, GOODS_URL)
        self.assertEqual(
            self.states,
            [QCState.IDLE, QCState.NORMALIZING, QCState.DIRECT_ATTEMPT, QCState.SUCCESS],
        )

    async def test_aggregator_link_is_normalized_before_calling(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok())) as direct:
            result = await engine.retrieve("https://cnfans.com/product?id=42&platform=WEIDIAN")
        self.assertEqual(result.normalizedUrl, "https://weidian.com/item.html?itemID=42")
        self.assertEqual(direct.await_args.args[2], "https://weidian.com/item.html?itemID=42")

    async def test_extra_image_fields_preserved(self):
        body = json.dumps({"status": "success", "data": [
            {"image_url": "u", "qc_date": "2026-10-01 10:00:00", "warehouse": "GZ"},
        ]})
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.model_dump()["data"][0]["warehouse"], "GZ")

    async def test_proxy_first(self):
        engine = self.make_engine(proxy_settings())
        with patch("agent_links.qc_client.call_proxy_server", new=AsyncMock(return_value=ok())) as proxy, \
             patch("agent_links.qc_client.call_direct_api", new=AsyncMock()) as direct:
            await engine.retrieve(GOODS_URL)
        proxy.assert_awaited_once()
        direct.assert_not_awaited()

    async def test_proxy_failure_falls_back_to_direct(self):
        engine = self.make_engine(proxy_settings())
        with patch("agent_links.qc_client.call_proxy_server",
                   new=AsyncMock(return_value=ProviderResponse(status=502, text="bad gateway"))), \
             patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok())) as direct:
            result = await engine.retrieve(GOODS_URL)
        direct.assert_awaited_once()
        self.assertEqual(len(result.data), 3)
        self.assertEqual(
            self.states,
            [QCState.IDLE, QCState.NORMALIZING, QCState.PROXY_ATTEMPT,
             QCState.DIRECT_ATTEMPT, QCState.SUCCESS],
        )

    async def test_proxy_unreachable_falls_back_to_direct(self):
        engine = self.make_engine(proxy_settings())
        with patch("agent_links.qc_client.call_proxy_server",
                   new=AsyncMock(side_effect=aiohttp.ClientConnectionError("refused"))), \
             patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok())):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.status, "success")
        self.sleep.assert_not_awaited()

    async def test_token_error_retries_with_linear_backoff(self):
        token_error = ProviderResponse(status=401, text='{"message": "Invalid Token"}')
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(side_effect=[token_error, token_error, ok()])) as direct:
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(direct.await_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.await_args_list], [1.0, 2.0])
        self.assertEqual(result.status, "success")
        self.assertEqual(self.states.count(QCState.RETRYING), 2)

    async def test_transport_error_retries(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(side_effect=[asyncio.TimeoutError(), ok()])):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.status, "success")
        self.sleep.assert_awaited_once_with(1.0)

    async def test_forbidden_logged_as_whitelist_problem(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(side_effect=[ProviderResponse(status=403, text="Forbidden"), ok()])):
            with self.assertLogs("agent_links.qc_client", level="WARNING") as logs:
                await engine.retrieve(GOODS_URL)
        self.assertTrue(any("whitelisted" in line for line in logs.output))

    async def test_no_images_marker_stops_immediately(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ProviderResponse(status=404, text="No QC images found"))) as direct:
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve(GOODS_URL)
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("no_images_found", 404))
        direct.assert_awaited_once()
        self.sleep.assert_not_awaited()
        self.assertEqual(self.states[-1], QCState.NOT_FOUND)

    async def test_deadline_exceeded(self):
        engine = self.make_engine(sleep=asyncio.sleep)
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ProviderResponse(status=500, text="oops"))):
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve(GOODS_URL, deadline=0.05)
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("api_error", 502))
        self.assertEqual(self.states[-1], QCState.ERROR)

    async def test_deadline_bounds_a_hanging_attempt(self):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        engine = self.make_engine(sleep=asyncio.sleep)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(side_effect=hang)):
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve(GOODS_URL, deadline=0.05)
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("api_error", 502))
        self.assertLess(loop.time() - started, 2)
        self.assertEqual(self.states[-1], QCState.ERROR)

    async def test_cancellation_stops_the_loop(self):
        engine = self.make_engine(sleep=asyncio.sleep)
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ProviderResponse(status=500, text="oops"))):
            task = asyncio.create_task(engine.retrieve(GOODS_URL))
            await asyncio.sleep(0.05)
            task.cancel()
            with self.assertRaises(asyncio.CancelledError):
                await task


# ---------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------

class TestParse(EngineTestCase):

    CASES = [
        ("", "no_images_found", 404),
        ("<html>oops</html>", "no_images_found", 404),
        ('["not", "a", "dict"]', "no_images_found", 404),
        ('{"status": "error", "message": "No QC images found"}', "no_images_found", 404),
        ('{"status": "error", "message": "Token expired"}', "invalid_token", 400),
        ('{"status": "error", "message": "Something broke"}', "api_error", 400),
        ('{"status": "pending"}', "unexpected_status", 500),
        ('{"status": "success", "data": {}}', "invalid_data_structure", 500),
        ('{"status": "success", "data": [{"qc_date": "x"}]}', "invalid_data_structure", 500),
    ]

    async def test_error_taxonomy(self):
        for body, code, status in self.CASES:
            with self.subTest(body=body):
                engine = self.make_engine()
                with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
                    with self.assertRaises(QCRetrievalError) as ctx:
                        await engine.retrieve(GOODS_URL)
                self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), (code, status))

    async def test_api_error_keeps_provider_message(self):
        engine = self.make_engine()
        body = '{"status": "error", "message": "Something broke"}'
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve(GOODS_URL)
        self.assertEqual(ctx.exception.message, "Something broke")

    async def test_empty_data_list_is_success(self):
        engine = self.make_engine()
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ok('{"status": "success", "data": []}'))):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.data, [])
        self.assertEqual(result.galleries, [])

    async def test_non_string_message_is_api_error(self):
        engine = self.make_engine()
        body = '{"status": "error", "message": {"detail": "x"}}'
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
            with self.assertRaises(QCRetrievalError) as ctx:
                await engine.retrieve(GOODS_URL)
        self.assertEqual((ctx.exception.error_code, ctx.exception.http_status), ("api_error", 400))

    async def test_null_product_name_is_accepted(self):
        engine = self.make_engine()
        body = json.dumps({"status": "success", "data": [
            {"image_url": "https://img/1.jpg", "qc_date": "2026-10-01 10:00:00", "product_name": None},
        ]})
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.data[0].product_name, "")
        self.assertEqual(len(result.galleries), 1)

    async def test_numeric_epoch_qc_date_is_grouped(self):
        engine = self.make_engine()
        body = json.dumps({"status": "success", "data": [
            {"image_url": "https://img/1.jpg", "qc_date": 1700000000000, "product_name": "Hoodie"},
            {"image_url": "https://img/2.jpg", "qc_date": 1700000060000.0, "product_name": "Hoodie"},
        ]})
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok(body))):
            result = await engine.retrieve(GOODS_URL)
        self.assertEqual(result.data[0].qc_date, "1700000000000")
        self.assertEqual(result.data[1].qc_date, "1700000060000")
        self.assertEqual(len(result.galleries), 1)
        gallery = result.galleries[0]
        self.assertEqual(gallery.image_count, 2)
        self.assertFalse(gallery.id.startswith("gallery_undated"))
        self.assertEqual(gallery.time, datetime.fromtimestamp(1700000000).strftime("%H:%M:%S"))


# ---------------------------------------------------------------
# handle_qc_request
# ---------------------------------------------------------------

class TestHandleQcRequest(unittest.IsolatedAsyncioTestCase):

    def make_engine(self, **overrides):
        return QCRetrievalEngine(direct_settings(**overrides), session=object(), sleep=AsyncMock())

    async def test_missing_goods_url(self):
        for payload in ({}, {"goodsUrl": ""}, {"goodsUrl": None}, None):
            with self.subTest(payload=payload):
                status, body = await handle_qc_request(payload, engine=self.make_engine())
                self.assertEqual(status, 400)
                self.assertEqual(body["status"], "error")
                self.assertEqual(body["error_code"], "missing_goods_url")
                self.assertIn("timestamp", body)

    async def test_non_string_goods_url(self):
        status, body = await handle_qc_request({"goodsUrl": 123}, engine=self.make_engine())
        self.assertEqual((status, body["error_code"]), (400, "invalid_goods_url"))

    async def test_success_body(self):
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(return_value=ok())):
            status, body = await handle_qc_request({"goodsUrl": GOODS_URL}, engine=self.make_engine())
        self.assertEqual(status, 200)
        self.assertEqual(body["status"], "success")
        self.assertEqual(body["normalizedUrl"], GOODS_URL)
        self.assertEqual(len(body["galleries"]), 2)
        self.assertTrue(body["timestamp"].endswith("Z"))

    async def test_not_found(self):
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ProviderResponse(status=404, text="No QC images found"))):
            status, body = await handle_qc_request({"goodsUrl": GOODS_URL}, engine=self.make_engine())
        self.assertEqual((status, body["error_code"]), (404, "no_images_found"))

    async def test_unexpected_exception_becomes_internal_error(self):
        with patch("agent_links.qc_client.call_direct_api", new=AsyncMock(side_effect=RuntimeError("boom"))):
            with self.assertLogs("agent_links.qc_client", level="ERROR"):
                status, body = await handle_qc_request({"goodsUrl": GOODS_URL}, engine=self.make_engine())
        self.assertEqual((status, body["error_code"]), (500, "internal_server_error"))
        self.assertIn("boom", body["message"])

    async def test_settings_deadline_applies(self):
        engine = QCRetrievalEngine(direct_settings(qc_deadline=0.05), session=object(), sleep=asyncio.sleep)
        with patch("agent_links.qc_client.call_direct_api",
                   new=AsyncMock(return_value=ProviderResponse(status=500, text="oops"))):
            status, body = await handle_qc_request({"goodsUrl": GOODS_URL}, engine=engine)
        self.assertEqual((status, body["error_code"]), (502, "api_error"))


if __name__ == "__main__":
    unittest.main()
