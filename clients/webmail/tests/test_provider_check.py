import unittest

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestServer

from webmail.provider_check import (
    PROVIDER_INVALID,
    PROVIDER_MISSING,
    PROVIDER_VALID,
    ProviderCheck,
    validate_provider_id,
)


async def rpc_handler(request: web.Request) -> web.Response:
    client_id = request.match_info["client_id"]
    payload = await request.json()
    request.app["calls"].append((client_id, payload))
    if client_id == "good":
        return web.json_response({"jsonrpc": "2.0", "id": payload["id"], "result": "0x1"})
    if client_id == "revoked":
        return web.Response(status=401, text="invalid client id")
    if client_id == "silent":
        return web.Response(status=403)
    if client_id == "limited":
        return web.json_response({"jsonrpc": "2.0", "id": 1, "error": {"code": -32005, "message": "rate limited"}})
    if client_id == "garbage":
        return web.Response(text="<html>oops</html>")
    return web.json_response({"jsonrpc": "2.0", "id": 1})


class ValidateProviderIdTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = web.Application()
        self.app["calls"] = []
        self.app.router.add_post("/rpc/{client_id}", rpc_handler)
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.rpc_url = str(self.server.make_url("/rpc"))

    async def asyncTearDown(self):
        await self.server.close()

    async def _check(self, client_id):
        return await validate_provider_id(client_id, rpc_url=self.rpc_url, timeout_seconds=5)

    async def test_blank_id_is_missing_without_a_request(self):
        self.assertEqual(await self._check("  "), ProviderCheck(PROVIDER_MISSING))
        self.assertEqual(self.app["calls"], [])

    async def test_result_means_valid(self):
        self.assertEqual(await self._check(" good "), ProviderCheck(PROVIDER_VALID))

        [(client_id, payload)] = self.app["calls"]
        self.assertEqual(client_id, "good")
        self.assertEqual(payload["method"], "eth_chainId")
        self.assertEqual(payload["params"], [])

    async def test_http_error_reports_status_and_body(self):
        self.assertEqual(await self._check("revoked"), ProviderCheck(PROVIDER_INVALID, "HTTP 401: invalid client id"))
        self.assertEqual(await self._check("silent"), ProviderCheck(PROVIDER_INVALID, "HTTP 403"))

    async def test_rpc_error_message_is_surfaced(self):
        self.assertEqual(await self._check("limited"), ProviderCheck(PROVIDER_INVALID, "rate limited"))

    async def test_unexpected_bodies(self):
        self.assertEqual(await self._check("empty"), ProviderCheck(PROVIDER_INVALID, "Unexpected response"))
        self.assertEqual(await self._check("garbage"), ProviderCheck(PROVIDER_INVALID, "Unexpected response"))

    async def test_transport_error_is_invalid(self):
        result = await validate_provider_id("good", rpc_url="http://127.0.0.1:1", timeout_seconds=2)

        self.assertEqual(result.status, PROVIDER_INVALID)
        self.assertTrue(result.error)

    async def test_shared_session_is_left_open(self):
        async with aiohttp.ClientSession() as session:
            result = await validate_provider_id("good", rpc_url=self.rpc_url, session=session)
            self.assertEqual(result.status, PROVIDER_VALID)
            self.assertFalse(session.closed)


if __name__ == "__main__":
    unittest.main()
