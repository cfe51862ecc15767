"""Tests for server.app -- the transfer endpoint over a real aiohttp server."""

import unittest

from aiohttp.test_utils import AioHTTPTestCase

from common.env import ConfigurationError
from common.payload import PayloadCache, PayloadGenerator
from server.app import _read_body, create_app, upload_speed_mbps
from server.config import ServerConfig, load_server_config

KIB = 1024


def small_config(**overrides):
    values = dict(
        min_file_size=1 * KIB,
        max_file_size=64 * KIB,
        max_upload_size=32 * KIB,
        preset_sizes=[1 * KIB, 4 * KIB],
    )
    values.update(overrides)
    return ServerConfig(**values)


class BrokenCache(PayloadCache):
    def get(self, size):
        raise RuntimeError("disk on fire")


class TestDownload(AioHTTPTestCase):
    async def get_application(self):
        return create_app(small_config())

    async def _download(self, body):
        return await self.client.post("/transfer", json=body)

    async def test_exact_size_and_headers(self):
        resp = await self._download({"type": "download", "size": 5000})
        self.assertEqual(resp.status, 200)
        data = await resp.read()
        self.assertEqual(len(data), 5000)
        self.assertEqual(resp.headers["Content-Length"], "5000")
        self.assertEqual(resp.headers["X-Transfer-Size"], "5000")
        self.assertIn("no-store", resp.headers["Cache-Control"])
        self.assertEqual(resp.headers["Pragma"], "no-cache")
        self.assertEqual(resp.content_type, "application/octet-stream")

    async def test_preset_size(self):
        resp = await self._download({"type": "download", "size": 4 * KIB})
        self.assertEqual(len(await resp.read()), 4 * KIB)

    async def test_size_below_min_is_clamped(self):
        resp = await self._download({"type": "download", "size": 10})
        self.assertEqual(resp.status, 200)
        self.assertEqual(len(await resp.read()), 1 * KIB)

    async def test_size_above_max_is_clamped(self):
        resp = await self._download({"type": "download", "size": 10**9})
        self.assertEqual(resp.status, 200)
        self.assertEqual(len(await resp.read()), 64 * KIB)

    async def test_missing_size_uses_min(self):
        resp = await self._download({"type": "download"})
        self.assertEqual(len(await resp.read()), 1 * KIB)

    async def test_wrong_type_rejected(self):
        resp = await self._download({"type": "upload", "size": 2048})
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["error"], "Invalid test type")

    async def test_non_integer_size_rejected(self):
        for size in ("2048", 2048.5, True, None):
            resp = await self._download({"type": "download", "size": size})
            self.assertEqual(resp.status, 400, size)

    async def test_invalid_json_rejected(self):
        resp = await self.client.post(
            "/transfer", data=b"{not json", headers={"Content-Type": "application/json"},
        )
        self.assertEqual(resp.status, 400)
        self.assertIn("error", await resp.json())

    async def test_non_object_json_rejected(self):
        resp = await self._download([1, 2, 3])
        self.assertEqual(resp.status, 400)

    async def test_invalid_content_type(self):
        resp = await self.client.post("/transfer", data="hello", headers={"Content-Type": "text/plain"})
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["error"], "Invalid content type")


class TestUpload(AioHTTPTestCase):
    async def get_application(self):
        return create_app(small_config())

    async def _upload(self, body):
        return await self.client.post(
            "/transfer", data=body, headers={"Content-Type": "application/octet-stream"},
        )

    async def test_ack(self):
        resp = await self._upload(b"x" * 10_000)
        self.assertEqual(resp.status, 200)
        ack = await resp.json()
        self.assertTrue(ack["success"])
        self.assertEqual(ack["type"], "upload")
        self.assertEqual(ack["size"], 10_000)
        self.assertGreaterEqual(ack["speed"], 0.1)
        self.assertGreaterEqual(ack["duration"], 0)
        self.assertIn("timestamp", ack)
        self.assertIn("no-store", resp.headers["Cache-Control"])

    async def test_at_ceiling_accepted(self):
        resp = await self._upload(b"x" * (32 * KIB))
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["size"], 32 * KIB)

    async def test_declared_length_over_ceiling_rejected(self):
        resp = await self._upload(b"x" * (32 * KIB + 1))
        self.assertEqual(resp.status, 400)
        self.assertIn("too large", (await resp.json())["error"])

    async def _upload_chunked(self, total, chunk=8 * KIB):
        async def body():
            sent = 0
            while sent < total:
                piece = min(chunk, total - sent)
                sent += piece
                yield b"x" * piece

        return await self.client.post(
            "/transfer", data=body(), headers={"Content-Type": "application/octet-stream"},
        )

    async def test_chunked_body_within_ceiling(self):
        resp = await self._upload_chunked(20 * KIB)
        self.assertEqual(resp.status, 200)
        self.assertEqual((await resp.json())["size"], 20 * KIB)

    async def test_chunked_body_over_ceiling_rejected(self):
        resp = await self._upload_chunked(40 * KIB)
        self.assertIsNone(resp.request_info.headers.get("Content-Length"))
        self.assertEqual(resp.status, 400)
        self.assertIn("too large", (await resp.json())["error"])

    async def test_empty_body_rejected(self):
        resp = await self._upload(b"")
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["error"], "No request body")


class TestCapabilitiesAndPing(AioHTTPTestCase):
    async def get_application(self):
        return create_app(small_config(server_name="Test Node", server_location="Lab"))

    async def test_capabilities(self):
        resp = await self.client.get("/transfer")
        self.assertEqual(resp.status, 200)
        caps = await resp.json()
        self.assertEqual(caps["status"], "ready")
        self.assertEqual(caps["server"], "Test Node")
        self.assertEqual(caps["location"], "Lab")
        self.assertEqual(caps["minFileSize"], 1 * KIB)
        self.assertEqual(caps["maxFileSize"], 64 * KIB)
        self.assertEqual(caps["maxUploadSize"], 32 * KIB)
        self.assertEqual(caps["presetSizes"], [1 * KIB, 4 * KIB])
        self.assertEqual(caps["supportedTests"], ["download", "upload"])
        self.assertGreaterEqual(caps["uptime"], 0)

    async def test_ping_get(self):
        resp = await self.client.get("/ping")
        self.assertEqual(resp.status, 200)
        body = await resp.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["server"], "Test Node")

    async def test_ping_head(self):
        resp = await self.client.head("/ping")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.read(), b"")
        self.assertIn("no-cache", resp.headers["Cache-Control"])


class TestUnexpectedError(AioHTTPTestCase):
    async def get_application(self):
        config = small_config()
        cache = BrokenCache(PayloadGenerator(config.min_file_size, config.max_file_size))
        return create_app(config, payloads=cache)

    async def test_reported_as_500_with_details(self):
        resp = await self.client.post("/transfer", json={"type": "download", "size": 2048})
        self.assertEqual(resp.status, 500)
        body = await resp.json()
        self.assertEqual(body["error"], "Test failed")
        self.assertEqual(body["details"], "disk on fire")


class _FakeContent:
    def __init__(self, chunks):
        self._chunks = chunks
        self.consumed = 0

    async def iter_chunked(self, n):
        for chunk in self._chunks:
            self.consumed += 1
            yield chunk


class _FakeRequest:
    def __init__(self, chunks):
        self.content = _FakeContent(chunks)


class TestStreamingReader(unittest.IsolatedAsyncioTestCase):
    async def test_counts_bytes(self):
        request = _FakeRequest([b"a" * 100, b"b" * 50])
        self.assertEqual(await _read_body(request, ceiling=1000), 150)

    async def test_stops_as_soon_as_ceiling_passed(self):
        from common.protocol import ServerTransferError

        chunks = [b"x" * 1024] * 1000
        request = _FakeRequest(chunks)
        with self.assertRaises(ServerTransferError):
            await _read_body(request, ceiling=4 * 1024)
        # Only the chunks needed to cross the ceiling were pulled off the wire.
        self.assertEqual(request.content.consumed, 5)


class TestUploadSpeed(unittest.TestCase):
    def test_regular(self):
        self.assertAlmostEqual(upload_speed_mbps(1_000_000, 1000), 8.0)

    def test_floor(self):
        self.assertEqual(upload_speed_mbps(1, 1000), 0.1)

    def test_zero_duration(self):
        self.assertEqual(upload_speed_mbps(1000, 0), 0.1)


class TestServerConfig(unittest.TestCase):
    def test_defaults(self):
        config = ServerConfig()
        self.assertEqual(config.min_file_size, 1024 * 1024)
        self.assertEqual(config.max_file_size, 50 * 1024 * 1024)
        self.assertEqual(config.max_upload_size, config.max_file_size)

    def test_env_overrides(self):
        config = load_server_config({
            "SPEEDCHECK_MIN_FILE_SIZE": "1024",
            "SPEEDCHECK_MAX_FILE_SIZE": "2048",
            "SPEEDCHECK_PRESET_SIZES": "1024, 2048",
            "SPEEDCHECK_PORT": "9090",
        })
        self.assertEqual(config.max_file_size, 2048)
        self.assertEqual(config.max_upload_size, 2048)
        self.assertEqual(config.preset_sizes, [1024, 2048])
        self.assertEqual(config.port, 9090)

    def test_malformed_env(self):
        with self.assertRaises(ConfigurationError):
            load_server_config({"SPEEDCHECK_MAX_FILE_SIZE": "lots"})

    def test_inverted_bounds(self):
        with self.assertRaises(ConfigurationError):
            ServerConfig(min_file_size=4096, max_file_size=1024).validate()

    def test_bad_port(self):
        with self.assertRaises(ConfigurationError):
            ServerConfig(port=70000).validate()


if __name__ == "__main__":
    unittest.main()
