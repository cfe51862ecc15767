"""Tests for client.orchestrator -- full runs against an in-process server."""

import asyncio
import time
from unittest import mock

from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from client.aggregate import MetricKind, Provenance
from client.config import SpeedTestConfig
from client.grading import GRADES
from client.orchestrator import SpeedTestOrchestrator, TestState
from client.samples import SampleKind
from server.app import create_app
from server.config import ServerConfig

KIB = 1024

PHASES = [
    TestState.PINGING,
    TestState.MEASURING_JITTER,
    TestState.DOWNLOADING,
    TestState.UPLOADING,
    TestState.GRADING,
    TestState.COMPLETE,
]


def local_config(**overrides):
    values = dict(
        ping_servers=[],
        ping_measurements=3,
        jitter_measurements=4,
        ping_delay_ms=0,
        jitter_delay_ms=0,
        min_ping_ms=0.0,
        download_sizes=[4 * KIB, 8 * KIB],
        upload_sizes=[2 * KIB, 4 * KIB],
        deadline_s=30.0,
    )
    values.update(overrides)
    return SpeedTestConfig(**values)


def distinct_states(events):
    states = []
    for event in events:
        if not states or states[-1] is not event.state:
            states.append(event.state)
    return states


class OrchestratorTestCase(AioHTTPTestCase):
    async def get_application(self):
        return create_app(ServerConfig(
            min_file_size=1 * KIB,
            max_file_size=64 * KIB,
            max_upload_size=64 * KIB,
            preset_sizes=[4 * KIB],
        ))

    def orchestrator(self, config=None, base_url=None):
        return SpeedTestOrchestrator(
            config or local_config(),
            base_url=base_url or str(self.client.make_url("")),
            session=self.client.session,
            server_label="test-node",
        )


class TestFullRun(OrchestratorTestCase):
    async def test_runs_every_phase_in_order(self):
        orch = self.orchestrator()
        events = [event async for event in orch.events()]

        self.assertEqual(distinct_states(events), PHASES)
        self.assertEqual(orch.state, TestState.COMPLETE)

        final = events[-1]
        self.assertEqual(final.state, TestState.COMPLETE)
        self.assertEqual(final.progress, 100.0)
        self.assertIsNotNone(final.result)
        self.assertIs(final.result, orch.result)
        self.assertTrue(all(e.result is None for e in events[:-1]))

    async def test_progress_is_monotonic_and_bounded(self):
        events = [event async for event in self.orchestrator().events()]
        progress = [e.progress for e in events]
        self.assertEqual(progress, sorted(progress))
        self.assertEqual(progress[0], 0.0)
        self.assertTrue(all(0.0 <= p <= 100.0 for p in progress))

    async def test_progress_schedule(self):
        events = [event async for event in self.orchestrator().events()]
        spans = {
            TestState.PINGING: (0, 15),
            TestState.MEASURING_JITTER: (15, 25),
            TestState.DOWNLOADING: (25, 65),
            TestState.UPLOADING: (65, 90),
            TestState.GRADING: (90, 100),
        }
        for event in events:
            if event.state in spans:
                low, high = spans[event.state]
                self.assertGreaterEqual(event.progress, low, event)
                self.assertLessEqual(event.progress, high, event)

    async def test_one_event_per_sample(self):
        orch = self.orchestrator()
        events = [event async for event in orch.events()]
        with_samples = [e for e in events if e.sample is not None]
        self.assertEqual(len(with_samples), 3 + 4 + 2 + 2)

    async def test_result_is_measured(self):
        result = await self.orchestrator().run()
        self.assertIsNotNone(result)
        self.assertTrue(result.fully_measured)
        self.assertGreater(result.download_mbps, 0)
        self.assertGreater(result.upload_mbps, 0)
        self.assertGreater(result.ping_ms, 0)
        self.assertGreaterEqual(result.jitter_ms, 0)
        self.assertIn(result.grade, GRADES)
        self.assertEqual(result.server_label, "test-node")

    async def test_run_reports_progress(self):
        seen = []
        await self.orchestrator().run(seen.append)
        self.assertEqual(seen[-1].state, TestState.COMPLETE)

    async def test_sizes_clamped_to_capabilities(self):
        orch = self.orchestrator(local_config(download_sizes=[10, 10**9], upload_sizes=[10**9]))
        await orch.run()
        self.assertEqual(orch.capabilities.max_file_size, 64 * KIB)
        sizes = [s.byte_size for s in orch.samples[SampleKind.DOWNLOAD]]
        self.assertEqual(sizes, [1 * KIB, 64 * KIB])
        self.assertEqual([s.byte_size for s in orch.samples[SampleKind.UPLOAD]], [64 * KIB])


class TestCancellation(OrchestratorTestCase):
    async def test_cancel_while_downloading(self):
        orch = self.orchestrator()
        events = []
        async for event in orch.events():
            events.append(event)
            if event.state is TestState.DOWNLOADING:
                orch.cancel()

        self.assertEqual(orch.state, TestState.IDLE)
        self.assertIsNone(orch.result)
        self.assertNotIn(TestState.COMPLETE, [e.state for e in events])
        self.assertNotIn(TestState.UPLOADING, [e.state for e in events])

    async def test_run_returns_none_when_cancelled(self):
        orch = self.orchestrator()

        def on_progress(event):
            if event.state is TestState.MEASURING_JITTER:
                orch.cancel()

        self.assertIsNone(await orch.run(on_progress))
        self.assertEqual(orch.state, TestState.IDLE)

    async def test_can_run_again_after_cancel(self):
        orch = self.orchestrator()

        def on_progress(event):
            if event.state is TestState.PINGING and event.sample is not None:
                orch.cancel()

        self.assertIsNone(await orch.run(on_progress))
        result = await orch.run()
        self.assertIsNotNone(result)
        self.assertEqual(orch.state, TestState.COMPLETE)

    async def test_cancel_during_grading(self):
        orch = self.orchestrator()
        events = []
        async for event in orch.events():
            events.append(event)
            if event.state is TestState.GRADING:
                orch.cancel()

        self.assertEqual(orch.state, TestState.IDLE)
        self.assertIsNone(orch.result)
        self.assertNotIn(TestState.COMPLETE, [e.state for e in events])

    async def test_abandoned_iteration_returns_to_idle(self):
        orch = self.orchestrator()
        events = orch.events()
        async for event in events:
            if event.state is TestState.DOWNLOADING:
                break
        await events.aclose()

        self.assertEqual(orch.state, TestState.IDLE)
        self.assertFalse(orch.running)
        self.assertIsNotNone(await orch.run())
        self.assertEqual(orch.state, TestState.COMPLETE)

    async def test_concurrent_refusal_leaves_first_run_reusable(self):
        orch = self.orchestrator()
        first = orch.events()
        await first.__anext__()
        with self.assertRaises(RuntimeError):
            await orch.events().__anext__()
        await first.aclose()
        self.assertFalse(orch.running)
        self.assertIsNotNone(await orch.run())


class TestSlowCapabilities(AioHTTPTestCase):
    async def get_application(self):
        async def slow_capabilities(request):
            await asyncio.sleep(1.5)
            return web.json_response({})

        app = web.Application()
        app.router.add_get("/transfer", slow_capabilities)
        return app

    async def test_cancel_while_reading_capabilities(self):
        orch = SpeedTestOrchestrator(
            local_config(ping_timeout_ms=10_000),
            base_url=str(self.client.make_url("")),
            session=self.client.session,
        )
        started = time.monotonic()
        events = []
        async for event in orch.events():
            events.append(event)
            if len(events) == 1:
                asyncio.get_running_loop().call_later(0.1, orch.cancel)

        self.assertLess(time.monotonic() - started, 1.0)
        self.assertEqual(orch.state, TestState.IDLE)
        self.assertIsNone(orch.result)
        self.assertEqual([e.state for e in events], [TestState.PINGING])


class TestMalformedUploadAck(AioHTTPTestCase):
    async def get_application(self):
        async def ping(request):
            return web.json_response({"status": "ok"})

        async def transfer(request):
            if request.content_type == "application/json":
                size = (await request.json())["size"]
                return web.Response(body=b"d" * size, content_type="application/octet-stream")
            await request.read()
            return web.json_response({"success": True, "size": None})

        app = web.Application()
        app.router.add_get("/ping", ping)
        app.router.add_post("/transfer", transfer)
        return app

    async def test_run_completes_with_estimated_upload(self):
        orch = SpeedTestOrchestrator(
            local_config(),
            base_url=str(self.client.make_url("")),
            session=self.client.session,
        )
        result = await orch.run()

        self.assertEqual(orch.state, TestState.COMPLETE)
        self.assertEqual(result.provenance(MetricKind.DOWNLOAD), Provenance.MEASURED)
        self.assertEqual(result.provenance(MetricKind.UPLOAD), Provenance.ESTIMATED)
        self.assertTrue(all(not s.ok for s in orch.samples[SampleKind.UPLOAD]))


class TestDownloadOnlyServer(AioHTTPTestCase):
    async def get_application(self):
        async def ping(request):
            return web.json_response({"status": "ok"})

        async def capabilities(request):
            return web.json_response({
                "minFileSize": 1 * KIB,
                "maxFileSize": 64 * KIB,
                "maxUploadSize": 64 * KIB,
                "supportedTests": ["download"],
            })

        async def download(request):
            size = (await request.json())["size"]
            return web.Response(body=b"d" * size, content_type="application/octet-stream")

        app = web.Application()
        app.router.add_get("/ping", ping)
        app.router.add_get("/transfer", capabilities)
        app.router.add_post("/transfer", download)
        return app

    async def test_upload_phase_skipped(self):
        orch = SpeedTestOrchestrator(
            local_config(),
            base_url=str(self.client.make_url("")),
            session=self.client.session,
        )
        with self.assertLogs("client.orchestrator", level="WARNING") as logs:
            result = await orch.run()

        self.assertEqual(orch.state, TestState.COMPLETE)
        self.assertEqual(orch.samples[SampleKind.UPLOAD], [])
        self.assertEqual(len(orch.samples[SampleKind.DOWNLOAD]), 2)
        self.assertEqual(result.provenance(MetricKind.UPLOAD), Provenance.ESTIMATED)
        self.assertTrue(any("upload" in line for line in logs.output))

class TestDegradedRuns(OrchestratorTestCase):
    async def test_unreachable_server_still_completes(self):
        orch = self.orchestrator(base_url="http://127.0.0.1:1")
        result = await orch.run()

        self.assertIsNotNone(result)
        self.assertEqual(orch.state, TestState.COMPLETE)
        self.assertIsNone(orch.capabilities)
        for kind in MetricKind:
            self.assertEqual(result.provenance(kind), Provenance.UNAVAILABLE)
        self.assertEqual(result.ping_ms, 1000.0)
        self.assertEqual(result.download_mbps, 0.0)
        self.assertEqual(result.grade, "F")

    async def test_failed_transfers_fall_back_to_estimates(self):
        # Pings reach the local server but every transfer exceeds the deadline.
        now = [0.0]

        def clock():
            return now[0]

        orch = SpeedTestOrchestrator(
            local_config(deadline_s=10.0),
            base_url=str(self.client.make_url("")),
            session=self.client.session,
            clock=clock,
        )
        async for event in orch.events():
            if event.state is TestState.DOWNLOADING:
                now[0] = 100.0

        result = orch.result
        self.assertEqual(result.provenance(MetricKind.PING), Provenance.MEASURED)
        self.assertEqual(result.provenance(MetricKind.DOWNLOAD), Provenance.ESTIMATED)
        self.assertEqual(result.provenance(MetricKind.UPLOAD), Provenance.ESTIMATED)
        self.assertGreaterEqual(result.download_mbps, 1.0)
        self.assertGreaterEqual(result.upload_mbps, 0.5)

    async def test_unexpected_error_marks_failed(self):
        orch = self.orchestrator()
        with mock.patch("client.orchestrator.aggregate_jitter", side_effect=ZeroDivisionError("bug")):
            with self.assertRaises(ZeroDivisionError):
                await orch.run()
        self.assertEqual(orch.state, TestState.FAILED)
