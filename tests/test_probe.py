from __future__ import annotations

import asyncio
import socket
import unittest
from datetime import datetime, timezone
from typing import List, Union

from aiohttp import web
from aiohttp import test_utils

from lavalink_selector.models import NodeDescriptor, ProbeErrorKind, ProbeResult
from lavalink_selector.probe import (
    EndpointProbe,
    NodeProbe,
    ProbeFailure,
    TcpConnectProbe,
    build_probe,
    classify_exception,
    detect_major_version,
    parse_stats,
)


def _node(port: int, password: str = "youshallnotpass") -> NodeDescriptor:
    return NodeDescriptor(host="127.0.0.1", port=port, password=password, secure=False, name="local")


def _closed_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class ScriptedProbe(NodeProbe):
    """Replays a fixed list of latencies and failures, one per sample."""

    strategy = "scripted"

    def __init__(self, script: List[Union[float, Exception]], **kwargs) -> None:
        super().__init__(sample_interval_ms=0, samples=len(script), **kwargs)
        self.script = list(script)

    async def _sample(self, descriptor: NodeDescriptor) -> float:
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


class SlowProbe(NodeProbe):
    strategy = "slow"

    async def _sample(self, descriptor: NodeDescriptor) -> float:
        await asyncio.sleep(5)
        return 1.0


class SampleAggregationTest(unittest.IsolatedAsyncioTestCase):
    async def test_latency_is_mean_of_successful_samples(self) -> None:
        probe = ScriptedProbe([10.0, ProbeFailure(ProbeErrorKind.PROTOCOL_ERROR, "HTTP 502"), 20.0, 30.5])

        result = await probe.probe(_node(2333))

        self.assertTrue(result.reachable)
        self.assertEqual(result.latency_ms, 20.17)
        self.assertIs(result.error_kind, ProbeErrorKind.NONE)
        self.assertEqual(result.samples_ok, 3)
        self.assertEqual(result.samples_total, 4)
        self.assertEqual(result.success_rate, 75)
        self.assertIsNotNone(result.sampled_at.tzinfo)

    async def test_all_failed_samples_report_last_error_kind(self) -> None:
        probe = ScriptedProbe(
            [
                ProbeFailure(ProbeErrorKind.DNS_FAILURE, "no such host"),
                ConnectionRefusedError(111, "Connection refused"),
            ]
        )

        result = await probe.probe(_node(2333))

        self.assertFalse(result.reachable)
        self.assertIsNone(result.latency_ms)
        self.assertIs(result.error_kind, ProbeErrorKind.CONNECTION_REFUSED)
        self.assertEqual(result.samples_ok, 0)

    async def test_sample_exceeding_timeout_is_a_timeout(self) -> None:
        probe = SlowProbe(timeout_ms=50, samples=1)

        result = await probe.probe(_node(2333))

        self.assertFalse(result.reachable)
        self.assertIs(result.error_kind, ProbeErrorKind.TIMEOUT)


class TcpConnectProbeTest(unittest.IsolatedAsyncioTestCase):
    async def test_listening_node_is_reachable(self) -> None:
        async def handle(reader, writer) -> None:
            writer.close()

        server = await asyncio.start_server(handle, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            probe = TcpConnectProbe(timeout_ms=2000, samples=2, sample_interval_ms=0)
            result = await probe.probe(_node(port))
        finally:
            server.close()
            await server.wait_closed()

        self.assertTrue(result.reachable)
        self.assertGreaterEqual(result.latency_ms, 0.0)
        self.assertEqual(result.samples_ok, 2)
        self.assertEqual(result.node.port, port)

    async def test_closed_port_is_connection_refused(self) -> None:
        probe = TcpConnectProbe(timeout_ms=2000, samples=1)

        result = await probe.probe(_node(_closed_port()))

        self.assertFalse(result.reachable)
        self.assertIs(result.error_kind, ProbeErrorKind.CONNECTION_REFUSED)


class EndpointProbeTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.seen_headers = []

        async def version(request: web.Request) -> web.Response:
            self.seen_headers.append(request.headers.copy())
            if request.headers.get("Authorization") != "youshallnotpass":
                return web.Response(status=401, text="Unauthorized")
            return web.Response(text="4.0.8")

        async def stats(request: web.Request) -> web.Response:
            return web.json_response(
                {
                    "players": 12,
                    "playingPlayers": 7,
                    "uptime": 123456,
                    "memory": {"used": 100, "allocated": 200},
                    "cpu": {"cores": 4, "systemLoad": 0.5, "lavalinkLoad": 0.1},
                }
            )

        app = web.Application()
        app.router.add_get("/version", version)
        app.router.add_get("/v4/stats", stats)
        self.server = test_utils.TestServer(app, host="127.0.0.1")
        await self.server.start_server()

    async def asyncTearDown(self) -> None:
        await self.server.close()

    async def test_authorized_node_is_reachable_with_version_and_stats(self) -> None:
        probe = EndpointProbe(timeout_ms=2000, samples=2, sample_interval_ms=0)

        result = await probe.probe(_node(self.server.port))

        self.assertTrue(result.reachable)
        self.assertEqual(result.samples_ok, 2)
        self.assertEqual(result.detected_version, "v4")
        self.assertIsNotNone(result.stats)
        self.assertEqual(result.stats.players, 12)
        self.assertEqual(result.stats.playing_players, 7)
        self.assertEqual(result.stats.cpu_cores, 4)
        self.assertEqual(self.seen_headers[0]["Authorization"], "youshallnotpass")
        self.assertIn("Lavalink-Selector", self.seen_headers[0]["User-Agent"])

    async def test_rejected_password_is_protocol_error(self) -> None:
        probe = EndpointProbe(timeout_ms=2000, samples=1)

        result = await probe.probe(_node(self.server.port, password="wrong"))

        self.assertFalse(result.reachable)
        self.assertIs(result.error_kind, ProbeErrorKind.PROTOCOL_ERROR)
        self.assertEqual(result.error, "HTTP 401")
        self.assertIsNone(result.stats)

    async def test_stats_lookup_can_be_disabled(self) -> None:
        probe = EndpointProbe(timeout_ms=2000, samples=1, fetch_stats=False)

        result = await probe.probe(_node(self.server.port))

        self.assertTrue(result.reachable)
        self.assertIsNone(result.stats)


class HelperTest(unittest.TestCase):
    def test_detect_major_version(self) -> None:
        self.assertEqual(detect_major_version("4.0.8"), "v4")
        self.assertEqual(detect_major_version("3.7.12"), "v3")
        self.assertEqual(detect_major_version('{"semver": "4.1.0", "major": 4}'), "v4")
        self.assertEqual(detect_major_version('{"version": "3.7.11"}'), "v3")
        self.assertEqual(detect_major_version("git-4f1c2a build"), "v4")
        self.assertEqual(detect_major_version("ok"), "v3")
        self.assertIsNone(detect_major_version(""))
        self.assertIsNone(detect_major_version(None))

    def test_classify_exception(self) -> None:
        self.assertIs(classify_exception(asyncio.TimeoutError()), ProbeErrorKind.TIMEOUT)
        self.assertIs(classify_exception(socket.gaierror(-2, "Name or service not known")), ProbeErrorKind.DNS_FAILURE)
        self.assertIs(classify_exception(ConnectionRefusedError()), ProbeErrorKind.CONNECTION_REFUSED)
        self.assertIs(
            classify_exception(ProbeFailure(ProbeErrorKind.PROTOCOL_ERROR, "HTTP 500")),
            ProbeErrorKind.PROTOCOL_ERROR,
        )
        self.assertIs(classify_exception(RuntimeError("boom")), ProbeErrorKind.UNKNOWN)

    def test_parse_stats_accepts_nested_player_counts(self) -> None:
        stats = parse_stats({"players": {"active": 3, "total": 9}, "cpu": {"cores": 2}})

        self.assertEqual(stats.players, 9)
        self.assertEqual(stats.playing_players, 3)
        self.assertEqual(stats.cpu_cores, 2)
        self.assertIsNone(parse_stats(["not", "a", "dict"]))

    def test_build_probe_by_strategy(self) -> None:
        self.assertIsInstance(build_probe("tcp"), TcpConnectProbe)
        self.assertIsInstance(build_probe("HTTP", samples=3), EndpointProbe)
        with self.assertRaises(ValueError):
            build_probe("udp")

    def test_probe_result_rejects_inconsistent_state(self) -> None:
        now = datetime.now(timezone.utc)
        with self.assertRaises(ValueError):
            ProbeResult(node=_node(1), latency_ms=None, reachable=True, error_kind=ProbeErrorKind.NONE, sampled_at=now)
        with self.assertRaises(ValueError):
            ProbeResult(node=_node(1), latency_ms=5.0, reachable=True, error_kind=ProbeErrorKind.TIMEOUT, sampled_at=now)


if __name__ == "__main__":
    unittest.main()
