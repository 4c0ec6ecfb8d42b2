import io
import os
import socket
import sys
import unittest
import urllib.error
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from voxbuild.config import LoggingConfig, RetryPolicy  # noqa: E402
from voxbuild.engine_client import EngineClient, backoff_seconds, is_retriable_status  # noqa: E402
from voxbuild.errors import (  # noqa: E402
    ERROR_KIND_CLIENT_ERROR,
    ERROR_KIND_NETWORK,
    ERROR_KIND_SERVER_ERROR,
    ERROR_KIND_TIMEOUT,
    EngineRequestError,
)
from voxbuild.logging_utils import Logger  # noqa: E402


class _Resp:
    def __init__(self, data: bytes, status: int = 200) -> None:
        self._data = data
        self.status = status
        self.headers = {"Content-Type": "application/json"}

    def read(self) -> bytes:
        return self._data

    def __enter__(self):  # noqa: ANN204
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: ANN001, ANN204
        return False


def _http_error(url: str, code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(url, code, "engine error", None, io.BytesIO(b'{"detail":"boom"}'))


def _logger() -> Logger:
    return Logger.create(LoggingConfig(level="ERROR", debug_events=False, include_event_ids=False))


class EngineClientTests(unittest.TestCase):
    def _client(self, *, max_attempts: int = 3, base_delay_ms: int = 400, sleeps=None, cancel_check=None):  # noqa: ANN001
        recorded = sleeps if sleeps is not None else []
        return EngineClient(
            base_url="http://engine.test:50021/",
            retry=RetryPolicy(max_attempts=max_attempts, base_delay_ms=base_delay_ms, timeout_ms=15000),
            logger=_logger(),
            sleep=recorded.append,
            cancel_check=cancel_check,
        )

    def test_backoff_doubles_from_base_delay(self) -> None:
        self.assertAlmostEqual(backoff_seconds(1, 400), 0.4)
        self.assertAlmostEqual(backoff_seconds(2, 400), 0.8)
        self.assertAlmostEqual(backoff_seconds(3, 400), 1.6)
        self.assertEqual(backoff_seconds(1, 0), 0.0)

    def test_only_5xx_statuses_are_retriable(self) -> None:
        self.assertTrue(is_retriable_status(500))
        self.assertTrue(is_retriable_status(503))
        self.assertFalse(is_retriable_status(400))
        self.assertFalse(is_retriable_status(404))
        self.assertFalse(is_retriable_status(429))

    def test_trailing_slash_is_stripped_and_params_encoded(self) -> None:
        client = self._client()
        self.assertEqual(client.base_url, "http://engine.test:50021")
        url = client.endpoint_url("/audio_query", {"text": "こんにちは", "speaker": 3})
        self.assertTrue(url.startswith("http://engine.test:50021/audio_query?"))
        self.assertIn("speaker=3", url)
        self.assertIn("text=%E3%81%93", url)

    def test_server_errors_then_success_uses_all_attempts(self) -> None:
        sleeps: list = []
        client = self._client(max_attempts=3, sleeps=sleeps)
        responses = [500, 502, 200]
        timeouts: list = []

        def fake_urlopen(req, timeout):  # noqa: ANN001
            timeouts.append(timeout)
            code = responses.pop(0)
            if code != 200:
                raise _http_error(req.full_url, code)
            return _Resp(b"ok")

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            response = client.request("/synthesis", stage="synthesis", audio_key="k1", params={"speaker": 1})
        self.assertEqual(response.body, b"ok")
        self.assertEqual(response.attempts, 3)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(sleeps, [0.4, 0.8])
        self.assertEqual(timeouts, [15.0, 15.0, 15.0])

    def test_client_error_is_not_retried(self) -> None:
        sleeps: list = []
        client = self._client(sleeps=sleeps)
        calls = {"n": 0}

        def fake_urlopen(req, timeout):  # noqa: ANN001
            calls["n"] += 1
            raise _http_error(req.full_url, 400)

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(EngineRequestError) as ctx:
                client.request("/synthesis", stage="synthesis", audio_key="k1", params={"speaker": 1})
        err = ctx.exception
        self.assertEqual(calls["n"], 1)
        self.assertEqual(sleeps, [])
        self.assertEqual(err.attempts, 1)
        self.assertEqual(err.status_code, 400)
        self.assertFalse(err.retriable)
        self.assertEqual(err.stage, "synthesis")
        self.assertEqual(err.audio_key, "k1")
        self.assertEqual(err.error_kind, ERROR_KIND_CLIENT_ERROR)
        self.assertIn("/synthesis?speaker=1", err.endpoint)

    def test_persistent_server_error_exhausts_attempts(self) -> None:
        client = self._client(max_attempts=2, base_delay_ms=1)

        def fake_urlopen(req, timeout):  # noqa: ANN001
            raise _http_error(req.full_url, 503)

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(EngineRequestError) as ctx:
                client.request("/audio_query", stage="audio_query", audio_key="k2", params={"text": "x"})
        self.assertEqual(ctx.exception.attempts, 2)
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertFalse(ctx.exception.retriable)
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_SERVER_ERROR)

    def test_transport_errors_are_retried_and_classified(self) -> None:
        client = self._client(max_attempts=3, base_delay_ms=1)
        errors = [
            urllib.error.URLError(ConnectionRefusedError(111, "Connection refused")),
            socket.timeout("timed out"),
            urllib.error.URLError(ConnectionRefusedError(111, "Connection refused")),
        ]

        def fake_urlopen(req, timeout):  # noqa: ANN001
            raise errors.pop(0)

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(EngineRequestError) as ctx:
                client.request("/audio_query", stage="audio_query", audio_key="k3")
        self.assertEqual(ctx.exception.attempts, 3)
        self.assertIsNone(ctx.exception.status_code)
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_NETWORK)

    def test_timeout_on_last_attempt_is_classified_as_timeout(self) -> None:
        client = self._client(max_attempts=1)

        def fake_urlopen(req, timeout):  # noqa: ANN001
            raise socket.timeout("timed out")

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(EngineRequestError) as ctx:
                client.request("/audio_query", stage="audio_query", audio_key="k4")
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_TIMEOUT)
        self.assertEqual(ctx.exception.attempts, 1)

    def test_request_carries_method_body_and_content_type(self) -> None:
        client = self._client()
        captured = {}

        def fake_urlopen(req, timeout):  # noqa: ANN001
            captured["method"] = req.get_method()
            captured["data"] = req.data
            captured["content_type"] = req.get_header("Content-type")
            return _Resp(b"RIFF")

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            client.request(
                "/synthesis",
                stage="synthesis",
                audio_key="k5",
                body=b'{"a":1}',
                content_type="application/json",
            )
        self.assertEqual(captured["method"], "POST")
        self.assertEqual(captured["data"], b'{"a":1}')
        self.assertEqual(captured["content_type"], "application/json")

    def test_cancel_check_stops_before_request(self) -> None:
        client = self._client(cancel_check=lambda: True)
        with mock.patch("voxbuild.engine_client.urllib.request.urlopen") as urlopen:
            with self.assertRaises(InterruptedError):
                client.request("/audio_query", stage="audio_query", audio_key="k6")
        urlopen.assert_not_called()

    def test_cancel_during_backoff_interrupts(self) -> None:
        state = {"calls": 0}

        def cancel_check() -> bool:
            return state["calls"] >= 1

        client = EngineClient(
            base_url="http://engine.test",
            retry=RetryPolicy(max_attempts=3, base_delay_ms=50, timeout_ms=1000),
            logger=_logger(),
            cancel_check=cancel_check,
        )

        def fake_urlopen(req, timeout):  # noqa: ANN001
            state["calls"] += 1
            raise _http_error(req.full_url, 500)

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(InterruptedError):
                client.request("/audio_query", stage="audio_query", audio_key="k7")
        self.assertEqual(state["calls"], 1)

    def test_error_responses_are_closed_after_reading_detail(self) -> None:
        bodies = []

        def fake_urlopen(req, timeout):  # noqa: ANN001
            body = io.BytesIO(b'{"detail":"busy"}')
            bodies.append(body)
            raise urllib.error.HTTPError(req.full_url, 503, "busy", None, body)

        client = self._client(max_attempts=3, base_delay_ms=0)
        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            with self.assertRaises(EngineRequestError):
                client.request("/audio_query", stage="audio_query", audio_key="k", params={"text": "x"})
        self.assertEqual(len(bodies), 3)
        self.assertTrue(all(body.closed for body in bodies))

    def test_get_is_single_shot_with_given_timeout(self) -> None:
        seen = []

        def fake_urlopen(req, timeout):  # noqa: ANN001
            seen.append((req.get_method(), req.full_url, timeout))
            return _Resp(b'"0.14.0"')

        client = self._client()
        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=fake_urlopen):
            response = client.get("/version", 0.5)
        self.assertEqual(seen, [("GET", "http://engine.test:50021/version", 0.5)])
        self.assertEqual(response.body, b'"0.14.0"')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.attempts, 1)

    def test_get_failures_are_not_retried(self) -> None:
        sleeps: list = []
        client = self._client(sleeps=sleeps)
        calls = {"n": 0}

        def server_error(req, timeout):  # noqa: ANN001
            calls["n"] += 1
            raise _http_error(req.full_url, 503)

        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=server_error):
            with self.assertRaises(EngineRequestError) as ctx:
                client.get("/speakers")
        self.assertEqual(calls["n"], 1)
        self.assertEqual(sleeps, [])
        self.assertEqual(ctx.exception.stage, "probe")
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_SERVER_ERROR)

        refused = urllib.error.URLError(ConnectionRefusedError(111, "refused"))
        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=refused):
            with self.assertRaises(EngineRequestError) as ctx:
                client.get("/version")
        self.assertEqual(ctx.exception.error_kind, ERROR_KIND_NETWORK)
        self.assertIsNone(ctx.exception.status_code)


if __name__ == "__main__":
    unittest.main()
