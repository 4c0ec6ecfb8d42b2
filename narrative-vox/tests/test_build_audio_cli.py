import io
import json
import os
import struct
import sys
import tempfile
import unittest
import urllib.error
import urllib.parse
from unittest import mock


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

import build_audio  # noqa: E402


def _wav(payload: bytes, sample_rate: int) -> bytes:
    fmt = struct.pack("<HHIIHH", 1, 1, sample_rate, sample_rate * 2, 2, 16)
    body = b"WAVE" + b"fmt " + struct.pack("<I", len(fmt)) + fmt + b"data" + struct.pack("<I", len(payload)) + payload
    return b"RIFF" + struct.pack("<I", len(body)) + body


class _Resp:
    status = 200

    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data

    def __enter__(self):  # noqa: ANN204
        return self

    def __exit__(self, exc_type, exc, tb):  # noqa: ANN001, ANN204
        return False


def _fake_engine(*, synthesis_codes=None, sample_rates=None):  # noqa: ANN001, ANN202
    """urlopen double keyed by the `kana` the engine echoes back."""
    synthesis_codes = dict(synthesis_codes or {})
    sample_rates = dict(sample_rates or {})

    def urlopen(req, timeout):  # noqa: ANN001
        parsed = urllib.parse.urlparse(req.full_url)
        if parsed.path == "/audio_query":
            text = dict(urllib.parse.parse_qsl(parsed.query))["text"]
            body = {"accent_phrases": [{"moras": [{"text": text, "vowel": "a"}], "accent": 1}], "kana": text}
            return _Resp(json.dumps(body, ensure_ascii=False).encode("utf-8"))
        text = json.loads(req.data.decode("utf-8"))["kana"]
        code = synthesis_codes.get(text, 200)
        if code != 200:
            raise urllib.error.HTTPError(req.full_url, code, "err", None, io.BytesIO(b""))
        return _Resp(_wav(b"\x01\x00\x02\x00", sample_rates.get(text, 24000)))

    return urlopen


def _write_project(run_dir: str, texts) -> str:  # noqa: ANN001
    keys = [f"ep1_{i + 1:03d}" for i in range(len(texts))]
    project = {
        "appVersion": "0.14.0",
        "talk": {
            "audioKeys": keys,
            "audioItems": {
                key: {"text": text, "voice": {"engineId": "e1", "speakerId": "s1", "styleId": 3}}
                for key, text in zip(keys, texts)
            },
        },
    }
    path = os.path.join(run_dir, "voicevox_project", "ep1.vvproj")
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(project, f, ensure_ascii=False)
    return path


class BuildAudioCliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.run_dir = os.path.join(self._tmp.name, "proj", "run-20260101-1200")
        env = mock.patch.dict(os.environ, {"LOG_LEVEL": "ERROR", "VOICEVOX_URL": ""}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        signals = mock.patch("build_audio.signal.signal")
        signals.start()
        self.addCleanup(signals.stop)

    def _main(self, argv, urlopen):  # noqa: ANN001, ANN202
        stdout = io.StringIO()
        with mock.patch("voxbuild.engine_client.urllib.request.urlopen", side_effect=urlopen):
            with mock.patch("sys.stdout", stdout):
                rc = build_audio.main(argv)
        return rc, stdout.getvalue().strip()

    def test_successful_build_prints_manifest_path(self) -> None:
        project_path = _write_project(self.run_dir, ["a", "b"])
        rc, out = self._main(
            [project_path, "--voicevox-url", "http://engine.test:50021/", "--base-delay-ms", "0"],
            _fake_engine(),
        )
        self.assertEqual(rc, build_audio.EXIT_OK)
        self.assertEqual(out, os.path.join(self.run_dir, "audio", "manifest.json"))
        with open(out, "r", encoding="utf-8") as f:
            manifest = json.load(f)
        self.assertEqual(manifest["voicevox"]["url"], "http://engine.test:50021")
        self.assertEqual(manifest["meta"]["run_id"], "run-20260101-1200")
        self.assertTrue(os.path.exists(os.path.join(self.run_dir, "audio", "ep1.wav")))

    def test_utterance_failure_exits_one(self) -> None:
        project_path = _write_project(self.run_dir, ["a", "b"])
        rc, out = self._main(
            [project_path, "--voicevox-url", "http://engine.test:50021", "--base-delay-ms", "0"],
            _fake_engine(synthesis_codes={"b": 422}),
        )
        self.assertEqual(rc, build_audio.EXIT_UTTERANCE_FAILURES)
        self.assertTrue(out.endswith("manifest.json"))

    def test_format_mismatch_exits_two_with_manifest(self) -> None:
        project_path = _write_project(self.run_dir, ["a", "b"])
        rc, out = self._main(
            [project_path, "--voicevox-url", "http://engine.test:50021", "--base-delay-ms", "0"],
            _fake_engine(sample_rates={"b": 48000}),
        )
        self.assertEqual(rc, build_audio.EXIT_BUILD_FATAL)
        self.assertEqual(out, "")
        self.assertTrue(os.path.exists(os.path.join(self.run_dir, "audio", "manifest.json")))
        self.assertFalse(os.path.exists(os.path.join(self.run_dir, "audio", "ep1.wav")))

    def test_output_write_failure_exits_two(self) -> None:
        project_path = _write_project(self.run_dir, ["a"])
        os.makedirs(os.path.join(self.run_dir, "audio", "ep1.wav"))
        rc, out = self._main(
            [project_path, "--voicevox-url", "http://engine.test:50021", "--base-delay-ms", "0"],
            _fake_engine(),
        )
        self.assertEqual(rc, build_audio.EXIT_BUILD_FATAL)
        self.assertEqual(out, "")

    def test_unreadable_project_exits_two(self) -> None:
        project_dir = os.path.join(self.run_dir, "voicevox_project", "ep1.vvproj")
        os.makedirs(project_dir)
        rc, out = self._main([project_dir, "--voicevox-url", "http://engine.test:50021"], _fake_engine())
        self.assertEqual(rc, build_audio.EXIT_BUILD_FATAL)
        self.assertEqual(out, "")

    def test_invalid_project_exits_two(self) -> None:
        path = os.path.join(self.run_dir, "voicevox_project", "ep1.vvproj")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write('{"talk": {"audioKeys": "nope"}}')
        rc, out = self._main([path, "--voicevox-url", "http://engine.test:50021"], _fake_engine())
        self.assertEqual(rc, build_audio.EXIT_BUILD_FATAL)
        self.assertEqual(out, "")

    def test_unreachable_engine_exits_two(self) -> None:
        project_path = _write_project(self.run_dir, ["a"])

        def refused(req, timeout):  # noqa: ANN001
            raise urllib.error.URLError(ConnectionRefusedError(111, "refused"))

        rc, _ = self._main([project_path], refused)
        self.assertEqual(rc, build_audio.EXIT_BUILD_FATAL)
        self.assertFalse(os.path.exists(os.path.join(self.run_dir, "audio", "manifest.json")))

    def test_cli_overrides_replace_env_config(self) -> None:
        with mock.patch.dict(os.environ, {"VOICEVOX_RETRY_MAX_ATTEMPTS": "5", "VOICEVOX_BUILD_MAX_WORKERS": "2"}):
            args = build_audio.parse_args(["p.vvproj", "--max-attempts", "2", "--max-workers", "99"])
            cfg = build_audio._engine_config(args)  # noqa: SLF001
        self.assertEqual(cfg.retry_max_attempts, 2)
        self.assertEqual(cfg.max_workers, 8)

    def test_invalid_numeric_flags_are_rejected(self) -> None:
        with mock.patch("sys.stderr", io.StringIO()):
            with self.assertRaises(SystemExit):
                build_audio.parse_args(["p.vvproj", "--max-attempts", "0"])
            with self.assertRaises(SystemExit):
                build_audio.parse_args(["p.vvproj", "--base-delay-ms", "-1"])


if __name__ == "__main__":
    unittest.main()
