from __future__ import annotations

import json
from pathlib import Path

import pytest

import whip_output.cli as cli
from whip_output.config import BEARER_TOKEN_ENV, ENDPOINT_ENV


def test_parser_publish_arguments():
    parser = cli.build_parser()
    args = parser.parse_args(
        [
            "--log-level",
            "debug",
            "publish",
            "stream.ts",
            "--endpoint",
            "https://ingest.example.com/whip",
            "--token",
            "abc",
            "--duration",
            "2.5",
        ]
    )
    assert args.command == "publish"
    assert args.input == "stream.ts"
    assert args.duration == pytest.approx(2.5)
    assert args.log_level == "debug"
    assert args.no_realtime is False


def test_parser_requires_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


def test_resolve_settings_prefers_arguments(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv(ENDPOINT_ENV, raising=False)
    monkeypatch.delenv(BEARER_TOKEN_ENV, raising=False)
    config_file = tmp_path / "settings.json"
    config_file.write_text(
        json.dumps(
            {
                "service": {"endpoint_url": "https://file.example/whip", "bearer_token": "file"},
                "output": {"timeout": 3},
            }
        )
    )
    args = cli.build_parser().parse_args(
        ["publish", "in.ts", "--config", str(config_file), "--token", "cli-token"]
    )
    service, output = cli._resolve_settings(args)
    assert service.endpoint_url == "https://file.example/whip"
    assert service.bearer_token == "cli-token"
    assert output.timeout == pytest.approx(3.0)


def test_resolve_settings_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv(ENDPOINT_ENV, "https://env.example/whip")
    monkeypatch.setenv(BEARER_TOKEN_ENV, "env-token")
    args = cli.build_parser().parse_args(["publish", "in.ts"])
    service, _ = cli._resolve_settings(args)
    assert service.endpoint_url == "https://env.example/whip"
    assert service.bearer_token == "env-token"


def test_check_json_output(capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        cli,
        "diagnose_publishing_stack",
        lambda: {"status": "ok", "details": [], "versions": {"httpx": "0.27.0"}},
    )
    assert cli.run(["check", "--json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["status"] == "ok"
    assert payload["version"] == cli.APP_VERSION


def test_check_reports_problems(capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(
        cli,
        "diagnose_publishing_stack",
        lambda: {"status": "error", "details": ["aiortc module not found."], "hints": ["install"]},
    )
    assert cli.run(["check"]) == 1
    output = capsys.readouterr().out
    assert "Publishing stack issues detected:" in output
    assert " - aiortc module not found." in output
    assert " * install" in output


def test_diagnose_reports_missing_module(monkeypatch: pytest.MonkeyPatch):
    real_import = cli.importlib.import_module

    def fake_import(name: str, *args, **kwargs):
        if name == "aiortc":
            raise ModuleNotFoundError("No module named 'aiortc'")
        return real_import(name, *args, **kwargs)

    monkeypatch.setattr(cli.importlib, "import_module", fake_import)
    payload = cli.diagnose_publishing_stack()
    assert payload["status"] == "error"
    assert "aiortc module not found." in payload["details"]
    assert cli.WEBRTC_PIP_HINT in payload["hints"]


def test_summarise_exception_includes_cause():
    try:
        try:
            raise OSError("libsrtp missing")
        except OSError as exc:
            raise ImportError("aiortc failed") from exc
    except ImportError as exc:
        summary = cli.summarise_exception(exc)
    assert summary == "aiortc failed; libsrtp missing"
