"""Command-line entry point for publishing media over WHIP."""
from __future__ import annotations

import argparse
import asyncio
import importlib
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from .config import DEFAULT_OUTPUT_SETTINGS, ServiceSettings, SettingsManager, apply_environment
from .host import StopCode
from .version import APP_VERSION

logger = logging.getLogger(__name__)

WEBRTC_PIP_HINT = (
    "Ensure PyAV and aiortc are installed inside the active environment "
    "(for example `pip install av aiortc`)."
)

HTTP_PIP_HINT = "Install the HTTP client with `pip install httpx`."

LOG_LEVELS = ("debug", "info", "warning", "error")


def summarise_exception(exc: BaseException) -> str:
    """Collect the unique error messages from an exception chain."""

    details: list[str] = []
    for candidate in (exc, exc.__cause__, exc.__context__):
        if candidate is None:
            continue
        text = str(candidate).strip()
        if text and text not in details:
            details.append(text)
    return "; ".join(details) or exc.__class__.__name__


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the whip-output CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m whip_output",
        description="Publish audio and video to a WHIP ingestion endpoint",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="info",
        help="Logging verbosity (default: info).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    publish = subparsers.add_parser("publish", help="Publish a media file or stream.")
    publish.add_argument("input", help="Path or URL of an Annex-B H.264 / Opus source.")
    publish.add_argument(
        "--endpoint",
        help="WHIP endpoint URL (overrides the configuration file).",
    )
    publish.add_argument("--token", help="Bearer token sent with signalling requests.")
    publish.add_argument(
        "--config",
        type=Path,
        help="JSON settings file holding service and output settings.",
    )
    publish.add_argument(
        "--duration",
        type=float,
        help="Stop after this many seconds of media.",
    )
    publish.add_argument(
        "--no-realtime",
        action="store_true",
        help="Send packets as fast as possible instead of pacing them.",
    )

    check = subparsers.add_parser("check", help="Check the publishing software stack.")
    check.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def diagnose_publishing_stack() -> dict[str, object]:
    """Return diagnostic details about the HTTP and WebRTC libraries."""

    status = "ok"
    details: list[str] = []
    hints: list[str] = []
    versions: dict[str, str] = {}

    def mark_error(detail: str) -> None:
        nonlocal status
        status = "error"
        details.append(detail)

    def add_hint(text: str) -> None:
        if text not in hints:
            hints.append(text)

    modules = (
        ("httpx", "httpx", HTTP_PIP_HINT),
        ("av", "PyAV", WEBRTC_PIP_HINT),
        ("aiortc", "aiortc", WEBRTC_PIP_HINT),
    )

    for module_name, friendly, hint in modules:
        try:
            module = importlib.import_module(module_name)
        except ModuleNotFoundError:
            mark_error(f"{friendly} module not found.")
            add_hint(hint)
            continue
        except Exception as exc:  # pragma: no cover - depends on runtime environment
            mark_error(f"{friendly} import failed: {summarise_exception(exc)}")
            add_hint(hint)
            continue

        version = getattr(module, "__version__", None)
        if isinstance(version, str):
            versions[module_name] = version

        if module_name == "aiortc":
            try:
                importlib.import_module("aiortc.rtcrtpsender")
            except Exception as exc:  # pragma: no cover - depends on runtime env
                mark_error(f"aiortc runtime import failed: {summarise_exception(exc)}")
                add_hint(WEBRTC_PIP_HINT)

    payload: dict[str, object] = {"status": status, "details": details}
    if hints:
        payload["hints"] = hints
    if versions:
        payload["versions"] = versions
    return payload


def _run_check(args: argparse.Namespace) -> int:
    payload = diagnose_publishing_stack()
    payload["version"] = APP_VERSION
    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
        return 0 if payload["status"] == "ok" else 1

    print(f"whip-output {APP_VERSION}")
    if payload["status"] == "ok":
        print("Publishing stack: OK")
    else:
        print("Publishing stack issues detected:")
        for detail in payload.get("details", []):
            print(f" - {detail}")
        hints = payload.get("hints")
        if hints:
            print("Hints:")
            for hint in hints:
                print(f" * {hint}")
    for name, version in sorted(payload.get("versions", {}).items()):
        print(f" - {name} {version}")
    return 0 if payload["status"] == "ok" else 1


def _resolve_settings(args: argparse.Namespace):
    if args.config is not None:
        manager = SettingsManager(args.config)
        service = manager.get_service()
        output = manager.get_output()
    else:
        service = apply_environment(ServiceSettings())
        output = DEFAULT_OUTPUT_SETTINGS
    if args.endpoint:
        service = ServiceSettings(args.endpoint, args.token or service.bearer_token)
    elif args.token:
        service = ServiceSettings(service.endpoint_url, args.token)
    return service, output


def _load_engine():
    try:
        module = importlib.import_module(f"{__package__}.aiortc_engine")
    except ImportError as exc:
        raise RuntimeError(
            f"aiortc is not available ({summarise_exception(exc)}). {WEBRTC_PIP_HINT}"
        ) from exc
    return module.AiortcEngine()


async def _publish(args: argparse.Namespace) -> StopCode | None:
    from .output import WHIPOutput
    from .source import ContainerSource

    service, settings = _resolve_settings(args)
    source = ContainerSource(args.input, service, realtime=not args.no_realtime)
    output = WHIPOutput(source, _load_engine(), settings=settings)
    try:
        return await source.publish(output, duration=args.duration)
    finally:
        await output.close()


def _run_publish(args: argparse.Namespace) -> int:
    try:
        code = asyncio.run(_publish(args))
    except (RuntimeError, ValueError) as exc:
        logger.error("%s", exc)
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    if code is None:
        logger.error("Output did not start")
        return 1
    logger.info("Output finished with status %s", code.value)
    return 0 if code is StopCode.SUCCESS else 1


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "check":
        return _run_check(args)
    return _run_publish(args)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m whip_output` and the console script."""

    return run(argv)


__all__ = [
    "build_parser",
    "diagnose_publishing_stack",
    "main",
    "run",
    "summarise_exception",
]
