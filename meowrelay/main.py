"""
meowrelay - Matrix auto-reply bot
Entry point and orchestration.

Startup sequence:
  1. Parse command-line flags
  2. Load config.yaml
  3. Configure logging
  4. Build collaborators (transport, completion backend, history writer,
     diagnostics, update checker)
  5. Start the event router and the operator console
  6. Connect (password login or QR pairing on first start)
  7. Await termination: SIGINT/SIGTERM, end of operator input, or the
     session being taken over by another client
  8. Cancel in-flight work and disconnect
"""

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import yaml

from meowrelay.backends.openai_completion import CompletionBackend, CompletionConfig
from meowrelay.core.diagnostics import DiagnosticsConfig, DiagnosticsRunner
from meowrelay.core.router import EventRouter
from meowrelay.infra.history_sync import HistorySyncWriter
from meowrelay.infra.paths import CONFIG_FILE, HISTORY_DIR, LOG_DIR
from meowrelay.interfaces.commands import CommandDispatcher
from meowrelay.interfaces.console import OperatorConsole
from meowrelay.interfaces.matrix_transport import MatrixConfig, MatrixTransport
from meowrelay.interfaces.pairing import PairingConfig, PairingServer
from meowrelay.supervisor import LifecycleSupervisor
from meowrelay.update_checker import UpdateChecker, UpdateCheckerConfig

_SHUTDOWN_GRACE = 5.0  # seconds


# ---------------------------------------------------------------------------
# Configuration loading
# ---------------------------------------------------------------------------

def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="meowrelay", description="Matrix auto-reply bot")
    parser.add_argument("--config", default=str(CONFIG_FILE),
                        help="path to config.yaml (default: %(default)s)")
    parser.add_argument("--debug", action="store_true",
                        help="enable debug logs on the console")
    parser.add_argument("--request-full-sync", action="store_true",
                        help="request a larger history sync on first connect")
    return parser.parse_args(argv)


def load_config(path: Path = CONFIG_FILE) -> dict:
    if not path.exists():
        print(f"ERROR: {path} not found. Copy config.yaml.example and fill in your settings.")
        sys.exit(1)
    with path.open(encoding="utf-8") as fh:
        cfg = yaml.safe_load(fh)
    if not isinstance(cfg, dict):
        print(f"ERROR: {path} does not contain a YAML mapping.")
        sys.exit(1)
    return cfg


def _section(cfg: dict, name: str) -> dict:
    return dict(cfg.get(name) or {})


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: dict, debug: bool = False) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    level_name = "DEBUG" if debug else str(_section(cfg, "logging").get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s %(levelname)-8s %(name)-20s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(fmt)
    console.setLevel(level)

    fh = logging.handlers.TimedRotatingFileHandler(
        LOG_DIR / "meowrelay.log",
        when="midnight",
        backupCount=14,
        encoding="utf-8",
    )
    fh.setFormatter(fmt)
    fh.setLevel(logging.DEBUG)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addHandler(console)
    root.addHandler(fh)

    # mautrix and aiohttp are chatty at DEBUG; keep them out of the console.
    for name in ("mau", "aiohttp.access"):
        logging.getLogger(name).setLevel(logging.INFO)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def _build_transport(cfg: dict, config_path: Path, full_sync: bool) -> MatrixTransport:
    matrix_raw = _section(cfg, "matrix")
    matrix_cfg = MatrixConfig(
        homeserver=matrix_raw["homeserver"],
        user_id=matrix_raw.get("user_id", "") or "",
        access_token=matrix_raw.get("access_token", "") or "",
        device_id=matrix_raw.get("device_id", "") or "",
        password=matrix_raw.get("password", "") or "",
        default_server=matrix_raw.get("default_server", "") or "",
        device_name=matrix_raw.get("device_name", "meowrelay") or "meowrelay",
    )
    pairing_raw = _section(cfg, "pairing")
    pairing = PairingServer(
        PairingConfig(
            host=pairing_raw.get("host", "0.0.0.0"),
            port=int(pairing_raw.get("port", 3000)),
            public_url=pairing_raw.get("public_url", "http://localhost:3000"),
        ),
        homeserver=matrix_cfg.homeserver,
    )
    return MatrixTransport(matrix_cfg, pairing=pairing, full_history_sync=full_sync,
                           config_path=config_path)


def _build_completion(cfg: dict) -> CompletionBackend:
    raw = _section(cfg, "completion")
    defaults = CompletionConfig()
    return CompletionBackend(CompletionConfig(
        model=raw.get("model") or defaults.model,
        api_key=raw.get("api_key") or os.environ.get("OPENAI_API_KEY", ""),
        base_url=raw.get("base_url") or defaults.base_url,
    ))


def _build_diagnostics(cfg: dict) -> DiagnosticsRunner:
    raw = _section(cfg, "diagnostics")
    defaults = DiagnosticsConfig()
    return DiagnosticsRunner(DiagnosticsConfig(
        status_command=list(raw.get("status_command") or defaults.status_command),
        speedtest_command=list(raw.get("speedtest_command") or defaults.speedtest_command),
    ))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

async def main(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    config_path = Path(args.config)
    cfg = load_config(config_path)
    setup_logging(cfg, debug=args.debug)
    logger = logging.getLogger("main")
    logger.info("meowrelay starting up")

    if not _section(cfg, "matrix").get("homeserver"):
        logger.error("matrix.homeserver is not set in %s", config_path)
        return 1

    history_raw = _section(cfg, "history_sync")
    full_sync = args.request_full_sync or bool(history_raw.get("full", False))

    transport = _build_transport(cfg, config_path, full_sync)
    supervisor = LifecycleSupervisor(transport)
    completion = _build_completion(cfg)
    router = EventRouter(
        transport,
        completion,
        supervisor,
        HistorySyncWriter(Path(history_raw.get("directory") or HISTORY_DIR)),
        _build_diagnostics(cfg),
    )
    dispatcher = CommandDispatcher(
        transport,
        supervisor,
        UpdateChecker(UpdateCheckerConfig(
            remote_url=_section(cfg, "update_check").get("remote_url", "") or "",
        )),
    )
    console = OperatorConsole(dispatcher, supervisor)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, supervisor.terminate, "Interrupt received")

    tasks = [
        asyncio.create_task(router.run(),  name="router"),
        asyncio.create_task(console.run(), name="console"),
    ]
    connect = asyncio.create_task(supervisor.start(), name="connect")
    terminated = asyncio.create_task(supervisor.wait_terminated(), name="wait-terminated")

    exit_code = 0
    await asyncio.wait({connect, terminated}, return_when=asyncio.FIRST_COMPLETED)
    if connect.done() and not connect.result() and not supervisor.terminating:
        supervisor.terminate("Initial connection failed")
        exit_code = 1
    else:
        logger.info("All components started. Type commands on stdin.")
    await terminated

    for task in tasks + [connect]:
        if not task.done():
            task.cancel()
    router.cancel_pending()
    dispatcher.cancel_pending()
    try:
        await asyncio.wait_for(asyncio.gather(*tasks, connect, return_exceptions=True),
                               timeout=_SHUTDOWN_GRACE)
    except asyncio.TimeoutError:
        logger.warning("Some tasks did not stop within %.0f s, forcing exit", _SHUTDOWN_GRACE)

    code = await supervisor.shutdown()
    await completion.close()
    logger.info("meowrelay shutdown complete")
    return exit_code or code


def run() -> None:
    """Entry point for the `meowrelay` console script."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
