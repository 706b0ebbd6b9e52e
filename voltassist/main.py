import os
import json
import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

from voltassist.app import VoltApp
from voltassist.config import HubConfig
from voltassist.config_manager import ConfigurationManager
from voltassist.schedulers.decision import explain_decision
from voltassist.schedulers.optimizer import format_plan


def _resolve_config_path(cli_path: Optional[str]) -> Path:
    """
    Resolve config path with the following precedence:
    1) CLI: --config /path/to/config.yaml
    2) ENV: VOLTASSIST_CONFIG=/path/to/config.yaml
    3) Default: <project_root>/config.yaml  (parent of the 'voltassist' package dir)
    """
    if cli_path:
        return Path(cli_path).expanduser().resolve()

    env = os.getenv("VOLTASSIST_CONFIG")
    if env:
        return Path(env).expanduser().resolve()

    # project root = parent of this package directory
    return Path(__file__).resolve().parents[1] / "config.yaml"


def load_config(path) -> ConfigurationManager:
    manager = ConfigurationManager(str(Path(path).expanduser().resolve()))
    manager.load_config()
    return manager


async def _run(app: VoltApp):
    await app.run()


async def _tick(app: VoltApp):
    try:
        await app.scheduler.force_tick()
        state = app.scheduler.state
        decision = app.scheduler.last_decision
        if decision is not None:
            print(explain_decision(decision))
        else:
            print(f"Tick failed: {state.last_error}")
    finally:
        await app.shutdown()


async def _plan(app: VoltApp):
    try:
        print(format_plan(await app.plan()))
    finally:
        await app.shutdown()


async def _status(app: VoltApp):
    try:
        connected = await app.ha.test_connection()
        last = app.logger.get_last_decision()
        print(json.dumps({
            "home_assistant": {"url": app.cfg.home_assistant.url, "connected": connected},
            "last_decision": last.model_dump() if last else None,
            "shed_loads": [s.model_dump() for s in app.logger.get_shed_loads()],
        }, indent=2))
    finally:
        await app.shutdown()


COMMANDS = {
    "run": _run,
    "tick": _tick,
    "plan": _plan,
    "status": _status,
}


async def amain(cfg_path: Optional[str], command: str = "run") -> None:
    log = logging.getLogger(__name__)
    try:
        manager = load_config(_resolve_config_path(cfg_path))
        cfg: HubConfig = manager.config
        app = VoltApp(cfg, manager)
        await COMMANDS[command](app)
    except KeyboardInterrupt:
        log.info("Application interrupted by user")
        raise
    except Exception as e:
        log.error(f"Fatal error in application: {e}", exc_info=True)
        raise


def main() -> None:
    parser = argparse.ArgumentParser(description="VoltAssist battery and load controller")
    parser.add_argument(
        "--config",
        help="Path to config.yaml (overrides VOLTASSIST_CONFIG and default).",
        required=False,
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=sorted(COMMANDS),
        help="run: control loop and API (default); tick: one decision now; "
             "plan: print today's charging plan; status: connectivity and last decision",
    )
    args = parser.parse_args()

    asyncio.run(amain(args.config, args.command))


if __name__ == "__main__":
    main()
