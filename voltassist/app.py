import sys
import asyncio
import logging
from typing import Any, Dict, Optional

import uvicorn

from voltassist.api_server import create_api
from voltassist.config import HubConfig
from voltassist.config_manager import ConfigurationManager
from voltassist.errors import VoltAssistError
from voltassist.forecast.prices import create_price_provider
from voltassist.forecast.solar import create_solar_provider
from voltassist.ha.client import HomeAssistantClient
from voltassist.logging.logger import DataLogger
from voltassist.schedulers.autonomous import AutonomousScheduler
from voltassist.schedulers.loads import LoadManager
from voltassist.schedulers.optimizer import ChargingPlan, generate_plan

log = logging.getLogger(__name__)

# Sections that may be changed at runtime through the API
RUNTIME_SECTIONS = ("thresholds", "tuning", "scheduler", "battery")


class VoltApp:
    """Wires config, Home Assistant, providers, storage and the scheduler together."""

    def __init__(self, cfg: HubConfig, config_manager: Optional[ConfigurationManager] = None):
        self.cfg = cfg
        self.config_manager = config_manager
        self._configure_logging()

        self.logger = DataLogger(cfg.database_path)
        self.ha = HomeAssistantClient(cfg.home_assistant)
        self.price_provider = create_price_provider(cfg.prices)
        self.solar_provider = create_solar_provider(cfg.solar)
        self.load_manager = LoadManager(cfg.loads, self.ha, self.logger)
        self.scheduler = AutonomousScheduler(
            cfg,
            connectivity=self.ha,
            telemetry=self.ha,
            actuation=self.ha,
            price_provider=self.price_provider,
            solar_provider=self.solar_provider,
            store=self.logger,
            load_manager=self.load_manager,
        )
        self._api_server: Optional[uvicorn.Server] = None
        self._stopped = asyncio.Event()

    def _configure_logging(self):
        """Configure logging based on config settings."""
        log_config = self.cfg.logging

        root_logger = logging.getLogger()
        log_level = getattr(logging, log_config.level.upper())
        root_logger.setLevel(log_level)

        # Configure console handler if not already configured
        if not root_logger.handlers:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_level)
            console_handler.setFormatter(logging.Formatter(log_config.format))
            root_logger.addHandler(console_handler)

        logging.getLogger("voltassist").setLevel(log_level)
        # aiohttp access noise is not actionable
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

        if log_config.ha_debug:
            logging.getLogger("voltassist.ha").setLevel(logging.DEBUG)

        log.info(f"Logging configured - Level: {log_config.level}, HA Debug: {log_config.ha_debug}")

    def apply_config(self, cfg: HubConfig):
        """Swap in a re-validated config; the scheduler picks it up on its next tick."""
        self.cfg = cfg
        self.scheduler.cfg = cfg

    def update_config_section(self, section: str, values: Dict[str, Any]) -> HubConfig:
        if section not in RUNTIME_SECTIONS:
            raise VoltAssistError(f"Section '{section}' cannot be changed at runtime")
        if self.config_manager is None:
            raise VoltAssistError("No configuration manager attached")
        updated = self.config_manager.update_section(section, values)
        self.apply_config(updated)
        return updated

    async def plan(self) -> ChargingPlan:
        """Day plan from today's forecasts, starting at the live SOC when available."""
        prices, solar = await self.scheduler.get_forecasts()
        battery = self.cfg.battery
        try:
            status = await self.ha.read_battery_status()
        except VoltAssistError as e:
            log.warning(f"Could not read live SOC for plan, using configured initial_soc: {e}")
            status = None
        if status is not None:
            battery = battery.model_copy(update={"initial_soc": status.soc})
        return generate_plan(prices, solar, battery, self.cfg.thresholds, tuning=self.cfg.tuning)

    async def run(self):
        log.info("Starting VoltAssist")
        if await self.ha.test_connection():
            log.info(f"Connected to Home Assistant at {self.cfg.home_assistant.url}")
        else:
            log.warning(f"Home Assistant at {self.cfg.home_assistant.url} not reachable yet, scheduler will retry")

        if self.cfg.scheduler.enabled:
            self.scheduler.start()
        else:
            log.info("Scheduler disabled in config, only serving the API")

        try:
            if self.cfg.api.enabled:
                config = uvicorn.Config(
                    create_api(self),
                    host=self.cfg.api.host,
                    port=self.cfg.api.port,
                    log_level=self.cfg.logging.level.lower(),
                    access_log=False,
                    log_config=None,  # keep our logging setup
                )
                self._api_server = uvicorn.Server(config)
                log.info(f"API server on http://{self.cfg.api.host}:{self.cfg.api.port}")
                # same event loop as the scheduler, so no cross-thread state
                await self._api_server.serve()
            else:
                # runs until the task is cancelled (Ctrl+C)
                await self._stopped.wait()
        finally:
            await self.shutdown()

    async def shutdown(self):
        log.info("Shutting down VoltAssist")
        await self.scheduler.stop()
        await self.ha.close()
