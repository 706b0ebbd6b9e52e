import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from voltassist.errors import ConfigInvalid, VoltAssistError
from voltassist.schedulers.decision import DecisionContext, decide, explain_decision, quick_decision
from voltassist.schedulers.loads import LoadEvaluationContext
from voltassist.schedulers.optimizer import format_plan
from voltassist.timezone_utils import get_configured_date_string, now_configured, now_configured_iso

log = logging.getLogger(__name__)


def _error(e: Exception) -> Dict[str, Any]:
    return {"status": "error", "error": f"{type(e).__name__}: {e}"}


def create_api(volt_app) -> FastAPI:
    """
    Create a FastAPI app bound to the running VoltApp instance.

    Read endpoints only call pure functions (decide, evaluate, generate_plan)
    or read snapshots, so they never interfere with a scheduler tick.
    """
    app = FastAPI(title="VoltAssist API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request, call_next):
        log.debug(f"API request: {request.method} {request.url}")
        try:
            return await call_next(request)
        except Exception as e:
            log.error(f"API request failed: {e}", exc_info=True)
            raise

    scheduler = volt_app.scheduler

    @app.get("/api/health")
    def api_health() -> Dict[str, Any]:
        return {"status": "ok", "timestamp": now_configured_iso()}

    # ------------------------------------------------------------------
    # Scheduler
    # ------------------------------------------------------------------

    @app.get("/api/status")
    def api_status() -> Dict[str, Any]:
        """Scheduler snapshot; stays available while paused or failing."""
        last = scheduler.last_decision
        if last is None:
            stored = volt_app.logger.get_last_decision()
            last_decision = stored.model_dump() if stored else None
        else:
            last_decision = asdict(last)
        return {
            "status": "ok",
            "scheduler": asdict(scheduler.state),
            "stats": asdict(scheduler.stats),
            "last_decision": last_decision,
            "timestamp": now_configured_iso(),
        }

    @app.post("/api/scheduler/{command}")
    async def api_scheduler_command(command: str) -> Dict[str, Any]:
        # result is False when the command did not apply in the current state
        if command == "start":
            result = scheduler.start()
        elif command == "stop":
            result = await scheduler.stop()
        elif command == "pause":
            result = scheduler.pause()
        elif command == "resume":
            result = await scheduler.resume()
        elif command == "tick":
            result = await scheduler.force_tick()
        elif command == "restart":
            result = await scheduler.restart()
        elif command == "clear-cache":
            scheduler.clear_cache()
            result = True
        else:
            raise HTTPException(status_code=404, detail=f"Unknown scheduler command: {command}")
        return {"status": "ok", "result": result, "scheduler": asdict(scheduler.state)}

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    @app.get("/api/decision")
    async def api_decision() -> Dict[str, Any]:
        """What the engine would decide right now; nothing is applied."""
        try:
            status = await volt_app.ha.read_battery_status()
            if status is None:
                return {"status": "error", "error": "Battery telemetry unavailable"}
            prices, solar = await scheduler.get_forecasts()
            hour = now_configured().hour
            decision = decide(DecisionContext(
                soc=status.soc,
                current_price=prices.price_at(hour),
                solar_watts=status.solar_watts,
                load_watts=status.load_watts,
                current_hour=hour,
                prices=prices,
                solar=solar,
                thresholds=volt_app.cfg.thresholds,
                tuning=volt_app.cfg.tuning,
            ))
        except VoltAssistError as e:
            return _error(e)
        return {
            "status": "ok",
            "decision": asdict(decision),
            "explanation": explain_decision(decision),
            "battery": status.model_dump(),
        }

    @app.get("/api/decision/quick")
    async def api_quick_decision(soc: float, price: Optional[float] = None, solar: float = 0.0) -> Dict[str, Any]:
        """What-if: action for a hypothetical SOC/price/solar, price defaults to now."""
        try:
            prices, _ = await scheduler.get_forecasts()
        except VoltAssistError as e:
            return _error(e)
        if price is None:
            price = prices.price_at(now_configured().hour)
        action = quick_decision(soc, price, solar, prices, volt_app.cfg.thresholds, volt_app.cfg.tuning)
        return {"status": "ok", "action": action.value, "price": price,
                "price_percentile": prices.percentile_rank(price)}

    @app.get("/api/decision/explain")
    def api_explain() -> Dict[str, Any]:
        last = scheduler.last_decision
        if last is None:
            return {"status": "error", "error": "No decision made yet"}
        return {"status": "ok", "explanation": explain_decision(last)}

    @app.get("/api/decisions")
    def api_decisions(limit: int = 50) -> Dict[str, Any]:
        return {"status": "ok", "decisions": [d.model_dump() for d in volt_app.logger.get_recent_decisions(limit)]}

    # ------------------------------------------------------------------
    # Forecasts and plan
    # ------------------------------------------------------------------

    @app.get("/api/prices")
    async def api_prices() -> Dict[str, Any]:
        try:
            prices, solar = await scheduler.get_forecasts()
        except VoltAssistError as e:
            return _error(e)
        return {
            "status": "ok",
            "date": prices.date,
            "prices": [asdict(p) for p in prices.points],
            "average": prices.average,
            "cheapest_hours": prices.cheapest_hours(),
            "expensive_hours": prices.expensive_hours(),
            "solar": [asdict(p) for p in solar.points],
            "solar_total_wh": solar.total_wh,
        }

    @app.get("/api/plan")
    async def api_plan(text: bool = False) -> Dict[str, Any]:
        try:
            plan = await volt_app.plan()
        except VoltAssistError as e:
            return _error(e)
        if text:
            return {"status": "ok", "plan": format_plan(plan)}
        return {"status": "ok", "plan": asdict(plan)}

    @app.get("/api/stats/hourly")
    def api_hourly_stats(date: Optional[str] = None) -> Dict[str, Any]:
        date = date or get_configured_date_string()
        return {"status": "ok", "date": date,
                "hours": [s.model_dump() for s in volt_app.logger.get_hourly_stats(date)]}

    # ------------------------------------------------------------------
    # Loads
    # ------------------------------------------------------------------

    @app.get("/api/loads")
    async def api_loads() -> Dict[str, Any]:
        """Devices, their observed state and what the rules would propose now."""
        manager = volt_app.load_manager
        try:
            observations = await manager.observe()
            status = await volt_app.ha.read_battery_status()
            proposals = []
            if status is not None:
                prices, _ = await scheduler.get_forecasts()
                price = prices.price_at(now_configured().hour)
                proposals = manager.evaluate(LoadEvaluationContext(
                    soc=status.soc,
                    price=price,
                    price_percentile=prices.percentile_rank(price),
                    solar_watts=status.solar_watts,
                    load_watts=status.load_watts,
                    observations=observations,
                ))
        except VoltAssistError as e:
            return _error(e)
        report = scheduler.last_load_report
        return {
            "status": "ok",
            "enabled": volt_app.cfg.loads.enabled,
            "max_available_watts": volt_app.cfg.loads.max_available_watts,
            "devices": [d.model_dump() for d in manager.devices],
            "observations": [asdict(o) for o in observations],
            "proposals": [asdict(p) for p in proposals],
            "last_execution": asdict(report) if report else None,
        }

    @app.get("/api/loads/actions")
    def api_load_actions(limit: int = 50) -> Dict[str, Any]:
        return {"status": "ok", "actions": [a.model_dump() for a in volt_app.logger.get_load_actions(limit)]}

    @app.post("/api/loads/restore-all")
    async def api_restore_all() -> Dict[str, Any]:
        report = await volt_app.load_manager.force_restore_all()
        return {"status": "ok", "report": asdict(report)}

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    @app.get("/api/config")
    def api_config() -> Dict[str, Any]:
        cfg = volt_app.cfg.model_dump(mode="json")
        cfg["home_assistant"].pop("token", None)
        cfg["prices"].pop("esios_token", None)
        return {"status": "ok", "config": cfg}

    @app.put("/api/config/{section}")
    def api_update_config(section: str, values: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        try:
            updated = volt_app.update_config_section(section, values)
        except ConfigInvalid as e:
            raise HTTPException(status_code=400, detail=str(e))
        except VoltAssistError as e:
            raise HTTPException(status_code=403, detail=str(e))
        return {"status": "ok", section: getattr(updated, section).model_dump(mode="json")}

    return app
