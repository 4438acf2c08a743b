import logging

from fastapi import Depends, FastAPI, HTTPException

from backend import BackendClient
from config import get_settings
from dashboard import DashboardOrchestrator, serialize_state
from scheduler import SchedulerManager
from schemas import CashFlowSelectIn, DiffIn, TargetIn, TimeRangeIn

settings = get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
logger = logging.getLogger(__name__)

app = FastAPI(title="Cash Flow Dashboard")

dashboard_orchestrator = DashboardOrchestrator(BackendClient(), settings=settings)
scheduler_manager = SchedulerManager(dashboard_orchestrator)


def get_dashboard() -> DashboardOrchestrator:
    return dashboard_orchestrator


@app.on_event("startup")
async def startup_event():
    await dashboard_orchestrator.load_initial()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/api/dashboard")
def api_dashboard(dashboard: DashboardOrchestrator = Depends(get_dashboard)):
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/refresh")
async def api_refresh(dashboard: DashboardOrchestrator = Depends(get_dashboard)):
    if dashboard.selected_cash_flow is None:
        await dashboard.load_initial()
    else:
        await dashboard.refresh()
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/previous-month")
async def api_previous_month(dashboard: DashboardOrchestrator = Depends(get_dashboard)):
    await dashboard.previous_month()
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/next-month")
async def api_next_month(dashboard: DashboardOrchestrator = Depends(get_dashboard)):
    await dashboard.next_month()
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/time-range")
async def api_time_range(
    payload: TimeRangeIn, dashboard: DashboardOrchestrator = Depends(get_dashboard)
):
    await dashboard.set_time_range(payload.time_range)
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/cash-flow")
async def api_select_cash_flow(
    payload: CashFlowSelectIn, dashboard: DashboardOrchestrator = Depends(get_dashboard)
):
    try:
        await dashboard.select_cash_flow(payload.cash_flow_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_state(dashboard.state)


@app.post("/api/dashboard/diff")
async def api_apply_diff(payload: DiffIn, dashboard: DashboardOrchestrator = Depends(get_dashboard)):
    if dashboard.scope is None:
        raise HTTPException(status_code=400, detail="No cash flow selected")
    touched = dashboard.apply_diff([change.to_change() for change in payload.changes])
    logger.info(f"api_diff: changes={len(payload.changes)} months={sorted(touched)}")
    return {"touched_months": sorted(touched), "state": serialize_state(dashboard.state)}


@app.post("/api/categories/{name}/target")
async def api_set_category_target(
    name: str, payload: TargetIn, dashboard: DashboardOrchestrator = Depends(get_dashboard)
):
    dashboard.set_category_target(name, payload.amount)
    return serialize_state(dashboard.state)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
