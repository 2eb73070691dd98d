from __future__ import annotations

import asyncio
import time

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from .engine import EngineStatus, MonitorEngine
from .models import (
    AlertCreateIn,
    AlertEventOut,
    AlertOut,
    AlertPatchIn,
    ControlResponse,
    EngineStatusOut,
    NotifyTestIn,
    NotifyTestOut,
    SpotPriceOut,
    TelegramTestOut,
    UserCreateIn,
    UserOut,
    UserTelegramIn,
    normalize_symbol,
)
from .notifier import NotificationError, NotificationTask, build_alert_message
from .price_source import PriceSourceError
from .rules import NewAlertEvent
from .store import SQLiteStore

router = APIRouter(prefix="/v1", tags=["pricealert"])

SYSTEM_ALERT_ID = "system"
TELEGRAM_TEST_MESSAGE = "🧪 Test message: Telegram notifications are configured successfully."


def get_store(request: Request) -> SQLiteStore:
    return request.app.state.store


def get_engine(request: Request) -> MonitorEngine:
    return request.app.state.engine


def _status_out(status: EngineStatus) -> EngineStatusOut:
    return EngineStatusOut(
        rule_count=status.rule_count,
        group_count=status.group_count,
        running=status.running,
        inflight_group_ticks=status.inflight_group_ticks,
        pending_notifications=status.pending_notifications,
        notifications_sent=status.notifications_sent,
        notifications_failed=status.notifications_failed,
    )


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(payload: UserCreateIn, store: SQLiteStore = Depends(get_store)) -> UserOut:
    return await asyncio.to_thread(store.create_user, payload)


@router.get("/users", response_model=list[UserOut])
async def list_users(store: SQLiteStore = Depends(get_store)) -> list[UserOut]:
    return await asyncio.to_thread(store.list_users)


@router.put("/users/{user_id}/telegram", response_model=UserOut)
async def update_user_telegram(
    user_id: str,
    payload: UserTelegramIn,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> UserOut:
    user = await asyncio.to_thread(store.update_user_telegram, user_id, payload)
    await _reapply_user_rules(user_id, store, engine)
    return user


@router.delete("/users/{user_id}/telegram", response_model=UserOut)
async def clear_user_telegram(
    user_id: str,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> UserOut:
    user = await asyncio.to_thread(store.clear_user_telegram, user_id)
    await _reapply_user_rules(user_id, store, engine)
    return user


@router.post("/users/{user_id}/telegram/test", response_model=TelegramTestOut)
async def test_user_telegram(
    user_id: str,
    payload: NotifyTestIn | None = None,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> TelegramTestOut:
    """Send straight through the sink, bypassing the queue, and record the outcome."""
    destination = await asyncio.to_thread(store.get_user_destination, user_id)
    message = (payload.message if payload else None) or TELEGRAM_TEST_MESSAGE
    event_id = await asyncio.to_thread(
        store.create_event,
        NewAlertEvent(
            alert_id=SYSTEM_ALERT_ID,
            user_id=user_id,
            event_type="test",
            reason=message,
            price=None,
            threshold=None,
            triggered_at=int(time.time()),
        ),
    )
    error: str | None = None
    try:
        await engine.notifier.sink.send(destination, message)
    except NotificationError as exc:
        error = str(exc)
    status = "failed" if error else "success"
    await asyncio.to_thread(store.update_event_status, event_id, status, error)
    return TelegramTestOut(success=error is None, event_id=event_id, error=error)


async def _reapply_user_rules(user_id: str, store: SQLiteStore, engine: MonitorEngine) -> None:
    for rule in await asyncio.to_thread(store.list_rules_for_user, user_id):
        engine.apply_change("update", rule)


@router.post("/alerts", response_model=AlertOut, status_code=201)
async def create_alert(
    payload: AlertCreateIn,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> AlertOut:
    alert = await asyncio.to_thread(store.create_alert, payload)
    engine.apply_change("upsert", await asyncio.to_thread(store.get_rule, alert.id))
    return alert


@router.get("/alerts", response_model=list[AlertOut])
async def list_alerts(
    user_id: str | None = Query(default=None),
    store: SQLiteStore = Depends(get_store),
) -> list[AlertOut]:
    return await asyncio.to_thread(store.list_alerts, user_id=user_id)


@router.get("/alerts/{alert_id}", response_model=AlertOut)
async def get_alert(alert_id: str, store: SQLiteStore = Depends(get_store)) -> AlertOut:
    return await asyncio.to_thread(store.get_alert, alert_id)


@router.patch("/alerts/{alert_id}", response_model=AlertOut)
async def patch_alert(
    alert_id: str,
    payload: AlertPatchIn,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> AlertOut:
    alert = await asyncio.to_thread(store.patch_alert, alert_id, payload)
    engine.apply_change("update", await asyncio.to_thread(store.get_rule, alert_id))
    return alert


@router.delete("/alerts/{alert_id}", response_model=ControlResponse)
async def delete_alert(
    alert_id: str,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> ControlResponse:
    rule = await asyncio.to_thread(store.delete_alert, alert_id)
    engine.apply_change("delete", rule)
    return ControlResponse(success=True, message=f"alert {alert_id} deleted")


@router.post("/alerts/{alert_id}/test", response_model=NotifyTestOut)
async def test_alert(
    alert_id: str,
    payload: NotifyTestIn | None = None,
    store: SQLiteStore = Depends(get_store),
    engine: MonitorEngine = Depends(get_engine),
) -> NotifyTestOut:
    rule = await asyncio.to_thread(store.get_rule, alert_id)
    try:
        price: float | None = (await engine.price_provider.get_spot_price(rule.symbol)).price
    except PriceSourceError:
        price = None
    triggered_at = int(time.time())
    custom_message = payload.message if payload else None
    reason = custom_message or "test notification"
    event_id = await asyncio.to_thread(
        store.create_event,
        NewAlertEvent(
            alert_id=rule.id,
            user_id=rule.user_id,
            symbol=rule.symbol,
            event_type="test",
            reason=reason,
            price=price,
            threshold=rule.threshold,
            triggered_at=triggered_at,
        ),
    )
    task = NotificationTask(
        event_id=event_id,
        alert_id=rule.id,
        symbol=rule.symbol,
        condition_type=rule.condition_type,
        threshold=rule.threshold,
        price=price,
        reason=reason,
        triggered_at=triggered_at,
        destination=rule.destination,
        message=custom_message,
    )
    engine.enqueue(task)
    return NotifyTestOut(
        event_id=event_id,
        alert_id=rule.id,
        notify_status="queued",
        message=build_alert_message(task),
    )


@router.get("/events", response_model=list[AlertEventOut])
async def list_events(
    limit: int = Query(default=50, ge=1, le=500),
    symbol: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    store: SQLiteStore = Depends(get_store),
) -> list[AlertEventOut]:
    return await asyncio.to_thread(store.list_events, limit=limit, symbol=symbol, user_id=user_id)


@router.get("/events/{event_id}", response_model=AlertEventOut)
async def get_event(event_id: int, store: SQLiteStore = Depends(get_store)) -> AlertEventOut:
    return await asyncio.to_thread(store.get_event, event_id)


@router.get("/engine/status", response_model=EngineStatusOut)
async def engine_status(engine: MonitorEngine = Depends(get_engine)) -> EngineStatusOut:
    return _status_out(engine.status())


@router.post("/engine/start", response_model=ControlResponse)
async def engine_start(engine: MonitorEngine = Depends(get_engine)) -> ControlResponse:
    already_running = engine.running
    engine.start()
    message = "engine already running" if already_running else "engine started"
    return ControlResponse(success=True, message=message, engine=_status_out(engine.status()))


@router.post("/engine/stop", response_model=ControlResponse)
async def engine_stop(engine: MonitorEngine = Depends(get_engine)) -> ControlResponse:
    engine.stop()
    return ControlResponse(success=True, message="engine stopped", engine=_status_out(engine.status()))


@router.post("/engine/rebuild", response_model=ControlResponse)
async def engine_rebuild(engine: MonitorEngine = Depends(get_engine)) -> ControlResponse:
    engine.rebuild()
    return ControlResponse(success=True, message="index rebuilt", engine=_status_out(engine.status()))


@router.get("/prices/{symbol}", response_model=SpotPriceOut)
async def spot_price(symbol: str, engine: MonitorEngine = Depends(get_engine)) -> SpotPriceOut:
    try:
        normalized = normalize_symbol(symbol)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    try:
        spot = await engine.price_provider.get_spot_price(normalized)
    except PriceSourceError as exc:
        raise HTTPException(status_code=502, detail=f"price unavailable: {exc}") from exc
    return SpotPriceOut(symbol=normalized, price=spot.price, as_of=spot.as_of)
