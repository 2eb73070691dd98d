from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol

from .config import AppConfig, load_app_config
from .evaluator import evaluate
from .index import AlertIndex, ChangeAction, GroupKey, group_key_for
from .notifier import NotificationQueue, NotificationTask, build_message_sink_from_config
from .price_source import SpotPriceProvider, build_price_provider_from_config
from .rules import AlertRule, NewAlertEvent


class RuleStore(Protocol):
    def list_enabled_rules(self) -> list[AlertRule]:
        ...

    def update_rule(self, rule_id: str, changes: Mapping[str, Any]) -> None:
        ...

    def create_event(self, event: NewAlertEvent) -> int:
        ...

    def update_event_status(self, event_id: int, status: str, error: str | None = None) -> None:
        ...


@dataclass(frozen=True)
class EngineStatus:
    rule_count: int
    group_count: int
    running: bool
    inflight_group_ticks: int = 0
    pending_notifications: int = 0
    notifications_sent: int = 0
    notifications_failed: int = 0


class MonitorEngine:
    def __init__(
        self,
        *,
        store: RuleStore,
        price_provider: SpotPriceProvider,
        notifier: NotificationQueue,
        tick_interval_seconds: float = 0.2,
        repeat_spacing_seconds: float = 3.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._logger = logging.getLogger("pricealert.engine")
        self._store = store
        self._price_provider = price_provider
        self._notifier = notifier
        self._tick_interval_seconds = max(0.01, float(tick_interval_seconds))
        self._repeat_spacing_seconds = max(0.0, float(repeat_spacing_seconds))
        self._clock = clock or time.time
        self._index = AlertIndex()
        self._running = False
        self._stop_event: asyncio.Event | None = None
        self._ticker_task: asyncio.Task[None] | None = None
        self._inflight: dict[GroupKey, asyncio.Task[None]] = {}

    @property
    def running(self) -> bool:
        return self._running

    @property
    def index(self) -> AlertIndex:
        return self._index

    @property
    def notifier(self) -> NotificationQueue:
        return self._notifier

    @property
    def price_provider(self) -> SpotPriceProvider:
        return self._price_provider

    def status(self) -> EngineStatus:
        return EngineStatus(
            rule_count=self._index.rule_count,
            group_count=self._index.group_count,
            running=self._running,
            inflight_group_ticks=len(self._inflight),
            pending_notifications=self._notifier.pending_count(),
            notifications_sent=self._notifier.sent_count,
            notifications_failed=self._notifier.failed_count,
        )

    def rebuild(self) -> None:
        rules = self._store.list_enabled_rules()
        self._index.rebuild(rules, self._clock())

    def apply_change(self, action: ChangeAction, rule: AlertRule) -> None:
        self._index.apply_change(action, rule, self._clock())
        self._logger.debug(
            "applied change action=%s alert_id=%s rules=%s groups=%s",
            action,
            rule.id,
            self._index.rule_count,
            self._index.group_count,
        )

    def enqueue(self, task: NotificationTask) -> None:
        self._notifier.enqueue(task)

    def start(self) -> None:
        if self._running:
            return
        self.rebuild()
        stop_event = asyncio.Event()
        self._stop_event = stop_event
        self._running = True
        self._ticker_task = asyncio.get_running_loop().create_task(
            self._tick_loop(stop_event),
            name="pricealert-monitor-ticker",
        )
        self._logger.info(
            "monitor engine started tick=%ss rules=%s groups=%s",
            self._tick_interval_seconds,
            self._index.rule_count,
            self._index.group_count,
        )

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        self._stop_event = None
        self._ticker_task = None
        self._logger.info("monitor engine stopped")

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.wait(list(self._inflight.values()))
        await self._notifier.wait_idle()

    async def aclose(self, *, drain_timeout_seconds: float = 5.0) -> None:
        self.stop()
        try:
            await asyncio.wait_for(self.wait_idle(), timeout=drain_timeout_seconds)
        except asyncio.TimeoutError:
            self._logger.warning(
                "shutdown with undelivered notifications pending=%s",
                self._notifier.pending_count(),
            )
        await self._price_provider.aclose()
        await self._notifier.sink.aclose()

    async def _tick_loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                self.process_due_groups()
            except Exception:
                self._logger.exception("monitor tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._tick_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def process_due_groups(self) -> list[asyncio.Task[None]]:
        now = self._clock()
        loop = asyncio.get_running_loop()
        spawned: list[asyncio.Task[None]] = []
        for group in self._index.due_groups(now):
            key = group.key
            self._index.advance(key, now)
            if key in self._inflight:
                self._logger.debug("previous tick still running; skipping group=%s", key)
                continue
            task = loop.create_task(self.run_group_tick(key, now=now), name=f"pricealert-group-{key}")
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
            spawned.append(task)
        return spawned

    async def run_group_tick(self, key: GroupKey, *, now: float | None = None) -> None:
        tick_at = self._clock() if now is None else now
        try:
            spot = await self._price_provider.get_spot_price(key.symbol)
        except Exception as exc:
            self._logger.warning(
                "price fetch failed; skipping group symbol=%s interval=%ss error=%s",
                key.symbol,
                key.interval,
                exc,
            )
            return

        for rule in self._index.group_rules(key):
            current = self._index.get_rule(rule.id)
            if current is None or not current.is_enabled or group_key_for(current) != key:
                continue
            try:
                await self._evaluate_rule(current, tick_at, spot.price)
            except Exception:
                self._logger.exception(
                    "rule evaluation failed alert_id=%s group=%s price=%s",
                    current.id,
                    key,
                    spot.price,
                )

    async def _evaluate_rule(self, rule: AlertRule, now: float, price: float) -> None:
        result = evaluate(rule, now, price)
        if not result.triggered:
            self._index.record_runtime(
                rule.id,
                last_state=result.state,
                last_triggered_at=rule.last_triggered_at,
            )
            await asyncio.to_thread(self._store.update_rule, rule.id, {"last_state": result.state})
            return

        triggered_at = int(now)
        self._index.record_runtime(rule.id, last_state=result.state, last_triggered_at=triggered_at)
        await asyncio.to_thread(
            self._store.update_rule,
            rule.id,
            {"last_triggered_at": triggered_at, "last_state": result.state},
        )

        notify_times = max(1, int(rule.notify_times))
        event_id = await asyncio.to_thread(
            self._store.create_event,
            NewAlertEvent(
                alert_id=rule.id,
                user_id=rule.user_id,
                symbol=rule.symbol,
                event_type="trigger",
                reason=f"{result.reason} (x{notify_times})",
                price=price,
                threshold=rule.threshold,
                triggered_at=triggered_at,
            ),
        )
        for i in range(notify_times):
            self._notifier.enqueue(
                NotificationTask(
                    event_id=event_id,
                    alert_id=rule.id,
                    symbol=rule.symbol,
                    condition_type=rule.condition_type,
                    threshold=rule.threshold,
                    price=price,
                    reason=f"{result.reason} ({i + 1}/{notify_times})",
                    triggered_at=triggered_at,
                    destination=rule.destination,
                    not_before=now + i * self._repeat_spacing_seconds,
                )
            )
        self._logger.info(
            "alert triggered alert_id=%s symbol=%s reason=%s price=%s event_id=%s notify_times=%s",
            rule.id,
            rule.symbol,
            result.reason,
            price,
            event_id,
            notify_times,
        )


def build_engine_from_config(store: RuleStore, *, config: AppConfig | None = None) -> MonitorEngine:
    cfg = config or load_app_config()
    notifier = NotificationQueue(
        sink=build_message_sink_from_config(cfg),
        event_store=store,
        max_attempts=cfg.delivery.max_attempts,
        retry_delays_seconds=cfg.delivery.retry_delays_seconds,
        min_send_spacing_seconds=cfg.delivery.min_send_spacing_ms / 1000.0,
        display_timezone=cfg.delivery.display_timezone,
    )
    return MonitorEngine(
        store=store,
        price_provider=build_price_provider_from_config(cfg),
        notifier=notifier,
        tick_interval_seconds=cfg.monitor.tick_interval_ms / 1000.0,
        repeat_spacing_seconds=cfg.monitor.repeat_spacing_seconds,
    )
