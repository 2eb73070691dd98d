from __future__ import annotations

import asyncio
import heapq
import html
import itertools
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Protocol, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from .config import DEFAULT_RETRY_DELAYS_SECONDS, AppConfig, load_app_config
from .evaluator import format_number
from .rules import Destination


class NotificationError(RuntimeError):
    pass


@dataclass(frozen=True)
class NotificationTask:
    event_id: int
    alert_id: str
    symbol: str
    condition_type: str
    threshold: float
    price: float | None
    reason: str
    triggered_at: int
    destination: Destination | None
    not_before: float = 0.0
    message: str | None = None


class MessageSink(Protocol):
    async def send(self, destination: Destination | None, message: str) -> None:
        ...

    async def aclose(self) -> None:
        ...


class EventStatusWriter(Protocol):
    def update_event_status(self, event_id: int, status: str, error: str | None = None) -> None:
        ...


def _resolve_zone(name: str) -> timezone | ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


def build_alert_message(task: NotificationTask, *, display_timezone: str = "Asia/Shanghai") -> str:
    if task.message:
        return task.message
    zone = _resolve_zone(display_timezone)
    when = datetime.fromtimestamp(task.triggered_at, tz=zone).strftime("%Y-%m-%d %H:%M:%S %Z")
    emoji = "🔔"
    if "down" in task.condition_type:
        emoji = "📉"
    elif "pct_change" in task.condition_type:
        emoji = "📊"
    price = "N/A" if task.price is None else format_number(task.price)
    return (
        f"{emoji} <b>Price alert</b>\n\n"
        f"<b>Symbol:</b> {html.escape(task.symbol)}\n"
        f"<b>Condition:</b> {html.escape(task.condition_type)}\n"
        f"<b>Threshold:</b> {format_number(task.threshold)}\n"
        f"<b>Price:</b> {price}\n"
        f"<b>Reason:</b> {html.escape(task.reason)}\n"
        f"<b>Time:</b> {when}"
    )


class TelegramMessageSink:
    def __init__(
        self,
        *,
        api_base: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def send(self, destination: Destination | None, message: str) -> None:
        if destination is None or not destination.bot_token or not destination.chat_id:
            raise NotificationError("Telegram not configured: missing bot_token or chat_id")
        try:
            response = await self._client.post(
                f"{self._api_base}/bot{destination.bot_token}/sendMessage",
                json={"chat_id": destination.chat_id, "text": message, "parse_mode": "HTML"},
            )
        except httpx.HTTPError as exc:
            raise NotificationError(f"Telegram request failed: {exc.__class__.__name__}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        if response.status_code >= 300 or not payload.get("ok"):
            description = payload.get("description") or f"HTTP {response.status_code}"
            raise NotificationError(f"Telegram API error: {description}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class LoggingMessageSink:
    def __init__(self) -> None:
        self._logger = logging.getLogger("pricealert.notifier")

    async def send(self, destination: Destination | None, message: str) -> None:
        chat_id = destination.chat_id if destination is not None else "-"
        self._logger.info("notification chat_id=%s message=%s", chat_id, message.replace("\n", " | "))

    async def aclose(self) -> None:
        return None


@dataclass
class _EventDelivery:
    outstanding: int = 0
    succeeded: bool = False
    last_error: str | None = None


class NotificationQueue:
    """Single-consumer delivery queue with global send spacing and retries.

    Tasks are released in ``(not_before, enqueue order)`` order. At most one
    drain coroutine runs at a time, so at most one send is ever in flight.

    Several tasks may share one event (repeat notifications). The event status
    is written once, after its last task concludes: ``success`` if any of its
    tasks was delivered, otherwise ``failed`` with the last error.
    """

    def __init__(
        self,
        *,
        sink: MessageSink,
        event_store: EventStatusWriter,
        max_attempts: int = 3,
        retry_delays_seconds: Sequence[float] = DEFAULT_RETRY_DELAYS_SECONDS,
        min_send_spacing_seconds: float = 0.5,
        display_timezone: str = "Asia/Shanghai",
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._logger = logging.getLogger("pricealert.notifier")
        self._sink = sink
        self._event_store = event_store
        self._max_attempts = max(1, int(max_attempts))
        self._retry_delays = tuple(float(d) for d in retry_delays_seconds) or DEFAULT_RETRY_DELAYS_SECONDS
        self._min_send_spacing_seconds = max(0.0, float(min_send_spacing_seconds))
        self._display_timezone = display_timezone
        self._clock = clock or time.time
        self._sleep = sleep or asyncio.sleep
        self._pending: list[tuple[float, int, NotificationTask]] = []
        self._sequence = itertools.count()
        self._deliveries: dict[int, _EventDelivery] = {}
        self._wakeup: asyncio.Event | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._last_send_at: float | None = None
        self.sent_count = 0
        self.failed_count = 0

    @property
    def sink(self) -> MessageSink:
        return self._sink

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    def pending_count(self) -> int:
        return len(self._pending)

    def enqueue(self, task: NotificationTask) -> None:
        heapq.heappush(self._pending, (float(task.not_before), next(self._sequence), task))
        self._deliveries.setdefault(task.event_id, _EventDelivery()).outstanding += 1
        if self.draining and self._wakeup is not None:
            self._wakeup.set()
            return
        self._wakeup = asyncio.Event()
        self._drain_task = asyncio.get_running_loop().create_task(
            self._drain(),
            name="pricealert-notify-drain",
        )

    async def wait_idle(self) -> None:
        while self.draining and self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    def retry_delay(self, attempt: int) -> float:
        index = min(max(attempt, 1), len(self._retry_delays)) - 1
        return self._retry_delays[index]

    async def _drain(self) -> None:
        while self._pending:
            not_before, _, task = self._pending[0]
            wait_seconds = not_before - self._clock()
            if wait_seconds > 0:
                wakeup = self._wakeup
                if wakeup is None:
                    wakeup = self._wakeup = asyncio.Event()
                wakeup.clear()
                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=wait_seconds)
                except asyncio.TimeoutError:
                    pass
                continue
            heapq.heappop(self._pending)
            try:
                error = await self._deliver(task)
            except Exception as exc:
                self._logger.exception(
                    "delivery crashed event_id=%s alert_id=%s",
                    task.event_id,
                    task.alert_id,
                )
                error = str(exc).strip() or exc.__class__.__name__
            await self._conclude(task.event_id, error)

    async def _respect_spacing(self) -> None:
        if self._last_send_at is None:
            return
        gap = self._clock() - self._last_send_at
        if gap < self._min_send_spacing_seconds:
            await self._sleep(self._min_send_spacing_seconds - gap)

    async def _deliver(self, task: NotificationTask) -> str | None:
        """Send one task with retries; returns the last error, or None once sent."""
        message = build_alert_message(task, display_timezone=self._display_timezone)
        last_error: str | None = None
        for attempt in range(1, self._max_attempts + 1):
            await self._respect_spacing()
            self._last_send_at = self._clock()
            try:
                await self._sink.send(task.destination, message)
            except Exception as exc:
                last_error = str(exc).strip() or exc.__class__.__name__
                self._logger.warning(
                    "notification attempt failed event_id=%s alert_id=%s attempt=%s/%s error=%s",
                    task.event_id,
                    task.alert_id,
                    attempt,
                    self._max_attempts,
                    last_error,
                )
                if attempt < self._max_attempts:
                    await self._sleep(self.retry_delay(attempt))
                continue
            self.sent_count += 1
            self._logger.info(
                "notification sent event_id=%s alert_id=%s attempt=%s",
                task.event_id,
                task.alert_id,
                attempt,
            )
            return None

        self.failed_count += 1
        self._logger.error(
            "notification failed after %s attempts event_id=%s alert_id=%s error=%s",
            self._max_attempts,
            task.event_id,
            task.alert_id,
            last_error,
        )
        return last_error or "delivery failed"

    async def _conclude(self, event_id: int, error: str | None) -> None:
        delivery = self._deliveries.get(event_id)
        if delivery is None:
            delivery = _EventDelivery(outstanding=1)
        delivery.outstanding -= 1
        if error is None:
            delivery.succeeded = True
        else:
            delivery.last_error = error
        if delivery.outstanding > 0:
            self._deliveries[event_id] = delivery
            return
        self._deliveries.pop(event_id, None)
        if delivery.succeeded:
            await self._write_status(event_id, "success", None)
        else:
            await self._write_status(event_id, "failed", delivery.last_error)

    async def _write_status(self, event_id: int, status: str, error: str | None) -> None:
        try:
            await asyncio.to_thread(self._event_store.update_event_status, event_id, status, error)
        except Exception:
            self._logger.exception("failed to record notify status event_id=%s status=%s", event_id, status)


def build_message_sink_from_config(config: AppConfig | None = None) -> MessageSink:
    cfg = config or load_app_config()
    if cfg.providers.message_sink == "log":
        return LoggingMessageSink()
    return TelegramMessageSink(
        api_base=cfg.telegram.api_base,
        timeout_seconds=cfg.delivery.send_timeout_seconds,
    )
