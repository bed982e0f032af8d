"""
Progress events for sync runs.

Components report lifecycle and progress through a ProgressReporter bound to
one user. The reporter publishes onto an EventBus; whatever delivers events
to clients (SSE, websocket, log shipper) subscribes to the bus. Delivery is
fire-and-forget: a slow or failing subscriber never blocks or fails a run.

Usage:
    from ordersync.events import events, ProgressReporter, ProgressType

    @events.on(ProgressType.PROGRESS)
    async def forward(event: ProgressEvent):
        await channel.send(event.to_dict())

    reporter = ProgressReporter(user_id="42")
    await reporter.progress("120/500 orders downloaded", current=120, total=500)
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine, Dict, List, Optional, Union

from ordersync.observability import get_correlation_id, get_logger

logger = get_logger(__name__)


class ProgressType(Enum):
    """Event types delivered to clients."""

    START = "sync_start"
    PROGRESS = "sync_progress"
    WARNING = "sync_warning"
    COMPLETE = "sync_complete"
    CONTINUE = "sync_continue"

    # Queue worker
    SAVE_START = "sync_save_start"
    SAVE_PROGRESS = "sync_save_progress"
    SAVE_COMPLETE = "sync_save_complete"

    # No more work: client channels may be closed
    CLOSED = "sync_closed"


@dataclass
class ProgressEvent:
    """One structured event: {type, message, current?, total?, account_id?, error_code?}."""

    type: ProgressType
    message: str
    user_id: str
    current: Optional[int] = None
    total: Optional[int] = None
    account_id: Optional[str] = None
    error_code: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[str] = field(default_factory=get_correlation_id)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value, "message": self.message}
        for name in ("current", "total", "account_id", "error_code"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        payload.update(self.extra)
        return payload


EventHandler = Callable[[ProgressEvent], Coroutine[Any, Any, None]]


class EventBus:
    """
    Async publish/subscribe bus for progress events.

    - Multiple handlers per type plus wildcard handlers
    - Handler failures are isolated and logged
    - Bounded history for debugging
    """

    def __init__(self, max_history: int = 200):
        self._handlers: Dict[ProgressType, List[EventHandler]] = {}
        self._wildcard_handlers: List[EventHandler] = []
        self._history: List[ProgressEvent] = []
        self._max_history = max_history

    def on(
        self, event_type: Union[ProgressType, None] = None
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator registering a handler for one type, or all types when None."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.subscribe(event_type, handler)
            return handler

        return decorator

    def subscribe(self, event_type: Optional[ProgressType], handler: EventHandler) -> None:
        if event_type is None:
            self._wildcard_handlers.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Optional[ProgressType], handler: EventHandler) -> bool:
        handlers = self._wildcard_handlers if event_type is None else self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event: ProgressEvent) -> None:
        """Deliver an event to every matching handler concurrently."""
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

        handlers = list(self._handlers.get(event.type, []))
        handlers.extend(self._wildcard_handlers)
        if not handlers:
            return

        results = await asyncio.gather(
            *[handler(event) for handler in handlers],
            return_exceptions=True,
        )
        for handler, result in zip(handlers, results):
            if isinstance(result, Exception):
                logger.error(
                    f"Handler {getattr(handler, '__name__', handler)} failed for {event.type.value}: {result}",
                    extra={"user_id": event.user_id},
                )

    def get_history(
        self,
        user_id: Optional[str] = None,
        event_type: Optional[ProgressType] = None,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        history = self._history
        if user_id is not None:
            history = [e for e in history if e.user_id == user_id]
        if event_type is not None:
            history = [e for e in history if e.type == event_type]
        return [e.to_dict() for e in history[-limit:]]


# Global event bus instance
events = EventBus()


class ProgressReporter:
    """
    Fire-and-forget progress sink for one user.

    Publishing is bounded by `timeout`; errors and timeouts are logged
    and dropped.
    """

    def __init__(self, user_id: str, bus: Optional[EventBus] = None, timeout: float = 2.0):
        self.user_id = user_id
        self.bus = bus if bus is not None else events
        self.timeout = timeout

    async def emit(
        self,
        event_type: ProgressType,
        message: str,
        *,
        current: Optional[int] = None,
        total: Optional[int] = None,
        account_id: Optional[str] = None,
        error_code: Optional[str] = None,
        **extra: Any,
    ) -> None:
        event = ProgressEvent(
            type=event_type,
            message=message,
            user_id=self.user_id,
            current=current,
            total=total,
            account_id=account_id,
            error_code=error_code,
            extra=extra,
        )
        try:
            await asyncio.wait_for(self.bus.publish(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Progress event {event_type.value} timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Progress event {event_type.value} dropped: {e}")

    async def start(self, message: str, **fields: Any) -> None:
        await self.emit(ProgressType.START, message, **fields)

    async def progress(self, message: str, **fields: Any) -> None:
        await self.emit(ProgressType.PROGRESS, message, **fields)

    async def warning(self, message: str, error_code: Optional[str] = None, **fields: Any) -> None:
        await self.emit(ProgressType.WARNING, message, error_code=error_code, **fields)

    async def complete(self, message: str, **fields: Any) -> None:
        await self.emit(ProgressType.COMPLETE, message, **fields)

    async def continuing(self, message: str, **fields: Any) -> None:
        await self.emit(ProgressType.CONTINUE, message, **fields)

    async def close(self) -> None:
        await self.emit(ProgressType.CLOSED, "Sync finished")

    async def notify(self, message: str, error_code: str) -> None:
        """Warning sink shaped for resilience.send_with_retry."""
        await self.warning(message, error_code=error_code)
