# イベントバス
"""
A/Bテストエンジンのイベント配信

購読は登録順に同期配信される。ハンドラーの例外はログに記録し、
残りのハンドラーと発行元の処理は継続する。
close() 以降の購読は EventBusClosedError、発行は無視される。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.ab_testing.exceptions import EventBusClosedError

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """エンジンが発行するイベント"""
    TEST_CREATED = "test_created"
    TEST_UPDATED = "test_updated"
    TEST_STARTED = "test_started"
    TEST_PAUSED = "test_paused"
    TEST_RESUMED = "test_resumed"
    TEST_STOPPED = "test_stopped"
    USER_ASSIGNED = "user_assigned"
    RESULT_RECORDED = "result_recorded"
    ANALYSIS_COMPLETED = "analysis_completed"


@dataclass(frozen=True)
class Event:
    """イベント

    Attributes:
        type: イベント種別
        payload: ABTest / Assignment / ABTestResult / StatisticalAnalysis
        data: 監査ログ用の補足情報（停止理由など）
        timestamp: 発行時刻
    """
    type: EventType
    payload: Any
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


EventHandler = Callable[[Event], None]


class EventBus:
    """型付きの publish/subscribe チャネル

    使用例:
        bus = EventBus(clock=datetime.now)
        bus.subscribe(EventType.TEST_STOPPED, lambda e: print(e.payload.id))
        bus.subscribe_all(audit_logger.handle_event)
        bus.publish(EventType.TEST_STOPPED, test, {"reason": "completed"})
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        # (event_type or None, handler) を登録順に保持（None は全イベント）
        self._handlers: List[Tuple[Optional[EventType], EventHandler]] = []
        self._lock = Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, event_type: EventType, handler: EventHandler) -> Callable[[], None]:
        """イベントを購読

        Returns:
            購読解除用の関数

        Raises:
            EventBusClosedError: close() 後に呼ばれた場合
        """
        return self._add(EventType(event_type), handler)

    def subscribe_all(self, handler: EventHandler) -> Callable[[], None]:
        """全イベントを購読"""
        return self._add(None, handler)

    def publish(
        self,
        event_type: EventType,
        payload: Any,
        data: Optional[Dict[str, Any]] = None,
    ) -> Event:
        """イベントを発行し、登録順にハンドラーへ配信"""
        event = Event(
            type=event_type,
            payload=payload,
            data=data or {},
            timestamp=self._clock(),
        )
        with self._lock:
            if self._closed:
                logger.debug(f"クローズ済みのためイベントを破棄: {event_type.value}")
                return event
            handlers = [h for t, h in self._handlers if t is None or t is event_type]

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(
                    f"イベントハンドラーでエラー: event={event_type.value}, error={e}"
                )
        return event

    def close(self) -> None:
        """購読をすべて解除し、以降の購読を拒否する"""
        with self._lock:
            self._closed = True
            self._handlers.clear()

    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def _add(self, event_type: Optional[EventType], handler: EventHandler) -> Callable[[], None]:
        entry = (event_type, handler)
        with self._lock:
            if self._closed:
                raise EventBusClosedError("Cannot subscribe after the event bus is closed")
            self._handlers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return unsubscribe
