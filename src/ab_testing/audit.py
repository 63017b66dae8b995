# コンプライアンス監査ログ
"""
A/Bテストの操作を監査ログとして記録するモジュール

イベントバスを購読する副作用のみのオブザーバーで、エンジンの判断には影響しない。
取り外してもエンジンの正しさは変わらず、監査可能性だけが失われる。

記録対象:
    test_created / test_updated / test_started / test_paused / test_resumed /
    test_stopped / user_assigned / result_recorded / analysis_completed

匿名化が有効な場合、ユーザーIDは一方向ハッシュに置き換えてから記録する。
各エントリにはペイロードの SHA-256 チェックサムを付与し、改ざん検知に使う。
"""

import hashlib
import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from src.ab_testing.bucketing import hash_identifier
from src.ab_testing.events import Event, EventBus, EventType

logger = logging.getLogger(__name__)

FRAMEWORK_NAME = "ab_testing"


@dataclass(frozen=True)
class AuditEntry:
    """監査ログのエントリ"""
    id: str
    event: str
    data: Dict[str, Any]
    checksum: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event": self.event,
            "data": self.data,
            "checksum": self.checksum,
            "framework": FRAMEWORK_NAME,
        }


def compute_checksum(event: str, data: Dict[str, Any], timestamp: datetime) -> str:
    """エントリ内容のチェックサム"""
    body = json.dumps(
        {"event": event, "data": data, "timestamp": timestamp.isoformat()},
        sort_keys=True,
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


class AuditLogger:
    """監査ログ記録クラス

    使用例:
        audit = AuditLogger(enabled=True, anonymize=True)
        audit.attach(event_bus)
        ...
        entries = audit.get_entries(event="user_assigned", test_id=test.id)

    Attributes:
        enabled: 記録を行うか
        anonymize: ユーザーIDをハッシュ化するか
    """

    def __init__(
        self,
        enabled: bool = True,
        anonymize: bool = True,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.enabled = enabled
        self.anonymize = anonymize
        self._clock = clock
        self._entries: List[AuditEntry] = []
        self._lock = Lock()

    def attach(self, bus: EventBus) -> Callable[[], None]:
        """イベントバスの全イベントを購読"""
        return bus.subscribe_all(self.handle_event)

    def handle_event(self, event: Event) -> Optional[AuditEntry]:
        """イベントを監査ログに変換して記録"""
        return self.record(event.type.value, self._describe(event))

    def record(self, event: str, data: Dict[str, Any]) -> Optional[AuditEntry]:
        """監査ログを1件記録

        Returns:
            記録したエントリ（無効時は None）
        """
        if not self.enabled:
            return None

        if "user_id" in data and data["user_id"] is not None:
            data = dict(data)
            data["user_id"] = self.anonymize_user_id(data["user_id"])

        timestamp = self._clock()
        entry = AuditEntry(
            id=f"audit_{uuid4().hex}",
            event=event,
            data=data,
            checksum=compute_checksum(event, data, timestamp),
            timestamp=timestamp,
        )
        with self._lock:
            self._entries.append(entry)

        logger.info(f"A/Bテスト監査ログ: event={event}, data={data}")
        return entry

    def anonymize_user_id(self, user_id: str) -> str:
        """設定に応じてユーザーIDを匿名化"""
        return hash_identifier(user_id) if self.anonymize else user_id

    def get_entries(
        self,
        event: Optional[str] = None,
        test_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AuditEntry]:
        """条件に合うエントリを記録順で取得"""
        with self._lock:
            entries = list(self._entries)
        if event is not None:
            entries = [e for e in entries if e.event == event]
        if test_id is not None:
            entries = [e for e in entries if e.data.get("test_id") == test_id]
        if since is not None:
            entries = [e for e in entries if e.timestamp >= since]
        return entries

    def verify(self, entry: AuditEntry) -> bool:
        """チェックサムを検証"""
        return entry.checksum == compute_checksum(entry.event, entry.data, entry.timestamp)

    def purge_expired(self, cutoff: datetime) -> int:
        """cutoff より古いエントリを削除

        Returns:
            削除件数
        """
        with self._lock:
            before = len(self._entries)
            self._entries = [e for e in self._entries if e.timestamp >= cutoff]
            removed = before - len(self._entries)
        if removed:
            logger.info(f"保持期間切れの監査ログを削除: {removed} 件")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        """イベント種別ごとの件数など"""
        with self._lock:
            entries = list(self._entries)
        return {
            "total_entries": len(entries),
            "by_event": dict(Counter(e.event for e in entries)),
            "oldest": entries[0].timestamp.isoformat() if entries else None,
            "newest": entries[-1].timestamp.isoformat() if entries else None,
            "anonymized": self.anonymize,
        }

    def _describe(self, event: Event) -> Dict[str, Any]:
        """イベントから記録するデータを組み立てる"""
        payload = event.payload
        event_type = event.type

        if event_type is EventType.USER_ASSIGNED:
            data = {
                "test_id": payload.test_id,
                "variant_id": payload.variant_id,
                "user_id": payload.user_id,
            }
        elif event_type is EventType.RESULT_RECORDED:
            data = {
                "test_id": payload.test_id,
                "variant_id": payload.variant_id,
                "metric": payload.metric,
                "value": payload.value,
                "user_id": payload.user_id,
            }
        elif event_type is EventType.ANALYSIS_COMPLETED:
            data = {
                "test_id": payload.test_id,
                "metric": payload.metric,
                "recommendation": payload.recommendation.value,
            }
        else:
            data = {"test_id": payload.id, "status": payload.status.value}
            if event_type is EventType.TEST_CREATED:
                data["created_by"] = payload.created_by

        data.update(event.data)
        return data
