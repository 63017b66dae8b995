# 結果ストア
"""
結果の計測値を追記のみで保持するストア

順序は正しさに影響しないため、ロックは追記と件数取得の間だけ保持する。
append() は追記後のテスト単位の件数を返し、件数ベースの再分析トリガーに使う。
"""

import logging
from threading import Lock
from typing import Dict, List, Optional

from src.ab_testing.models import ABTestResult

logger = logging.getLogger(__name__)


class ResultStore:
    """結果ストア

    Attributes:
        _results: test_id → 記録順の ABTestResult リスト
        _lock: スレッドセーフ用ロック
    """

    def __init__(self) -> None:
        self._results: Dict[str, List[ABTestResult]] = {}
        self._lock = Lock()

    def append(self, result: ABTestResult) -> int:
        """結果を追記

        Returns:
            追記後のテストの結果件数
        """
        with self._lock:
            rows = self._results.setdefault(result.test_id, [])
            rows.append(result)
            return len(rows)

    def list_by_test(
        self,
        test_id: str,
        metric: Optional[str] = None,
    ) -> List[ABTestResult]:
        """テストの結果一覧（スナップショット）

        Args:
            test_id: テストID
            metric: 指定時はそのメトリクスのみ
        """
        with self._lock:
            rows = list(self._results.get(test_id, []))
        if metric is None:
            return rows
        return [r for r in rows if r.metric == metric]

    def count_by_test(self, test_id: str) -> int:
        with self._lock:
            return len(self._results.get(test_id, []))

    def purge_test(self, test_id: str) -> int:
        """テストの結果をすべて削除（保持期間切れの終了テスト用）

        Returns:
            削除件数
        """
        with self._lock:
            removed = len(self._results.pop(test_id, []))
        if removed:
            logger.info(f"結果を削除: test_id={test_id}, {removed} 件")
        return removed
