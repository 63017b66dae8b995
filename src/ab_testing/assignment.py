# バリアント割り当て
"""
ユーザー×テストのバリアント割り当てを管理するモジュール

割り当ては初回の対象リクエスト時に遅延生成され、以後はテスト期間中ずっと
同じ結果を返す（ターゲティング用のコンテキストが後から変わっても変わらない）。
「既に割り当て済みか」の確認と書き込みは同一ロック内で行い、
同時リクエストで異なる割り当てが生まれないようにする。
"""

import logging
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from src.ab_testing.bucketing import bucket_value, variant_seed
from src.ab_testing.models import ABTest, Assignment

logger = logging.getLogger(__name__)


def select_variant(user_id: str, test: ABTest) -> str:
    """重みに基づいて決定論的にバリアントを選択

    r = bucket_value(user_id:test_id) を引き、宣言順に重みを累積して
    累積重みが r 以上になった最初のバリアントを返す。
    到着順に依存せず、同じユーザーは常に同じバリアントになる。

    Args:
        user_id: ユーザーID
        test: 対象テスト

    Returns:
        バリアントID
    """
    r = bucket_value(variant_seed(user_id, test.id))

    cumulative = 0.0
    for variant in test.variants:
        cumulative += variant.weight
        if cumulative >= r:
            return variant.id

    # フォールバック（浮動小数点の誤差対策）
    return test.variants[-1].id


class AssignmentStore:
    """割り当てストア

    (user_id, test_id) → Assignment の対応を保持する。
    スレッドセーフで、割り当ての確認と作成をアトミックに行う。

    Attributes:
        _by_key: (user_id, test_id) → Assignment
        _by_test: test_id → 作成順の Assignment リスト
        _lock: スレッドセーフ用ロック
    """

    def __init__(self) -> None:
        self._by_key: Dict[Tuple[str, str], Assignment] = {}
        self._by_test: Dict[str, List[Assignment]] = {}
        self._lock = Lock()

    def get(self, user_id: str, test_id: str) -> Optional[Assignment]:
        """既存の割り当てを取得"""
        with self._lock:
            return self._by_key.get((user_id, test_id))

    def get_or_create(
        self,
        user_id: str,
        test_id: str,
        factory: Callable[[], Optional[Assignment]],
    ) -> Tuple[Optional[Assignment], bool]:
        """割り当てを取得、なければ factory で作成して保存

        factory は対象外の場合 None を返す（その場合は何も保存しない）。
        factory はロック内で呼ばれるため、外部I/Oを行ってはならない。

        Returns:
            (割り当て, 新規作成したか) のタプル
        """
        key = (user_id, test_id)
        with self._lock:
            existing = self._by_key.get(key)
            if existing is not None:
                return existing, False

            assignment = factory()
            if assignment is None:
                return None, False

            self._by_key[key] = assignment
            self._by_test.setdefault(test_id, []).append(assignment)

        logger.debug(
            f"割り当てを作成: test_id={test_id}, variant_id={assignment.variant_id}"
        )
        return assignment, True

    def list_by_test(self, test_id: str) -> List[Assignment]:
        """テストの割り当て一覧（スナップショット）"""
        with self._lock:
            return list(self._by_test.get(test_id, []))

    def count_by_test(self, test_id: str) -> int:
        with self._lock:
            return len(self._by_test.get(test_id, []))

    def count_by_variant(self, test_id: str) -> Dict[str, int]:
        """バリアントごとの割り当て数"""
        counts: Dict[str, int] = {}
        for assignment in self.list_by_test(test_id):
            counts[assignment.variant_id] = counts.get(assignment.variant_id, 0) + 1
        return counts

    def purge_test(self, test_id: str) -> int:
        """テストの割り当てをすべて削除（保持期間切れの終了テスト用）

        Returns:
            削除件数
        """
        with self._lock:
            removed = self._by_test.pop(test_id, [])
            for assignment in removed:
                self._by_key.pop((assignment.user_id, test_id), None)
        if removed:
            logger.info(f"割り当てを削除: test_id={test_id}, {len(removed)} 件")
        return len(removed)
