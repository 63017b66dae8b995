# 定期分析スケジューラー
"""
実行中テストを定期的に分析し、停止ルールを満たしたテストを自動停止する

処理フロー:
    start() でティッカースレッドを起動
        ↓
    interval 秒ごとに run_once()
    ├── 実行中テストのスナップショットを取得
    ├── テストごとに分析（失敗はログに記録して次のテストへ）
    ├── stop_winner / stop_no_winner → 停止コールバック（reason=completed）
    └── 保持期間のメンテナンス
        ↓
    stop() で停止シグナルを送り、スレッドとワーカーの終了を待つ

件数ベースのトリガー（N件の結果ごと）は trigger() で単一ワーカーに投入する。
どちらの経路も同じ停止コールバックを通るので、状態遷移の不変条件は保たれる。
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional

from src.ab_testing.models import ABTest, Recommendation, StatisticalAnalysis

logger = logging.getLogger(__name__)


class AnalysisScheduler:
    """定期分析スケジューラー

    エンジンの init()/shutdown() に合わせて start()/stop() される。
    分析中にエンジンのロックを保持しないため、割り当て・結果記録をブロックしない。

    使用例:
        scheduler = AnalysisScheduler(
            interval_seconds=3600,
            list_running=lifecycle.running,
            analyze=engine.analyze_test,
            stop_test=engine.auto_stop,
        )
        scheduler.start()
        ...
        scheduler.stop()

    Attributes:
        interval_seconds: 定期分析の間隔（秒）
    """

    def __init__(
        self,
        interval_seconds: float,
        list_running: Callable[[], List[ABTest]],
        analyze: Callable[[str], Optional[StatisticalAnalysis]],
        stop_test: Callable[[str], None],
        maintenance: Optional[Callable[[], None]] = None,
    ):
        self.interval_seconds = interval_seconds
        self._list_running = list_running
        self._analyze = analyze
        self._stop_test = stop_test
        self._maintenance = maintenance

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """ティッカースレッドと分析ワーカーを起動（起動済みなら何もしない）"""
        with self._lock:
            if self._thread is not None:
                return
            self._stop_event.clear()
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="ab-analysis"
            )
            self._thread = threading.Thread(
                target=self._run, name="ab-analysis-scheduler", daemon=True
            )
            self._thread.start()

        logger.info(f"分析スケジューラーを開始: interval={self.interval_seconds}秒")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """停止シグナルを送り、スレッドとワーカーの終了を待つ"""
        with self._lock:
            thread = self._thread
            executor = self._executor
            self._thread = None
            self._executor = None

        if thread is None:
            return

        self._stop_event.set()
        thread.join(timeout=timeout)
        if executor is not None:
            executor.shutdown(wait=True)

        logger.info("分析スケジューラーを停止")

    def trigger(self, test_id: str) -> Optional[Future]:
        """1テストの再分析を非同期に投入

        Returns:
            Future（スケジューラー停止中は None）
        """
        with self._lock:
            executor = self._executor
            if executor is None:
                logger.debug(f"スケジューラー停止中のため再分析をスキップ: test_id={test_id}")
                return None
            try:
                return executor.submit(self.evaluate, test_id)
            except RuntimeError:
                # shutdown 中に投入された場合
                return None

    def run_once(self) -> Dict[str, Recommendation]:
        """実行中の全テストを1回分析

        Returns:
            test_id → 推奨事項（分析に失敗したテストは含まない）
        """
        recommendations: Dict[str, Recommendation] = {}
        for test in self._list_running():
            if self._stop_event.is_set():
                break
            recommendation = self.evaluate(test.id)
            if recommendation is not None:
                recommendations[test.id] = recommendation

        if self._maintenance is not None:
            try:
                self._maintenance()
            except Exception:
                logger.exception("保持期間メンテナンスに失敗")

        return recommendations

    def evaluate(self, test_id: str) -> Optional[Recommendation]:
        """1テストを分析し、停止ルールを満たせば停止する

        例外はログに記録して握りつぶす（他のテストの分析を継続するため）。
        """
        try:
            analysis = self._analyze(test_id)
            if analysis is None:
                return None
            if analysis.recommendation.is_stop:
                logger.info(
                    f"停止ルールを満たしたため自動停止: test_id={test_id}, "
                    f"recommendation={analysis.recommendation.value}"
                )
                self._stop_test(test_id)
            return analysis.recommendation
        except Exception:
            logger.exception(f"テストの自動分析に失敗: test_id={test_id}")
            return None

    def _run(self) -> None:
        """ティッカーループ（停止シグナルまで interval ごとに run_once）"""
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("定期分析でエラー")
