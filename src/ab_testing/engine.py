# A/Bテストエンジン
"""
ABTestingEngine: A/Bテストの作成・割り当て・結果記録・分析を束ねるサービスクラス

グローバルなシングルトンは持たず、設定を渡して生成したインスタンスを呼び出し側に注入する。
バックグラウンドの定期分析は init() で開始し、shutdown() で確実に停止する。

処理フロー:
    create_test() / start_test()           … LifecycleManager
        ↓
    assign_user()                          … Targeting + Bucketing → AssignmentStore
        ↓
    record_result()                        … ResultStore（N件ごとに再分析を投入）
        ↓
    AnalysisScheduler / 件数トリガー        … analyze_test() → 停止ルール → auto_stop()

イベント（test_created, user_assigned など）は EventBus で登録順に配信され、
AuditLogger はその購読者の1つとして監査ログを記録する。
"""

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from src.ab_testing.assignment import AssignmentStore, select_variant
from src.ab_testing.audit import AuditLogger
from src.ab_testing.events import EventBus, EventHandler, EventType
from src.ab_testing.exceptions import (
    ABTestingError,
    NotAssignedError,
    ValidationError,
)
from src.ab_testing.lifecycle import LifecycleManager
from src.ab_testing.models import (
    ABTest,
    ABTestResult,
    ABTestStatus,
    ABTestSummary,
    ABTestType,
    Assignment,
    MetricsDefinition,
    OverallPerformance,
    PerformanceReport,
    StatisticalAnalysis,
    Targeting,
    Variant,
    VariantPerformance,
)
from src.ab_testing.result_store import ResultStore
from src.ab_testing.scheduler import AnalysisScheduler
from src.ab_testing.statistics import StatisticalAnalyzer, required_sample_size
from src.ab_testing.targeting import is_eligible
from src.config.ab_testing_config import ABTestingConfig

logger = logging.getLogger(__name__)


class ABTestingEngine:
    """A/Bテストエンジン

    使用例:
        config = ABTestingConfig(default_minimum_sample_size=50)
        with ABTestingEngine(config) as engine:
            test = engine.create_test(
                name="model_comparison",
                variants=[
                    Variant(id="A", name="A", weight=0.5, config={"model": "x"}),
                    Variant(id="B", name="B", weight=0.5, config={"model": "y"}),
                ],
                metrics=MetricsDefinition(primary="latency_ms", higher_is_better=False),
            )
            engine.start_test(test.id)

            assignment = engine.assign_user("alice", test.id)
            engine.record_result(test.id, "alice", "latency_ms", 120)

            analysis = engine.analyze_test(test.id)

    Attributes:
        config: エンジン設定
        events: イベントバス
        audit: 監査ログ
        lifecycle: ライフサイクル管理
        assignments: 割り当てストア
        results: 結果ストア
        analyzer: 統計分析
        scheduler: 定期分析スケジューラー
    """

    def __init__(
        self,
        config: Optional[ABTestingConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """ABTestingEngineを初期化

        Args:
            config: エンジン設定。Noneの場合はデフォルト設定を使用。
            clock: 現在時刻を返す関数（テストで差し替え可能）
        """
        self.config = config or ABTestingConfig()
        self._clock = clock

        self.events = EventBus(clock)
        self.audit = AuditLogger(
            enabled=self.config.audit_logging,
            anonymize=self.config.anonymize_data,
            clock=clock,
        )
        self.audit.attach(self.events)

        self.lifecycle = LifecycleManager(self.config, clock)
        self.assignments = AssignmentStore()
        self.results = ResultStore()
        self.analyzer = StatisticalAnalyzer(
            minimum_test_duration=timedelta(days=self.config.minimum_test_duration_days)
        )
        self.scheduler = AnalysisScheduler(
            interval_seconds=self.config.auto_analysis_interval,
            list_running=self.lifecycle.running,
            analyze=self.analyze_test,
            stop_test=self.auto_stop,
            maintenance=self.purge_expired_data,
        )

        self._initialized = False
        self._shut_down = False

    # ===== エンジンのライフサイクル =====

    def init(self) -> "ABTestingEngine":
        """定期分析を開始（enabled=False の場合は開始しない）

        Raises:
            ABTestingError: shutdown() 済みの場合
        """
        if self._shut_down:
            raise ABTestingError("Engine has been shut down")
        if self._initialized:
            return self

        if self.config.enabled:
            self.scheduler.start()
        self._initialized = True
        logger.info(
            f"ABTestingEngine 初期化完了: enabled={self.config.enabled}, "
            f"max_concurrent_tests={self.config.max_concurrent_tests}"
        )
        return self

    def shutdown(self) -> None:
        """定期分析を停止し、イベントバスを閉じる（以後の購読は不可）"""
        if self._shut_down:
            return
        self.scheduler.stop()
        self.events.close()
        self._initialized = False
        self._shut_down = True
        logger.info("ABTestingEngine を停止")

    def __enter__(self) -> "ABTestingEngine":
        return self.init()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def subscribe(self, event_type: Union[EventType, str], handler: EventHandler) -> Callable[[], None]:
        """イベントを購読（購読解除用の関数を返す）"""
        return self.events.subscribe(EventType(event_type), handler)

    def update_config(self, **updates: Any) -> ABTestingConfig:
        """設定を更新

        Raises:
            ValueError: 値が範囲外、または未知のキーの場合
        """
        try:
            new_config = replace(self.config, **updates)
        except TypeError as e:
            raise ValueError(f"Unknown config keys: {sorted(updates)}") from e

        self.config = new_config
        self.lifecycle.config = new_config
        self.audit.enabled = new_config.audit_logging
        self.audit.anonymize = new_config.anonymize_data
        self.analyzer.minimum_test_duration = timedelta(
            days=new_config.minimum_test_duration_days
        )
        self.scheduler.interval_seconds = new_config.auto_analysis_interval
        logger.info(f"設定を更新: {sorted(updates)}")
        return new_config

    # ===== テスト管理 =====

    def create_test(
        self,
        name: str,
        variants: Sequence[Union[Variant, Dict[str, Any]]],
        metrics: Union[MetricsDefinition, Dict[str, Any]],
        test_type: Union[ABTestType, str] = ABTestType.MODEL,
        description: str = "",
        targeting: Optional[Union[Targeting, Dict[str, Any]]] = None,
        max_duration: Optional[timedelta] = None,
        created_by: str = "",
        test_id: Optional[str] = None,
    ) -> ABTest:
        """テストを draft 状態で作成

        Raises:
            ValidationError: 定義が不正な場合（重みの合計が1でないなど）
            CapacityError: 同時実行テスト数の上限に達している場合
        """
        test = self.lifecycle.create(
            name=name,
            variants=variants,
            metrics=metrics,
            test_type=test_type,
            description=description,
            targeting=targeting,
            max_duration=max_duration,
            created_by=created_by,
            test_id=test_id,
        )
        self.events.publish(EventType.TEST_CREATED, test)
        return test

    def update_test(self, test_id: str, patch: Dict[str, Any]) -> ABTest:
        """テスト定義を部分更新

        Raises:
            NotFoundError: テストが見つからない場合
            ValidationError: draft 以外でのバリアント変更など
        """
        test = self.lifecycle.update(test_id, patch)
        self.events.publish(EventType.TEST_UPDATED, test, {"updates": sorted(patch)})
        return test

    def start_test(self, test_id: str) -> ABTest:
        """テストを開始

        Raises:
            NotFoundError: テストが見つからない場合
            ValidationError: draft 以外から開始しようとした場合
            CapacityError: 同時実行テスト数の上限に達している場合
        """
        test = self.lifecycle.start(test_id)
        self.events.publish(EventType.TEST_STARTED, test)
        return test

    def pause_test(self, test_id: str) -> ABTest:
        """テストを一時停止（新規割り当ては行わない）"""
        test = self.lifecycle.pause(test_id)
        self.events.publish(EventType.TEST_PAUSED, test)
        return test

    def resume_test(self, test_id: str) -> ABTest:
        """一時停止中のテストを再開"""
        test = self.lifecycle.resume(test_id)
        self.events.publish(EventType.TEST_RESUMED, test)
        return test

    def stop_test(
        self,
        test_id: str,
        reason: Union[ABTestStatus, str] = ABTestStatus.COMPLETED,
    ) -> ABTest:
        """テストを停止

        既に返した割り当ては無効にならず、停止後の結果記録も受け付ける。

        Raises:
            NotFoundError: テストが見つからない場合
            ValidationError: running/paused 以外から停止しようとした場合
        """
        test = self.lifecycle.stop(test_id, reason)
        self.events.publish(EventType.TEST_STOPPED, test, {"reason": test.status.value})
        return test

    def auto_stop(self, test_id: str) -> Optional[ABTest]:
        """停止ルールによる自動停止（reason=completed）

        定期分析と件数トリガーの両方から呼ばれるため、既に停止済みなら何もしない。
        """
        try:
            return self.stop_test(test_id, ABTestStatus.COMPLETED)
        except ValidationError:
            logger.debug(f"自動停止をスキップ（停止済み）: test_id={test_id}")
            return None

    def get_test(self, test_id: str) -> Optional[ABTest]:
        return self.lifecycle.get(test_id)

    def get_all_tests(self) -> List[ABTest]:
        return self.lifecycle.list_tests()

    def get_running_tests(self) -> List[ABTest]:
        return self.lifecycle.running()

    # ===== 割り当て =====

    def assign_user(
        self,
        user_id: str,
        test_id: str,
        context: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Assignment]:
        """ユーザーをバリアントに割り当て

        テストが running でない、または対象外の場合は None。
        既存の割り当てがあればそのまま返す（コンテキストが変わっても同じ）。
        """
        if not self.config.enabled:
            return None

        test = self.lifecycle.get(test_id)
        if test is None or test.status is not ABTestStatus.RUNNING:
            return None

        context = dict(context or {})

        def _create() -> Optional[Assignment]:
            now = self._clock()
            # ロック内で状態を読み直し、停止済みのテストには割り当てない
            current = self.lifecycle.get(test_id)
            if current is None or current.status is not ABTestStatus.RUNNING:
                return None
            if not is_eligible(user_id, current, context):
                return None
            return Assignment(
                test_id=test_id,
                variant_id=select_variant(user_id, current),
                user_id=user_id,
                session_id=session_id,
                timestamp=now,
                context=context,
            )

        assignment, created = self.assignments.get_or_create(user_id, test_id, _create)
        if created:
            self.events.publish(EventType.USER_ASSIGNED, assignment)
        return assignment

    def get_variant_config(self, user_id: str, test_id: str) -> Optional[Dict[str, Any]]:
        """割り当て済みバリアントの設定を取得（running 以外・未割り当ては None）"""
        test = self.lifecycle.get(test_id)
        if test is None or test.status is not ABTestStatus.RUNNING:
            return None

        assignment = self.assignments.get(user_id, test_id)
        if assignment is None:
            return None

        variant = test.get_variant(assignment.variant_id)
        return dict(variant.config) if variant else None

    # ===== 結果記録 =====

    def record_result(
        self,
        test_id: str,
        user_id: str,
        metric: str,
        value: float,
        context: Optional[Dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> ABTestResult:
        """結果を記録

        Raises:
            NotFoundError: テストが見つからない場合
            NotAssignedError: ユーザーが割り当てられていない場合
            ValidationError: value が数値でない、または有限でない場合
        """
        test = self.lifecycle.require(test_id)

        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"Result value must be numeric, got {value!r}")
        if not math.isfinite(value):
            raise ValidationError(f"Result value must be finite, got {value!r}")

        assignment = self.assignments.get(user_id, test_id)
        if assignment is None:
            raise NotAssignedError(user_id, test_id)

        result = ABTestResult(
            id=f"result_{uuid4().hex}",
            test_id=test_id,
            variant_id=assignment.variant_id,
            user_id=user_id,
            session_id=session_id,
            metric=metric,
            value=float(value),
            timestamp=self._clock(),
            context=dict(context or {}),
        )
        count = self.results.append(result)
        self.events.publish(EventType.RESULT_RECORDED, result)

        every = self.config.analysis_trigger_every
        if every and count % every == 0 and test.status is ABTestStatus.RUNNING:
            self.scheduler.trigger(test_id)

        return result

    # ===== 分析 =====

    def analyze_test(
        self,
        test_id: str,
        metric: Optional[str] = None,
    ) -> Optional[StatisticalAnalysis]:
        """テストを分析（テストが見つからない場合は None）

        Args:
            test_id: テストID
            metric: 分析するメトリクス。Noneの場合は主要メトリクス。
        """
        test = self.lifecycle.get(test_id)
        if test is None:
            return None

        analysis = self.analyzer.analyze(
            test,
            self.results.list_by_test(test_id),
            now=self._clock(),
            metric=metric,
        )
        self.events.publish(EventType.ANALYSIS_COMPLETED, analysis)
        return analysis

    def get_test_summary(self, test_id: str) -> Optional[ABTestSummary]:
        """テストのサマリー（割り当て・結果・分析・バリアント別成果）"""
        test = self.lifecycle.get(test_id)
        if test is None:
            return None

        assignment_counts = self.assignments.count_by_variant(test_id)
        results = self.results.list_by_test(test_id)
        analysis = self.analyze_test(test_id)
        total_assignments = sum(assignment_counts.values())

        primary_results = [r for r in results if r.metric == test.metrics.primary]

        variant_performance = []
        for variant in test.variants:
            variant_assignments = assignment_counts.get(variant.id, 0)
            values = [r.value for r in primary_results if r.variant_id == variant.id]
            conversions = sum(1 for v in values if v > 0)
            variant_performance.append(
                VariantPerformance(
                    variant_id=variant.id,
                    assignments=variant_assignments,
                    conversions=conversions,
                    conversion_rate=(
                        conversions / variant_assignments if variant_assignments else 0.0
                    ),
                    average_metric=sum(values) / len(values) if values else 0.0,
                )
            )

        overall = OverallPerformance(
            total_assignments=total_assignments,
            total_conversions=sum(vp.conversions for vp in variant_performance),
            average_conversion_rate=(
                sum(vp.conversion_rate for vp in variant_performance)
                / len(variant_performance)
            ),
        )

        return ABTestSummary(
            test=test,
            assignments=total_assignments,
            results=len(results),
            analysis=analysis,
            performance=PerformanceReport(
                variant_performance=variant_performance,
                overall_performance=overall,
            ),
        )

    def estimate_sample_size(self, test_id: str, minimum_detectable_effect: float) -> int:
        """テストの α・検出力でバリアントあたりの必要サンプル数を見積もる

        Raises:
            NotFoundError: テストが見つからない場合
            ValueError: minimum_detectable_effect が0の場合
        """
        test = self.lifecycle.require(test_id)
        return required_sample_size(
            minimum_detectable_effect,
            alpha=test.metrics.significance_level,
            power=test.metrics.power,
        )

    # ===== データ保持 =====

    def purge_expired_data(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """保持期間を過ぎたデータを削除

        終了（completed/cancelled）から retention_period_days を過ぎたテストの
        割り当て・結果と、同期間より古い監査ログを削除する。テスト定義は残す。

        Returns:
            種別ごとの削除件数
        """
        now = now or self._clock()
        cutoff = now - timedelta(days=self.config.retention_period_days)

        removed = {"assignments": 0, "results": 0, "audit_entries": 0}
        for test in self.lifecycle.list_tests():
            end_date = test.duration.end_date
            if not test.status.is_finished or end_date is None or end_date >= cutoff:
                continue
            removed["assignments"] += self.assignments.purge_test(test.id)
            removed["results"] += self.results.purge_test(test.id)

        removed["audit_entries"] = self.audit.purge_expired(cutoff)
        return removed
