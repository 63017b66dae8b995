# テストライフサイクル管理
"""
A/Bテストの状態遷移と変更ルールを管理するモジュール

状態遷移:
    draft --start--> running --pause--> paused --resume--> running
    running | paused --stop--> completed | cancelled
    上記以外の遷移は ValidationError。

変更ルール:
    - バリアントの重みの合計は 1 ± 1e-3（作成時、draft 中の差し替え時に検証）
    - draft を離れたテストのバリアントは変更不可（途中変更は比較可能性を壊す）
    - 実行枠（running/paused）の上限は作成時と開始時に検証
    - テストは物理削除しない（停止のみ）

ABTest は frozen dataclass で、変更時は dataclasses.replace で置き換える。
読み手（割り当て・スケジューラー）は一貫したスナップショットを受け取る。
"""

import logging
import math
from dataclasses import replace
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from src.ab_testing.exceptions import CapacityError, NotFoundError, ValidationError
from src.ab_testing.models import (
    ABTest,
    ABTestStatus,
    ABTestType,
    ConditionOperator,
    DurationWindow,
    MetricsDefinition,
    Targeting,
    Variant,
)
from src.config.ab_testing_config import ABTestingConfig

logger = logging.getLogger(__name__)

WEIGHT_TOLERANCE = 1e-3

# 操作 → (遷移元, 遷移先)
_TRANSITIONS = {
    "start": ({ABTestStatus.DRAFT}, ABTestStatus.RUNNING),
    "pause": ({ABTestStatus.RUNNING}, ABTestStatus.PAUSED),
    "resume": ({ABTestStatus.PAUSED}, ABTestStatus.RUNNING),
}

_STOP_SOURCES = {ABTestStatus.RUNNING, ABTestStatus.PAUSED}
_STOP_REASONS = {ABTestStatus.COMPLETED, ABTestStatus.CANCELLED}

# update() で変更できるフィールド
_UPDATABLE_FIELDS = {
    "name",
    "description",
    "type",
    "targeting",
    "metrics",
    "max_duration",
    "variants",
}


def validate_variants(variants: Sequence[Variant]) -> None:
    """バリアント定義を検証

    Raises:
        ValidationError: 2未満、ID重複、重みが範囲外、合計が1でない場合
    """
    if len(variants) < 2:
        raise ValidationError("A test must have at least 2 variants")

    ids = [v.id for v in variants]
    if len(ids) != len(set(ids)):
        raise ValidationError(f"Variant ids must be unique, got {ids}")

    for variant in variants:
        if not isinstance(variant.weight, (int, float)) or math.isnan(variant.weight):
            raise ValidationError(f"Variant '{variant.id}' has an invalid weight")
        if not 0.0 < variant.weight <= 1.0:
            raise ValidationError(
                f"Variant '{variant.id}' weight must be in (0, 1], got {variant.weight}"
            )

    total = sum(v.weight for v in variants)
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ValidationError(f"Variant weights must sum to 1.0, got {total}")


def validate_targeting(targeting: Targeting) -> None:
    """ターゲティングを検証"""
    if not 0.0 <= targeting.percentage <= 100.0:
        raise ValidationError(
            f"targeting.percentage must be in [0, 100], got {targeting.percentage}"
        )
    for condition in targeting.conditions:
        if not isinstance(condition.operator, ConditionOperator):
            raise ValidationError(f"Unknown operator: {condition.operator!r}")
        if condition.operator is ConditionOperator.IN and not isinstance(
            condition.value, (list, tuple, set, frozenset)
        ):
            raise ValidationError(
                f"Condition on '{condition.field}' with 'in' requires a list value"
            )


def validate_metrics(metrics: MetricsDefinition) -> None:
    """メトリクス定義を検証（デフォルト補完後）"""
    if not metrics.primary:
        raise ValidationError("metrics.primary is required")
    if metrics.minimum_sample_size is not None and metrics.minimum_sample_size < 1:
        raise ValidationError("metrics.minimum_sample_size must be >= 1")
    if metrics.significance_level is not None and not 0.0 < metrics.significance_level < 1.0:
        raise ValidationError("metrics.significance_level must be in (0, 1)")
    if metrics.power is not None and not 0.0 < metrics.power < 1.0:
        raise ValidationError("metrics.power must be in (0, 1)")


class LifecycleManager:
    """テストライフサイクル管理クラス

    ABTest.status の唯一の所有者。スレッドセーフ。

    使用例:
        lifecycle = LifecycleManager(ABTestingConfig())
        test = lifecycle.create(
            name="model_comparison",
            variants=[Variant("A", "A", 0.5), Variant("B", "B", 0.5)],
            metrics=MetricsDefinition(primary="latency_ms"),
        )
        lifecycle.start(test.id)
        lifecycle.stop(test.id, "completed")

    Attributes:
        config: エンジン設定
        _tests: test_id → ABTest
        _lock: スレッドセーフ用ロック
    """

    def __init__(
        self,
        config: Optional[ABTestingConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ABTestingConfig()
        self._clock = clock
        self._tests: Dict[str, ABTest] = {}
        self._lock = RLock()

    # ===== 作成・変更 =====

    def create(
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

        variants・metrics・targeting は辞書でも指定できる。

        Raises:
            ValidationError: 定義が不正な場合
            CapacityError: 実行中テスト数が上限に達している場合
        """
        if not name:
            raise ValidationError("name is required")

        variants = self._to_variants(variants)
        validate_variants(variants)

        if targeting is None:
            targeting = Targeting()
        elif not isinstance(targeting, Targeting):
            targeting = self._parse(Targeting.from_dict, targeting)
        validate_targeting(targeting)

        if not isinstance(metrics, MetricsDefinition):
            metrics = self._parse(MetricsDefinition.from_dict, metrics)
        metrics = self._resolve_metrics(metrics)
        validate_metrics(metrics)
        self._validate_max_duration(max_duration)

        now = self._clock()
        with self._lock:
            self._check_capacity()

            test_id = test_id or uuid4().hex
            if test_id in self._tests:
                raise ValidationError(f"Test {test_id} already exists")

            test = ABTest(
                id=test_id,
                name=name,
                description=description,
                type=self._parse_type(test_type),
                status=ABTestStatus.DRAFT,
                variants=variants,
                targeting=targeting,
                metrics=metrics,
                duration=DurationWindow(max_duration=max_duration),
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            self._tests[test_id] = test

        logger.info(
            f"テストを作成: test_id={test_id}, name={name}, "
            f"variants={test.variant_ids}"
        )
        return test

    def update(self, test_id: str, patch: Dict[str, Any]) -> ABTest:
        """テスト定義を部分更新

        Args:
            test_id: テストID
            patch: 変更するフィールド（name, description, type, targeting,
                metrics, max_duration, variants）

        Raises:
            NotFoundError: テストが見つからない場合
            ValidationError: 変更できないフィールド、または draft 以外での
                バリアント変更の場合
        """
        unknown = sorted(set(patch) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {unknown}")

        with self._lock:
            test = self.require(test_id)
            changes: Dict[str, Any] = {}

            if "variants" in patch:
                if test.status is not ABTestStatus.DRAFT:
                    raise ValidationError(
                        f"Cannot modify variants of test {test_id} "
                        f"in '{test.status.value}' status"
                    )
                variants = self._to_variants(patch["variants"])
                validate_variants(variants)
                changes["variants"] = variants

            if "name" in patch:
                if not patch["name"]:
                    raise ValidationError("name is required")
                changes["name"] = patch["name"]

            if "description" in patch:
                changes["description"] = patch["description"] or ""

            if "type" in patch:
                changes["type"] = self._parse_type(patch["type"])

            if "targeting" in patch:
                targeting = patch["targeting"]
                if not isinstance(targeting, Targeting):
                    targeting = self._parse(Targeting.from_dict, targeting)
                validate_targeting(targeting)
                changes["targeting"] = targeting

            if "metrics" in patch:
                metrics = patch["metrics"]
                if not isinstance(metrics, MetricsDefinition):
                    metrics = self._parse(MetricsDefinition.from_dict, metrics)
                metrics = self._resolve_metrics(metrics)
                validate_metrics(metrics)
                changes["metrics"] = metrics

            if "max_duration" in patch:
                self._validate_max_duration(patch["max_duration"])
                changes["duration"] = replace(
                    test.duration, max_duration=patch["max_duration"]
                )

            updated = replace(test, updated_at=self._clock(), **changes)
            self._tests[test_id] = updated

        logger.info(f"テストを更新: test_id={test_id}, fields={sorted(patch)}")
        return updated

    # ===== 状態遷移 =====

    def start(self, test_id: str) -> ABTest:
        """テストを開始（draft → running）、start_date を記録"""
        with self._lock:
            test = self.require(test_id)
            self._check_transition(test, "start")
            self._check_capacity()
            now = self._clock()
            started = replace(
                test,
                status=ABTestStatus.RUNNING,
                duration=replace(test.duration, start_date=now),
                updated_at=now,
            )
            self._tests[test_id] = started

        logger.info(f"テストを開始: test_id={test_id}")
        return started

    def pause(self, test_id: str) -> ABTest:
        """テストを一時停止（running → paused）"""
        return self._transition(test_id, "pause")

    def resume(self, test_id: str) -> ABTest:
        """一時停止中のテストを再開（paused → running）"""
        return self._transition(test_id, "resume")

    def stop(
        self,
        test_id: str,
        reason: Union[ABTestStatus, str] = ABTestStatus.COMPLETED,
    ) -> ABTest:
        """テストを停止（running | paused → completed | cancelled）、end_date を記録

        Raises:
            NotFoundError: テストが見つからない場合
            ValidationError: 停止できない状態、または reason が不正な場合
        """
        try:
            target = ABTestStatus(reason)
        except ValueError:
            raise ValidationError(
                f"Stop reason must be 'completed' or 'cancelled', got {reason!r}"
            )
        if target not in _STOP_REASONS:
            raise ValidationError(
                f"Stop reason must be 'completed' or 'cancelled', got {target.value!r}"
            )

        with self._lock:
            test = self.require(test_id)
            if test.status not in _STOP_SOURCES:
                raise ValidationError(
                    f"Test {test_id} cannot be stopped from status {test.status.value}"
                )
            now = self._clock()
            stopped = replace(
                test,
                status=target,
                duration=replace(test.duration, end_date=now),
                updated_at=now,
            )
            self._tests[test_id] = stopped

        logger.info(f"テストを停止: test_id={test_id}, reason={target.value}")
        return stopped

    # ===== 参照 =====

    def get(self, test_id: str) -> Optional[ABTest]:
        with self._lock:
            return self._tests.get(test_id)

    def require(self, test_id: str) -> ABTest:
        """テストを取得（存在しなければ NotFoundError）"""
        with self._lock:
            test = self._tests.get(test_id)
        if test is None:
            raise NotFoundError(test_id)
        return test

    def list_tests(self, status: Optional[ABTestStatus] = None) -> List[ABTest]:
        """テスト一覧（作成順）"""
        with self._lock:
            tests = list(self._tests.values())
        if status is not None:
            tests = [t for t in tests if t.status is status]
        return tests

    def running(self) -> List[ABTest]:
        return self.list_tests(ABTestStatus.RUNNING)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for t in self._tests.values() if t.status.is_active)

    # ===== Private Methods =====

    def _transition(self, test_id: str, operation: str) -> ABTest:
        with self._lock:
            test = self.require(test_id)
            self._check_transition(test, operation)
            _, target = _TRANSITIONS[operation]
            updated = replace(test, status=target, updated_at=self._clock())
            self._tests[test_id] = updated

        logger.info(f"テストの状態を変更: test_id={test_id}, status={target.value}")
        return updated

    def _check_transition(self, test: ABTest, operation: str) -> None:
        sources, _ = _TRANSITIONS[operation]
        if test.status not in sources:
            allowed = ", ".join(sorted(s.value for s in sources))
            raise ValidationError(
                f"Cannot {operation} test {test.id} in '{test.status.value}' status. "
                f"Allowed from: {allowed}"
            )

    def _check_capacity(self) -> None:
        if self.active_count() >= self.config.max_concurrent_tests:
            raise CapacityError(
                f"Maximum number of concurrent tests reached "
                f"({self.config.max_concurrent_tests})"
            )

    def _resolve_metrics(self, metrics: MetricsDefinition) -> MetricsDefinition:
        """None の項目を設定のデフォルト値で補完"""
        return replace(
            metrics,
            minimum_sample_size=(
                metrics.minimum_sample_size
                if metrics.minimum_sample_size is not None
                else self.config.default_minimum_sample_size
            ),
            significance_level=(
                metrics.significance_level
                if metrics.significance_level is not None
                else self.config.default_significance_level
            ),
            power=metrics.power if metrics.power is not None else self.config.default_power,
        )

    @staticmethod
    def _validate_max_duration(max_duration: Optional[timedelta]) -> None:
        if max_duration is None:
            return
        if not isinstance(max_duration, timedelta) or max_duration <= timedelta(0):
            raise ValidationError("max_duration must be a positive timedelta")

    @staticmethod
    def _parse_type(value: Union[ABTestType, str]) -> ABTestType:
        try:
            return ABTestType(value)
        except ValueError:
            raise ValidationError(f"Unknown test type: {value!r}")

    def _to_variants(self, variants: Sequence[Any]) -> Tuple[Variant, ...]:
        return tuple(
            v if isinstance(v, Variant) else self._parse(Variant.from_dict, v)
            for v in variants
        )

    @staticmethod
    def _parse(parser: Callable[[Any], Any], data: Any) -> Any:
        """辞書からモデルを生成（失敗は ValidationError）"""
        try:
            return parser(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Invalid definition: {e}")
