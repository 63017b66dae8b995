# A/Bテスト データモデル
"""
A/Bテストエンジンのデータ構造

ABTest はライフサイクル管理（lifecycle.py）が唯一の所有者で、変更時は
dataclasses.replace で新しいスナップショットに置き換える。
割り当て・結果は追記型のログとして扱う。
StatisticalAnalysis は常に現在の割り当て・結果・設定から導出される派生データ。
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ABTestStatus(str, Enum):
    """テストのステータス

    状態遷移:
        DRAFT → RUNNING ⇄ PAUSED
        RUNNING / PAUSED → COMPLETED | CANCELLED
    """
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        """実行枠を消費する状態か"""
        return self in (ABTestStatus.RUNNING, ABTestStatus.PAUSED)

    @property
    def is_finished(self) -> bool:
        """終了状態か"""
        return self in (ABTestStatus.COMPLETED, ABTestStatus.CANCELLED)


class ABTestType(str, Enum):
    """比較対象の種類"""
    MODEL = "model"
    PROMPT = "prompt"
    PARAMETER = "parameter"
    FEATURE = "feature"


class Recommendation(str, Enum):
    """停止ルールの判定結果"""
    CONTINUE = "continue"
    STOP_WINNER = "stop_winner"
    STOP_NO_WINNER = "stop_no_winner"
    EXTEND_DURATION = "extend_duration"

    @property
    def is_stop(self) -> bool:
        return self in (Recommendation.STOP_WINNER, Recommendation.STOP_NO_WINNER)


class ConditionOperator(str, Enum):
    """ターゲティング条件の演算子"""
    EQ = "="
    NE = "!="
    GT = ">"
    LT = "<"
    CONTAINS = "contains"
    IN = "in"

    @classmethod
    def parse(cls, value: Any) -> "ConditionOperator":
        """文字列から演算子を取得（"≠" は "!=" の別表記）"""
        if isinstance(value, cls):
            return value
        if value == "≠":
            return cls.NE
        return cls(value)


@dataclass(frozen=True)
class Variant:
    """比較対象の設定バリアント

    Attributes:
        id: バリアントID（テスト内で一意）
        name: 表示名
        weight: トラフィック比率 (0, 1]
        config: モデル名・プロンプト・パラメータなど任意の設定
        description: 説明
        metadata: 任意のメタデータ
    """
    id: str
    name: str
    weight: float
    config: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variant":
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            weight=float(data["weight"]),
            config=dict(data.get("config") or {}),
            description=data.get("description", ""),
            metadata=dict(data.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "weight": self.weight,
            "config": self.config,
            "description": self.description,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class TargetingCondition:
    """コンテキストのフィールドに対する条件"""
    field: str
    operator: ConditionOperator
    value: Any

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetingCondition":
        return cls(
            field=str(data["field"]),
            operator=ConditionOperator.parse(data["operator"]),
            value=data.get("value"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(frozen=True)
class Targeting:
    """対象ユーザーのルール

    Attributes:
        percentage: 対象とするユーザーの割合（0-100）
        user_segments: 対象セグメント（空なら制限なし）
        conditions: すべて満たす必要がある条件
    """
    percentage: float = 100.0
    user_segments: Tuple[str, ...] = ()
    conditions: Tuple[TargetingCondition, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Targeting":
        data = data or {}
        return cls(
            percentage=float(data.get("percentage", 100.0)),
            user_segments=tuple(data.get("user_segments") or ()),
            conditions=tuple(
                TargetingCondition.from_dict(c) for c in data.get("conditions") or ()
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage": self.percentage,
            "user_segments": list(self.user_segments),
            "conditions": [c.to_dict() for c in self.conditions],
        }


@dataclass(frozen=True)
class MetricsDefinition:
    """評価メトリクスの定義

    None の項目はテスト作成時に ABTestingConfig のデフォルト値で補完される。
    """
    primary: str
    secondary: Tuple[str, ...] = ()
    minimum_sample_size: Optional[int] = None
    significance_level: Optional[float] = None
    power: Optional[float] = None
    higher_is_better: bool = True
    """値が大きいほど良いメトリクスか（レイテンシなどは False）"""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetricsDefinition":
        return cls(
            primary=str(data["primary"]),
            secondary=tuple(data.get("secondary") or ()),
            minimum_sample_size=data.get("minimum_sample_size"),
            significance_level=data.get("significance_level"),
            power=data.get("power"),
            higher_is_better=bool(data.get("higher_is_better", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "secondary": list(self.secondary),
            "minimum_sample_size": self.minimum_sample_size,
            "significance_level": self.significance_level,
            "power": self.power,
            "higher_is_better": self.higher_is_better,
        }


@dataclass(frozen=True)
class DurationWindow:
    """実施期間"""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_duration: Optional[timedelta] = None

    def elapsed(self, now: datetime) -> timedelta:
        """開始からの経過時間（未開始なら0）"""
        if self.start_date is None:
            return timedelta(0)
        end = self.end_date or now
        return end - self.start_date

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "max_duration_seconds": (
                self.max_duration.total_seconds() if self.max_duration else None
            ),
        }


@dataclass(frozen=True)
class ABTest:
    """A/Bテスト定義

    status の変更はライフサイクル管理のみが行う。
    draft を離れた後は variants を変更できない。
    """
    id: str
    name: str
    variants: Tuple[Variant, ...]
    metrics: MetricsDefinition
    type: ABTestType = ABTestType.MODEL
    status: ABTestStatus = ABTestStatus.DRAFT
    description: str = ""
    targeting: Targeting = field(default_factory=Targeting)
    duration: DurationWindow = field(default_factory=DurationWindow)
    created_by: str = ""
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    @property
    def variant_ids(self) -> List[str]:
        return [v.id for v in self.variants]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "status": self.status.value,
            "variants": [v.to_dict() for v in self.variants],
            "targeting": self.targeting.to_dict(),
            "metrics": self.metrics.to_dict(),
            "duration": self.duration.to_dict(),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class Assignment:
    """ユーザーのバリアント割り当て（ユーザー×テストにつき1件）"""
    test_id: str
    variant_id: str
    user_id: str
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "variant_id": self.variant_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


@dataclass(frozen=True)
class ABTestResult:
    """結果の計測値（追記のみ）"""
    id: str
    test_id: str
    variant_id: str
    user_id: str
    metric: str
    value: float
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_id": self.test_id,
            "variant_id": self.variant_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "metric": self.metric,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


@dataclass
class ConfidenceInterval:
    """信頼区間"""
    lower: float
    upper: float
    level: float

    def to_dict(self) -> Dict[str, Any]:
        return {"lower": self.lower, "upper": self.upper, "level": self.level}


@dataclass
class VariantStatistics:
    """バリアントの統計情報"""
    variant_id: str
    sample_size: int
    mean: float
    standard_deviation: float
    confidence_interval: ConfidenceInterval

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "sample_size": self.sample_size,
            "mean": self.mean,
            "standard_deviation": self.standard_deviation,
            "confidence_interval": self.confidence_interval.to_dict(),
        }


@dataclass
class Comparison:
    """2バリアント比較（t検定）の結果"""
    baseline: str
    treatment: str
    t_statistic: float
    p_value: float
    is_significant: bool
    effect_size: float
    confidence_level: float
    winner: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "baseline": self.baseline,
            "treatment": self.treatment,
            "t_statistic": self.t_statistic,
            "p_value": self.p_value,
            "is_significant": self.is_significant,
            "effect_size": self.effect_size,
            "confidence_level": self.confidence_level,
            "winner": self.winner,
        }


@dataclass
class StatisticalAnalysis:
    """統計分析結果（派生データ、真実の情報源ではない）"""
    test_id: str
    metric: str
    variants: List[VariantStatistics]
    comparison: Optional[Comparison]
    recommendation: Recommendation
    analysis_date: datetime = field(default_factory=datetime.now)

    def get_variant(self, variant_id: str) -> Optional[VariantStatistics]:
        for stats in self.variants:
            if stats.variant_id == variant_id:
                return stats
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "metric": self.metric,
            "variants": [v.to_dict() for v in self.variants],
            "comparison": self.comparison.to_dict() if self.comparison else None,
            "recommendation": self.recommendation.value,
            "analysis_date": self.analysis_date.isoformat(),
        }


@dataclass
class VariantPerformance:
    """バリアントごとの成果"""
    variant_id: str
    assignments: int
    conversions: int
    conversion_rate: float
    average_metric: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "assignments": self.assignments,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "average_metric": self.average_metric,
        }


@dataclass
class OverallPerformance:
    """テスト全体の成果"""
    total_assignments: int
    total_conversions: int
    average_conversion_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_assignments": self.total_assignments,
            "total_conversions": self.total_conversions,
            "average_conversion_rate": self.average_conversion_rate,
        }


@dataclass
class PerformanceReport:
    variant_performance: List[VariantPerformance]
    overall_performance: OverallPerformance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_performance": [v.to_dict() for v in self.variant_performance],
            "overall_performance": self.overall_performance.to_dict(),
        }


@dataclass
class ABTestSummary:
    """テストのサマリー（ダッシュボード等の表示用）"""
    test: ABTest
    assignments: int
    results: int
    analysis: Optional[StatisticalAnalysis]
    performance: PerformanceReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test": self.test.to_dict(),
            "assignments": self.assignments,
            "results": self.results,
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "performance": self.performance.to_dict(),
        }
