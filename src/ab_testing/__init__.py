# A/B Testing Module
"""
A/Bテストエンジンモジュール

モデル・プロンプト・パラメータのバリアントを比較するオンライン実験を管理する。

設計方針:
- テストのライフサイクル管理: draft → running ⇄ paused → completed / cancelled
- ユーザーIDのハッシュ値による決定論的バリアント割り当て
- scipy.stats による統計的有意性分析（t検定）と停止ルール
- 定期分析スケジューラーによる自動停止
- イベントバス経由の監査ログ（ユーザーIDの匿名化対応）
"""

from src.ab_testing.audit import AuditEntry, AuditLogger
from src.ab_testing.bucketing import bucket_value, hash_identifier
from src.ab_testing.engine import ABTestingEngine
from src.ab_testing.events import Event, EventBus, EventType
from src.ab_testing.exceptions import (
    ABTestingError,
    CapacityError,
    EventBusClosedError,
    NotAssignedError,
    NotFoundError,
    ValidationError,
)
from src.ab_testing.models import (
    ABTest,
    ABTestResult,
    ABTestStatus,
    ABTestSummary,
    ABTestType,
    Assignment,
    Comparison,
    ConditionOperator,
    MetricsDefinition,
    Recommendation,
    StatisticalAnalysis,
    Targeting,
    TargetingCondition,
    Variant,
    VariantStatistics,
)
from src.ab_testing.statistics import StatisticalAnalyzer, required_sample_size

__all__ = [
    # エンジン
    "ABTestingEngine",
    # モデル
    "ABTest",
    "ABTestResult",
    "ABTestStatus",
    "ABTestSummary",
    "ABTestType",
    "Assignment",
    "Comparison",
    "ConditionOperator",
    "MetricsDefinition",
    "Recommendation",
    "StatisticalAnalysis",
    "Targeting",
    "TargetingCondition",
    "Variant",
    "VariantStatistics",
    # 統計
    "StatisticalAnalyzer",
    "required_sample_size",
    "bucket_value",
    "hash_identifier",
    # イベント・監査
    "Event",
    "EventBus",
    "EventType",
    "AuditEntry",
    "AuditLogger",
    # 例外
    "ABTestingError",
    "CapacityError",
    "EventBusClosedError",
    "NotAssignedError",
    "NotFoundError",
    "ValidationError",
]
