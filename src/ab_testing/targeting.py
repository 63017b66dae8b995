# ターゲティング評価
"""
ユーザーがテストの対象かどうかを判定する純粋関数

判定順序（最初に不合格になった時点で打ち切り）:
    1. 割合: bucket_value(user_id) < percentage / 100
    2. セグメント: 指定がある場合、context の userSegment が含まれること
    3. 条件: すべての {field, operator, value} が context[field] に対して成立すること
"""

import logging
from typing import Any, Dict, Iterable, Optional

from src.ab_testing.bucketing import bucket_value
from src.ab_testing.models import (
    ABTest,
    ConditionOperator,
    Targeting,
    TargetingCondition,
)

logger = logging.getLogger(__name__)

# セグメントを読み取るコンテキストキー
SEGMENT_KEYS = ("userSegment", "user_segment")


def is_eligible(
    user_id: str,
    test: ABTest,
    context: Optional[Dict[str, Any]] = None,
) -> bool:
    """ユーザーがテストの対象かを判定

    Args:
        user_id: ユーザーID
        test: 対象テスト
        context: リクエストのコンテキスト（セグメント・属性など）

    Returns:
        対象ならTrue
    """
    return matches_targeting(user_id, test.targeting, context or {})


def matches_targeting(
    user_id: str,
    targeting: Targeting,
    context: Dict[str, Any],
) -> bool:
    """ターゲティングルールを評価"""
    if bucket_value(user_id) >= targeting.percentage / 100.0:
        return False

    if targeting.user_segments:
        segment = _get_segment(context)
        if segment is None or segment not in targeting.user_segments:
            return False

    return all(evaluate_condition(c, context) for c in targeting.conditions)


def evaluate_condition(condition: TargetingCondition, context: Dict[str, Any]) -> bool:
    """条件を1つ評価

    比較できない値（None と数値の大小比較など）は不成立として扱う。
    """
    actual = context.get(condition.field)
    expected = condition.value
    op = condition.operator

    if op is ConditionOperator.EQ:
        return actual == expected
    if op is ConditionOperator.NE:
        return actual != expected
    if op in (ConditionOperator.GT, ConditionOperator.LT):
        if actual is None:
            return False
        try:
            return actual > expected if op is ConditionOperator.GT else actual < expected
        except TypeError:
            logger.debug(
                f"比較不能な条件値: field={condition.field}, "
                f"actual={actual!r}, expected={expected!r}"
            )
            return False
    if op is ConditionOperator.CONTAINS:
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set, frozenset)):
            return expected in actual
        return str(expected) in str(actual)
    if op is ConditionOperator.IN:
        return _is_collection(expected) and actual in expected
    return False


def _get_segment(context: Dict[str, Any]) -> Optional[str]:
    for key in SEGMENT_KEYS:
        if context.get(key) is not None:
            return context[key]
    return None


def _is_collection(value: Any) -> bool:
    return isinstance(value, Iterable) and not isinstance(value, (str, bytes, dict))
