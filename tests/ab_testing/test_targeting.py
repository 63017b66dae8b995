# ターゲティング テスト
"""
is_eligible / evaluate_condition の単体テスト

検証観点:
- 判定順序: 割合 → セグメント → 条件
- 各演算子の成立・不成立
- 比較不能な値は不成立（例外にしない）
"""

import pytest

from src.ab_testing.bucketing import bucket_value
from src.ab_testing.models import (
    ConditionOperator,
    Targeting,
    TargetingCondition,
)
from src.ab_testing.targeting import evaluate_condition, is_eligible


def _cond(field, operator, value):
    return TargetingCondition(field=field, operator=ConditionOperator.parse(operator), value=value)


# ============================================================================
# 割合
# ============================================================================


class TestPercentage:
    """percentage による絞り込み"""

    def test_full_percentage_includes_everyone(self, make_test):
        test = make_test(targeting=Targeting(percentage=100.0))
        assert all(is_eligible(f"user_{i}", test) for i in range(200))

    def test_zero_percentage_excludes_everyone(self, make_test):
        test = make_test(targeting=Targeting(percentage=0.0))
        assert not any(is_eligible(f"user_{i}", test) for i in range(200))

    def test_partial_percentage(self, make_test):
        """約半数が対象"""
        test = make_test(targeting=Targeting(percentage=50.0))
        eligible = sum(1 for i in range(4000) if is_eligible(f"user_{i}", test))
        assert 0.45 < eligible / 4000 < 0.55

    def test_threshold_uses_user_bucket(self, make_test):
        """bucket_value(user_id) < percentage/100 で判定"""
        test = make_test(targeting=Targeting(percentage=30.0))
        for i in range(100):
            user_id = f"user_{i}"
            assert is_eligible(user_id, test) == (bucket_value(user_id) < 0.3)

    def test_same_users_across_tests(self, make_test):
        """割合判定はユーザーIDのみに依存する"""
        first = make_test(test_id="exp_1", targeting=Targeting(percentage=40.0))
        second = make_test(test_id="exp_2", targeting=Targeting(percentage=40.0))
        for i in range(100):
            assert is_eligible(f"u{i}", first) == is_eligible(f"u{i}", second)


# ============================================================================
# セグメント
# ============================================================================


class TestSegments:
    """user_segments による絞り込み"""

    @pytest.fixture
    def segmented(self, make_test):
        return make_test(targeting=Targeting(user_segments=("pro", "enterprise")))

    def test_matching_segment(self, segmented):
        assert is_eligible("alice", segmented, {"userSegment": "pro"})

    def test_snake_case_key(self, segmented):
        assert is_eligible("alice", segmented, {"user_segment": "enterprise"})

    def test_other_segment(self, segmented):
        assert not is_eligible("alice", segmented, {"userSegment": "free"})

    def test_missing_segment(self, segmented):
        assert not is_eligible("alice", segmented, {})
        assert not is_eligible("alice", segmented, None)


# ============================================================================
# 条件
# ============================================================================


class TestConditions:
    """evaluate_condition のテスト"""

    def test_equals(self):
        assert evaluate_condition(_cond("plan", "=", "pro"), {"plan": "pro"})
        assert not evaluate_condition(_cond("plan", "=", "pro"), {"plan": "free"})

    def test_not_equals(self):
        assert evaluate_condition(_cond("plan", "!=", "pro"), {"plan": "free"})
        assert not evaluate_condition(_cond("plan", "!=", "pro"), {"plan": "pro"})

    def test_not_equals_alias(self):
        assert ConditionOperator.parse("≠") is ConditionOperator.NE
        assert evaluate_condition(_cond("plan", "≠", "pro"), {"plan": "free"})

    def test_greater_and_less(self):
        assert evaluate_condition(_cond("age", ">", 18), {"age": 30})
        assert not evaluate_condition(_cond("age", ">", 18), {"age": 18})
        assert evaluate_condition(_cond("age", "<", 18), {"age": 10})

    def test_comparison_with_missing_field(self):
        """フィールドがない場合は不成立"""
        assert not evaluate_condition(_cond("age", ">", 18), {})
        assert not evaluate_condition(_cond("age", "<", 18), {})

    def test_comparison_with_incompatible_types(self):
        """比較できない型は例外にせず不成立"""
        assert not evaluate_condition(_cond("age", ">", 18), {"age": "thirty"})

    def test_contains_list(self):
        cond = _cond("features", "contains", "beta")
        assert evaluate_condition(cond, {"features": ["beta", "dark_mode"]})
        assert not evaluate_condition(cond, {"features": ["dark_mode"]})

    def test_contains_string(self):
        cond = _cond("email", "contains", "@example.com")
        assert evaluate_condition(cond, {"email": "alice@example.com"})
        assert not evaluate_condition(cond, {"email": "alice@other.org"})
        assert not evaluate_condition(cond, {})

    def test_in(self):
        cond = _cond("country", "in", ["JP", "US"])
        assert evaluate_condition(cond, {"country": "JP"})
        assert not evaluate_condition(cond, {"country": "FR"})

    def test_in_requires_collection(self):
        """文字列の値は部分一致として扱わない"""
        assert not evaluate_condition(_cond("country", "in", "JPUS"), {"country": "JP"})

    def test_all_conditions_must_hold(self, make_test):
        test = make_test(
            targeting=Targeting(
                conditions=(
                    _cond("plan", "=", "pro"),
                    _cond("age", ">", 18),
                )
            )
        )
        assert is_eligible("alice", test, {"plan": "pro", "age": 30})
        assert not is_eligible("alice", test, {"plan": "pro", "age": 10})
        assert not is_eligible("alice", test, {"plan": "free", "age": 30})
