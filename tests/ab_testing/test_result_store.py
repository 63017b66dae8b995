# 結果ストア テスト
from datetime import datetime

import pytest

from src.ab_testing.models import ABTestResult
from src.ab_testing.result_store import ResultStore


def _result(n, test_id="test_1", variant_id="A", metric="score", value=1.0, timestamp=None):
    return ABTestResult(
        id=f"result_{n}",
        test_id=test_id,
        variant_id=variant_id,
        user_id=f"user_{n}",
        metric=metric,
        value=value,
        timestamp=timestamp or datetime(2026, 1, 1),
    )


@pytest.fixture
def store():
    return ResultStore()


class TestResultStore:
    """ResultStore のテスト"""

    def test_append_returns_count_per_test(self, store):
        assert store.append(_result(1)) == 1
        assert store.append(_result(2)) == 2
        assert store.append(_result(3, test_id="test_2")) == 1
        assert store.count_by_test("test_1") == 2

    def test_list_by_metric(self, store):
        store.append(_result(1, metric="score"))
        store.append(_result(2, metric="latency"))
        assert len(store.list_by_test("test_1")) == 2
        assert [r.id for r in store.list_by_test("test_1", "latency")] == ["result_2"]
        assert store.list_by_test("unknown") == []

    def test_purge_all(self, store):
        store.append(_result(1))
        store.append(_result(2))
        assert store.purge_test("test_1") == 2
        assert store.count_by_test("test_1") == 0
