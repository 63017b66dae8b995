# A/Bテスト 共通フィクスチャ
from datetime import datetime, timedelta

import pytest

from src.ab_testing.models import (
    ABTest,
    ABTestStatus,
    DurationWindow,
    MetricsDefinition,
    Targeting,
    Variant,
)


class FakeClock:
    """テスト用の手動で進める時計"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """2026-01-01 00:00 から始まる時計"""
    return FakeClock(datetime(2026, 1, 1))


@pytest.fixture
def two_variants():
    """50/50 の2バリアント"""
    return (
        Variant(id="A", name="control", weight=0.5, config={"model": "model-a"}),
        Variant(id="B", name="treatment", weight=0.5, config={"model": "model-b"}),
    )


@pytest.fixture
def make_test(two_variants):
    """検証を通さずに ABTest を直接組み立てるファクトリ"""

    def _make(
        test_id="test_1",
        variants=None,
        targeting=None,
        metrics=None,
        status=ABTestStatus.RUNNING,
        duration=None,
    ) -> ABTest:
        return ABTest(
            id=test_id,
            name=test_id,
            variants=tuple(variants or two_variants),
            metrics=metrics or MetricsDefinition(
                primary="score",
                minimum_sample_size=10,
                significance_level=0.05,
                power=0.8,
            ),
            status=status,
            targeting=targeting or Targeting(),
            duration=duration or DurationWindow(),
        )

    return _make
