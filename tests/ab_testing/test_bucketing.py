# バケッティング テスト
"""
bucket_value / variant_seed / hash_identifier の単体テスト

検証観点:
- 決定論性: 同じシードは常に同じ値
- 範囲: [0, 1)
- 分布: 多数のシードでほぼ一様
"""

import hashlib

from src.ab_testing.bucketing import bucket_value, hash_identifier, variant_seed


class TestBucketValue:
    """bucket_value のテスト"""

    def test_deterministic(self):
        """同じシードは同じ値"""
        assert bucket_value("user_42") == bucket_value("user_42")

    def test_uses_first_eight_bytes_of_sha256(self):
        """SHA-256 の先頭8バイトを 2**64 で正規化"""
        digest = hashlib.sha256(b"alice").digest()
        expected = int.from_bytes(digest[:8], "big") / 2 ** 64
        assert bucket_value("alice") == expected

    def test_range(self):
        """すべての値が [0, 1) に収まる"""
        values = [bucket_value(f"user_{i}") for i in range(2000)]
        assert all(0.0 <= v < 1.0 for v in values)

    def test_roughly_uniform(self):
        """平均がほぼ0.5、下位30%の割合がほぼ0.3"""
        values = [bucket_value(f"user_{i}") for i in range(10000)]
        mean = sum(values) / len(values)
        below = sum(1 for v in values if v < 0.3) / len(values)
        assert abs(mean - 0.5) < 0.02
        assert abs(below - 0.3) < 0.02

    def test_different_seeds_differ(self):
        assert bucket_value("user_1") != bucket_value("user_2")


class TestVariantSeed:
    """variant_seed のテスト"""

    def test_format(self):
        assert variant_seed("alice", "exp_1") == "alice:exp_1"

    def test_independent_per_test(self):
        """同じユーザーでもテストごとに異なるバケット値"""
        a = bucket_value(variant_seed("alice", "exp_1"))
        b = bucket_value(variant_seed("alice", "exp_2"))
        assert a != b


class TestHashIdentifier:
    """hash_identifier のテスト"""

    def test_default_length(self):
        hashed = hash_identifier("alice")
        assert len(hashed) == 16
        assert all(c in "0123456789abcdef" for c in hashed)

    def test_prefix_of_hexdigest(self):
        full = hashlib.sha256(b"alice").hexdigest()
        assert hash_identifier("alice", length=32) == full[:32]

    def test_not_reversible_identity(self):
        """元のIDを含まない"""
        assert "alice" not in hash_identifier("alice")
