# 決定論的バケッティング
"""
識別子を [0, 1) の安定した値に写像するハッシュ関数群

同じシードは常に同じ値になるため、リトライや再起動をまたいでも割り当てが変わらない。
異なるシードの値は統計的に独立とみなせるので、トラフィック比率は集計上保たれる。
"""

import hashlib

# 先頭8バイトを符号なし整数として使う
_BUCKET_BYTES = 8
_BUCKET_SCALE = float(2 ** (8 * _BUCKET_BYTES))


def bucket_value(seed: str) -> float:
    """シードから [0, 1) のバケット値を計算

    SHA-256 ダイジェストの先頭8バイトを 2**64 で正規化する。

    Args:
        seed: ユーザーID、またはテストごとに独立させる場合は variant_seed() の値

    Returns:
        0.0 以上 1.0 未満の値
    """
    digest = hashlib.sha256(str(seed).encode("utf-8")).digest()
    return int.from_bytes(digest[:_BUCKET_BYTES], "big") / _BUCKET_SCALE


def variant_seed(user_id: str, test_id: str) -> str:
    """テストごとに独立したバケット値を得るためのシード"""
    return f"{user_id}:{test_id}"


def hash_identifier(identifier: str, length: int = 16) -> str:
    """識別子を一方向ハッシュ化（監査ログの匿名化用）

    Args:
        identifier: ユーザーIDなど
        length: 返す16進文字数

    Returns:
        SHA-256 16進ダイジェストの先頭 length 文字
    """
    return hashlib.sha256(str(identifier).encode("utf-8")).hexdigest()[:length]
