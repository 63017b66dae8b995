# A/Bテスト エラー定義
"""
A/Bテストエンジンの例外階層

API境界で同期的に送出され、呼び出し側にそのまま伝播する。
統計上のエッジケース（サンプル不足・分散ゼロ）は例外にしない。
"""


class ABTestingError(Exception):
    """A/Bテストエンジンの基底例外"""
    pass


class ValidationError(ABTestingError):
    """不正な定義・状態遷移の場合のエラー

    重みの合計が1でない、許可されない状態遷移、draft以外でのバリアント変更など。
    """
    pass


class CapacityError(ABTestingError):
    """同時実行テスト数の上限を超えた場合のエラー"""
    pass


class NotFoundError(ABTestingError):
    """テストが見つからない場合のエラー"""

    def __init__(self, test_id: str):
        super().__init__(f"Test {test_id} not found")
        self.test_id = test_id


class NotAssignedError(ABTestingError):
    """割り当てのないユーザーの結果を記録しようとした場合のエラー"""

    def __init__(self, user_id: str, test_id: str):
        super().__init__(f"User {user_id} not assigned to test {test_id}")
        self.user_id = user_id
        self.test_id = test_id


class EventBusClosedError(ABTestingError):
    """シャットダウン後のイベント購読・発行のエラー"""
    pass
