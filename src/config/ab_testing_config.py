# A/Bテストエンジン パラメータ設定

from dataclasses import dataclass, fields
from typing import Any, Dict


@dataclass
class ABTestingConfig:
    """A/Bテストエンジンの設定

    エンジン生成時に注入し、実行中は update_config() でのみ変更する。

    使用例:
        config = ABTestingConfig(max_concurrent_tests=5)
        engine = ABTestingEngine(config)

    Raises:
        ValueError: パラメータが範囲外の場合
    """

    enabled: bool = True
    """エンジンを有効にするか（無効時は割り当てを行わない）"""

    # === 統計 ===
    default_significance_level: float = 0.05
    """デフォルト有意水準 α（95%信頼）"""

    default_power: float = 0.8
    """デフォルト検出力（80%）"""

    default_minimum_sample_size: int = 100
    """バリアントあたりのデフォルト最小サンプル数"""

    minimum_test_duration_days: int = 7
    """有意差なしで停止するまでの最低実施期間（日）"""

    # === 容量 ===
    max_concurrent_tests: int = 10
    """同時に実行（running/paused）できるテストの上限"""

    # === 自動分析 ===
    auto_analysis_interval: float = 3600.0
    """定期分析の間隔（秒、1時間）"""

    analysis_trigger_every: int = 100
    """N件の結果記録ごとに再分析を起動（0で無効）"""

    # === データ保持・コンプライアンス ===
    retention_period_days: int = 90
    """終了したテストのデータ・監査ログの保持期間（日）"""

    anonymize_data: bool = True
    """監査ログのユーザーIDをハッシュ化するか"""

    audit_logging: bool = True
    """監査ログを記録するか"""

    def __post_init__(self) -> None:
        """初期化後の処理: パラメータ検証"""
        if not 0.0 < self.default_significance_level < 1.0:
            raise ValueError(
                f"default_significance_level must be in (0, 1), "
                f"got {self.default_significance_level}"
            )
        if not 0.0 < self.default_power < 1.0:
            raise ValueError(
                f"default_power must be in (0, 1), got {self.default_power}"
            )
        if self.default_minimum_sample_size < 1:
            raise ValueError("default_minimum_sample_size must be >= 1")
        if self.max_concurrent_tests < 1:
            raise ValueError("max_concurrent_tests must be >= 1")
        if self.auto_analysis_interval <= 0:
            raise ValueError("auto_analysis_interval must be positive")
        if self.analysis_trigger_every < 0:
            raise ValueError("analysis_trigger_every must be >= 0")
        if self.retention_period_days < 1:
            raise ValueError("retention_period_days must be >= 1")
        if self.minimum_test_duration_days < 0:
            raise ValueError("minimum_test_duration_days must be >= 0")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ABTestingConfig":
        """辞書から設定を生成（未知のキーはエラー）

        Args:
            data: 設定値の辞書（YAMLの config セクションなど）

        Raises:
            ValueError: 未知のキーが含まれる場合
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換"""
        return {f.name: getattr(self, f.name) for f in fields(self)}


# デフォルト設定のインスタンス
ab_testing_config = ABTestingConfig()
