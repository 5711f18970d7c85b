# -*- coding: utf-8 -*-
"""PlanFlow設定.

このモジュールは、PlanFlow の実行計画・調整・進捗・反復管理の設定を管理します。

使用例:
    ```python
    from planflow.config import get_settings

    settings = get_settings()
    print(settings.max_concurrency)  # 3
    print(settings.max_fix_attempts)  # 5
    ```

環境変数:
    - PLANFLOW_MAX_CONCURRENCY: 実行グループあたりの最大タスク数
    - PLANFLOW_ASSIGNMENT_STRATEGY: 割当戦略（capability_match/round_robin/load_balanced）
    - PLANFLOW_MAX_RETRIES: 反復あたりの最大リトライ回数
    - PLANFLOW_MAX_FIX_ATTEMPTS: 反復あたりの最大修正試行回数
    - PLANFLOW_RETRY_DELAY_SECONDS: リトライ間隔（秒）
    - PLANFLOW_BLOCKER_DETECTION_THRESHOLD: ブロッカー検出の連続失敗数
    - PLANFLOW_LOG_LEVEL: ログレベル（DEBUG/INFO/WARNING/ERROR）
"""

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PlanFlowSettings(BaseSettings):
    """PlanFlow設定.

    環境変数または.envファイルから設定を読み込みます。

    Attributes:
        max_concurrency: 実行グループあたりの最大タスク数
        enable_parallel_execution: グループ内並列実行を許可
        checkpoint_frequency: 定期チェックポイント間隔（タスク数、0で無効）
        assignment_strategy: Agent割当戦略
        task_timeout_seconds: 割当の停滞判定時間
        max_task_retries: タスク単位の最大再割当回数
        task_retry_delay_seconds: タスク再割当の待機時間
        assignment_attempts: Agent空き待ちの最大試行回数
        assignment_wait_seconds: Agent空き待ちの再試行間隔
        skip_failed_tasks: 失敗タスクをスキップして次グループへ進む
        max_retries: 反復あたりの最大リトライ回数
        max_fix_attempts: 反復あたりの最大修正試行回数
        retry_delay_seconds: 反復リトライ間隔
        blocker_detection_threshold: ブロッカー検出の連続失敗数
        velocity_window_size: 速度計算のスライディングウィンドウ
        high_failure_rate_threshold: 高失敗率ブロッカーの閾値
        log_level: ログレベル
        debug: デバッグモード
    """

    # 計画設定
    max_concurrency: int = Field(default=3, ge=1, description="実行グループあたりの最大タスク数")
    enable_parallel_execution: bool = Field(default=True, description="グループ内並列実行を許可")
    checkpoint_frequency: int = Field(default=0, ge=0, description="定期チェックポイント間隔（0で無効）")

    # 調整設定
    assignment_strategy: str = Field(
        default="capability_match",
        description="割当戦略（capability_match/round_robin/load_balanced）",
    )
    task_timeout_seconds: float = Field(default=300.0, gt=0.0, description="割当の停滞判定時間（秒）")
    max_task_retries: int = Field(default=3, ge=0, description="タスク単位の最大再割当回数")
    task_retry_delay_seconds: float = Field(default=5.0, ge=0.0, description="タスク再割当の待機時間（秒）")
    assignment_attempts: int = Field(default=10, ge=1, description="Agent空き待ちの最大試行回数")
    assignment_wait_seconds: float = Field(default=1.0, ge=0.0, description="Agent空き待ちの再試行間隔（秒）")
    skip_failed_tasks: bool = Field(default=False, description="失敗タスクをスキップして続行")

    # 反復設定
    max_retries: int = Field(default=3, ge=0, description="反復あたりの最大リトライ回数")
    max_fix_attempts: int = Field(default=5, ge=0, description="反復あたりの最大修正試行回数")
    retry_delay_seconds: float = Field(default=1.0, ge=0.0, description="反復リトライ間隔（秒）")

    # 進捗設定
    blocker_detection_threshold: int = Field(default=3, ge=1, description="ブロッカー検出の連続失敗数")
    velocity_window_size: int = Field(default=10, ge=1, description="速度計算ウィンドウ")
    high_failure_rate_threshold: float = Field(default=0.3, gt=0.0, le=1.0, description="高失敗率の閾値")

    # ログ設定
    log_level: str = Field(default="INFO", description="ログレベル")
    debug: bool = Field(default=False, description="デバッグモード")

    # Pydantic設定
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="PLANFLOW_",
        case_sensitive=False,
        extra="ignore",
    )

    def configure_logging(self) -> None:
        """ログ設定を適用."""
        level = logging.DEBUG if self.debug else getattr(logging, self.log_level.upper(), logging.INFO)
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )


@lru_cache
def get_settings() -> PlanFlowSettings:
    """設定シングルトンを取得.

    プロセス起動時の設定読込用です。コンポーネントは設定を引数で受け取るため、
    テストでは ``PlanFlowSettings(...)`` を直接生成してください。

    Returns:
        PlanFlow設定
    """
    settings = PlanFlowSettings()
    settings.configure_logging()
    return settings
