"""設定管理モジュール.

このモジュールは、PlanFlow の設定管理を提供します。
"""

from planflow.config.settings import PlanFlowSettings, get_settings


__all__ = ["PlanFlowSettings", "get_settings"]
