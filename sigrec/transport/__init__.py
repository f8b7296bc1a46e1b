"""
実行トランスポート

ReplayController と Driver の間の非同期メッセージ境界を提供する。

主な構成:
  - messages: ExecuteStep / StepCompleted / StepFailed / ControlMessage / StateReport
  - channel: asyncio.Queue によるインプロセスチャネル
  - driver: 実行依頼を StepExecutor に渡して結果を返信するドライバ
"""

from __future__ import annotations

from .channel import ChannelEndpoint, InProcessChannel, MessageLink
from .messages import (
    ControlMessage,
    ExecuteStep,
    StateReport,
    StepCompleted,
    StepFailed,
)

__all__ = [
    "ChannelEndpoint",
    "ControlMessage",
    "ExecuteStep",
    "InProcessChannel",
    "MessageLink",
    "StateReport",
    "StepCompleted",
    "StepFailed",
]
