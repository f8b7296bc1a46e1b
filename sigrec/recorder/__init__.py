"""
操作記録パッケージ

ユーザー操作を観測し、ロケータ付きの RecordedEvent 列として記録する。
"""

from __future__ import annotations

from .recorder import (
    EventRecorder,
    InteractionSource,
    RecorderState,
    load_recording,
    save_recording,
)

__all__ = [
    "EventRecorder",
    "InteractionSource",
    "RecorderState",
    "load_recording",
    "save_recording",
]
