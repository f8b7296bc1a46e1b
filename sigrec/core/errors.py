"""
エラー定義 — ステップ実行と再生制御の例外体系

ステップ実行の失敗は必ず型付きで表現し、失敗ポリシー（リトライ / 一時停止 / 失敗）は
ReplayController だけが決定する。

分類:
  - TargetNotFoundError: ロケータと全フォールバックが解決できない（リトライ可）
  - StepTimeoutError: 遷移・待機の期限超過（リトライ可）
  - NavigationFailedError: 環境が報告した読み込み失敗（リトライ可）
  - StepError: 想定外の環境例外・変数展開エラー（リトライ不可）
  - ProtocolViolationError: 古い / 重複したトランスポートメッセージ（内部のみ）
  - InvalidTransitionError: 現在の状態で受け付けられない操作
"""

from __future__ import annotations


class StepExecutionError(Exception):
    """ステップ実行失敗の基底クラス。

    Attributes:
        error_type: トランスポート上で使う失敗種別名
        retryable: maxRetries の範囲で再実行してよいか
    """

    error_type: str = "StepError"
    retryable: bool = False


class TargetNotFoundError(StepExecutionError):
    """ロケータ（プライマリと全フォールバック）で要素を特定できなかった。"""

    error_type = "TargetNotFound"
    retryable = True

    def __init__(self, locator_desc: str, details: str = "") -> None:
        self.locator_desc = locator_desc
        message = f"要素が見つかりません: {locator_desc}"
        if details:
            message = f"{message}\n{details}"
        super().__init__(message)


class StepTimeoutError(StepExecutionError):
    """遷移または待機がステップのタイムアウトまでに完了しなかった。"""

    error_type = "Timeout"
    retryable = True


class NavigationFailedError(StepExecutionError):
    """環境がページ読み込みの失敗を報告した。"""

    error_type = "NavigationFailed"
    retryable = True


class StepError(StepExecutionError):
    """分類できないステップ失敗。リトライしない。"""

    error_type = "StepError"
    retryable = False


class ProtocolViolationError(Exception):
    """実行中のステップと一致しないメッセージ、または単一実行規約の違反。

    ログに記録して破棄する。オペレータには通知しない。
    """


class InvalidTransitionError(RuntimeError):
    """現在の Run 状態では受け付けられない操作が要求された。"""


# 失敗種別名から例外クラスへの対応（StepFailed メッセージの復元用）
ERROR_TYPES: dict[str, type[StepExecutionError]] = {
    cls.error_type: cls
    for cls in (TargetNotFoundError, StepTimeoutError, NavigationFailedError, StepError)
}


def is_retryable(error_type: str) -> bool:
    """失敗種別名がリトライ対象かを返す。"""
    cls = ERROR_TYPES.get(error_type, StepError)
    return cls.retryable
