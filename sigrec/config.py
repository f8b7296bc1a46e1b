"""
エンジン設定 — 環境変数・CLI 引数からの設定読み込み

環境変数または CLI 引数で再生 / 記録の動作を制御する。
CLI 引数 > 環境変数 > デフォルト値 の優先順位で適用される。

環境変数一覧:
  SIGREC_HEADED          : ブラウザ表示モード（true/false, デフォルト: true）
  SIGREC_ARTIFACTS_DIR   : 成果物ディレクトリ（デフォルト: artifacts）
  SIGREC_VIEWPORT_WIDTH  : ビューポート幅（デフォルト: 1280）
  SIGREC_VIEWPORT_HEIGHT : ビューポート高さ（デフォルト: 720）
  SIGREC_POLL_INTERVAL_MS: 要素出現待ちのポーリング間隔（デフォルト: 100）
  SIGREC_HIGHLIGHT_MS    : 操作対象のハイライト表示時間（デフォルト: 1000）
  SIGREC_SLOW_MO         : 各 Playwright 操作間の遅延（デフォルト: 0）
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# 環境変数キー定数
# ---------------------------------------------------------------------------

_ENV_HEADED = "SIGREC_HEADED"
_ENV_ARTIFACTS_DIR = "SIGREC_ARTIFACTS_DIR"
_ENV_VIEWPORT_WIDTH = "SIGREC_VIEWPORT_WIDTH"
_ENV_VIEWPORT_HEIGHT = "SIGREC_VIEWPORT_HEIGHT"
_ENV_POLL_INTERVAL_MS = "SIGREC_POLL_INTERVAL_MS"
_ENV_HIGHLIGHT_MS = "SIGREC_HIGHLIGHT_MS"
_ENV_SLOW_MO = "SIGREC_SLOW_MO"

_INT_FIELDS: dict[str, str] = {
    _ENV_VIEWPORT_WIDTH: "viewport_width",
    _ENV_VIEWPORT_HEIGHT: "viewport_height",
    _ENV_POLL_INTERVAL_MS: "poll_interval_ms",
    _ENV_HIGHLIGHT_MS: "highlight_ms",
    _ENV_SLOW_MO: "slow_mo",
}


# ---------------------------------------------------------------------------
# 設定データクラス
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    """再生 / 記録エンジンの実行時設定。

    Attributes:
        headed: ブラウザ表示モード（True=表示, False=ヘッドレス）
        artifacts_dir: 成果物ディレクトリパス（スクリーンショット・Run ストア・レポート）
        viewport_width: ビューポート幅
        viewport_height: ビューポート高さ
        poll_interval_ms: 要素出現待ちのポーリング間隔（ミリ秒）
        highlight_ms: 操作対象のハイライト表示時間（ミリ秒）
        slow_mo: 各 Playwright 操作間の遅延（ミリ秒）
    """

    headed: bool = True
    artifacts_dir: str = "artifacts"
    viewport_width: int = 1280
    viewport_height: int = 720
    poll_interval_ms: int = 100
    highlight_ms: int = 1000
    slow_mo: int = 0

    @property
    def screenshots_dir(self) -> Path:
        return Path(self.artifacts_dir) / "screenshots"

    @property
    def runs_dir(self) -> Path:
        return Path(self.artifacts_dir) / "runs"


# ---------------------------------------------------------------------------
# 環境変数からの読み込み
# ---------------------------------------------------------------------------

def _parse_bool(value: str) -> bool:
    """"true", "1", "yes" を True、それ以外を False に変換する。"""
    return value.lower() in ("true", "1", "yes")


def load_config_from_env() -> EngineConfig:
    """環境変数から EngineConfig を生成する。

    設定されていない環境変数はデフォルト値を使用する。
    数値として解釈できない値は警告を出して無視する。
    """
    config = EngineConfig()

    if _ENV_HEADED in os.environ:
        config.headed = _parse_bool(os.environ[_ENV_HEADED])

    if _ENV_ARTIFACTS_DIR in os.environ:
        config.artifacts_dir = os.environ[_ENV_ARTIFACTS_DIR]

    for env_key, attr in _INT_FIELDS.items():
        if env_key not in os.environ:
            continue
        try:
            value = int(os.environ[env_key])
        except ValueError:
            logger.warning("%s の値が不正です: %s", env_key, os.environ[env_key])
            continue
        if value < 0:
            logger.warning("%s は 0 以上で指定してください: %s", env_key, value)
            continue
        setattr(config, attr, value)

    logger.debug("設定を読み込みました: %s", config)
    return config


def apply_cli_args(config: EngineConfig, args: Any) -> EngineConfig:
    """CLI 引数を EngineConfig に適用する。

    CLI 引数が指定されている（None でない）場合のみ上書きする。

    Args:
        config: ベースとなる設定（環境変数から読み込み済み）
        args: headed / artifacts_dir / viewport / slow_mo 属性を持つオブジェクト

    Returns:
        CLI 引数が適用された設定
    """
    headed = getattr(args, "headed", None)
    if headed is not None:
        config.headed = bool(headed)

    artifacts_dir = getattr(args, "artifacts_dir", None)
    if artifacts_dir is not None:
        config.artifacts_dir = str(artifacts_dir)

    slow_mo = getattr(args, "slow_mo", None)
    if slow_mo is not None:
        config.slow_mo = int(slow_mo)

    viewport_str = getattr(args, "viewport", None)
    if viewport_str is not None:
        try:
            w, h = str(viewport_str).lower().split("x")
            config.viewport_width = int(w)
            config.viewport_height = int(h)
        except ValueError:
            logger.warning("--viewport の形式が不正です: %s (WIDTHxHEIGHT)", viewport_str)

    return config
