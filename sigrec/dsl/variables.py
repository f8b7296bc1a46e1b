"""
変数展開エンジン — ${vars.X} / ${env.X} の遅延評価展開

ステップ実行の直前に、ステップ内の文字列値に含まれる変数参照を展開する。
パース時には展開しない。extract ステップが格納した値は Run の変数バッグに入り、
後続ステップから ${vars.X} で参照できる。

サポートする構文:
  - ${vars.X} → Run の変数バッグから値を取得
  - ${env.X}  → 環境変数辞書から値を取得

未定義変数の参照は VariableNotFoundError を送出する。
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from ..core.errors import StepError
from .parser import parse_step
from .schema import Step


# ---------------------------------------------------------------------------
# 変数参照パターン
# ---------------------------------------------------------------------------

_VAR_PATTERN = re.compile(r"\$\{(env|vars)\.([a-zA-Z_][a-zA-Z0-9_]*)\}")

# 展開後に残っている未解決の ${...} パターン
_UNRESOLVED_PATTERN = re.compile(r"\$\{[^}]+\}")


# ---------------------------------------------------------------------------
# カスタム例外
# ---------------------------------------------------------------------------

class VariableNotFoundError(StepError):
    """未定義の変数が参照された場合に送出される例外。

    ステップ失敗として扱い、リトライはしない。

    Attributes:
        namespace: 変数の名前空間（"env" / "vars"、構文不正時は "unknown"）
        var_name: 参照された変数名
    """

    def __init__(self, namespace: str, var_name: str) -> None:
        self.namespace = namespace
        self.var_name = var_name
        if namespace == "unknown":
            message = f"解決できない変数参照です: {var_name}"
        else:
            message = f"未定義の変数が参照されました: ${{{namespace}.{var_name}}}"
        super().__init__(message)


def _stringify(value: Any) -> str:
    """変数値を埋め込み用の文字列に変換する。リストはカンマ区切りで連結する。"""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if value is None:
        return ""
    return str(value)


# ---------------------------------------------------------------------------
# VariableExpander 本体
# ---------------------------------------------------------------------------

class VariableExpander:
    """テキスト内の変数参照を展開するエンジン。

    vars は Run が所有する変数バッグへの読み取り専用ビューとして扱い、
    このクラスから書き換えることはない。
    """

    def __init__(self, vars: Mapping[str, Any], env: Mapping[str, str] | None = None) -> None:
        """変数展開エンジンを初期化する。

        Args:
            vars: Run の変数バッグ
            env: 環境変数辞書（テスタビリティのため直接渡す。None で空）
        """
        self._vars = vars
        self._env = dict(env or {})

    def expand(self, text: str) -> str:
        """テキスト内の変数参照を展開する。

        Raises:
            VariableNotFoundError: 未定義の変数、または解決できない参照が含まれる場合
        """
        result = _VAR_PATTERN.sub(self._replace_match, text)

        unresolved = _UNRESOLVED_PATTERN.search(result)
        if unresolved:
            raise VariableNotFoundError("unknown", unresolved.group())
        return result

    def expand_step(self, step: Step) -> Step:
        """ステップ内の全文字列値を展開した新しいステップを返す。

        参照を含まないステップはそのまま返す。
        """
        raw = step.model_dump(mode="json", exclude_none=True)
        expanded = self._expand_value(raw)
        if expanded == raw:
            return step
        return parse_step(expanded)

    # ----- 内部メソッド -----

    def _replace_match(self, match: re.Match) -> str:
        namespace = match.group(1)
        var_name = match.group(2)

        source: Mapping[str, Any] = self._env if namespace == "env" else self._vars
        if var_name not in source:
            raise VariableNotFoundError(namespace, var_name)
        return _stringify(source[var_name])

    def _expand_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.expand(value)
        if isinstance(value, dict):
            return {k: self._expand_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_value(item) for item in value]
        return value
