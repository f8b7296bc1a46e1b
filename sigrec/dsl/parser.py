"""
DSL パーサー — ワークフロー文書の読み込み・書き出し・検証

構造値（dict）を型付きの Step / Workflow に変換し、逆に JSON 互換の構造値へ
シリアライズする。ファイル入出力は ruamel.yaml を使用し、.json / .yaml / .yml を扱う。

ラウンドトリップ特性: スキーマを満たす構造値 x について serialize(parse(x)) は
x と意味的に等価（既定値が補完される以外は同一）。
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .schema import ConditionalStep, LoopStep, Step, Workflow


_STEP_ADAPTER: TypeAdapter = TypeAdapter(Step)


# ---------------------------------------------------------------------------
# バリデーションエラー表現
# ---------------------------------------------------------------------------

class WorkflowValidationError(ValueError):
    """ステップ / ワークフローの構造が不正な場合のエラー。

    実行開始前に即座に失敗させる。

    Attributes:
        step_index: 問題のあるステップのインデックス（ワークフロー全体の問題なら None）
        field: 問題のあるフィールドパス（例: "selector.value"）
    """

    def __init__(
        self, message: str, step_index: Optional[int] = None, field: str = ""
    ) -> None:
        self.step_index = step_index
        self.field = field
        location = []
        if step_index is not None:
            location.append(f"steps[{step_index}]")
        if field:
            location.append(field)
        prefix = f"{'.'.join(location)}: " if location else ""
        super().__init__(f"{prefix}{message}")


@dataclass
class DslValidationError:
    """validate() が報告する検証エラー。

    Attributes:
        message: エラーメッセージ
        location: エラー箇所（フィールドパス等）
        line: ファイル内の行番号（取得可能な場合）
    """

    message: str
    location: str = ""
    line: Optional[int] = None


# ---------------------------------------------------------------------------
# パース / シリアライズ
# ---------------------------------------------------------------------------

def _format_loc(loc: tuple, step_type: Optional[str] = None) -> str:
    """Pydantic のエラー位置をフィールドパス文字列に変換する。

    判別共用体のタグ（ステップ種別名）は取り除く。
    """
    parts = [str(p) for p in loc]
    if step_type and parts and parts[0] == step_type:
        parts = parts[1:]
    return ".".join(parts)


def parse_step(raw: Any, index: int = 0) -> Step:
    """構造値を型付きの Step に変換する。

    Args:
        raw: ステップの構造値（dict）
        index: ワークフロー内のインデックス（エラーメッセージ用）

    Returns:
        パース済みの Step

    Raises:
        WorkflowValidationError: 必須フィールドの欠落や型の不一致がある場合
    """
    if not isinstance(raw, dict):
        raise WorkflowValidationError(
            f"ステップはオブジェクトで指定してください（受け取った型: {type(raw).__name__}）",
            step_index=index,
        )
    if "type" not in raw:
        raise WorkflowValidationError("ステップ種別がありません", step_index=index, field="type")

    try:
        return _STEP_ADAPTER.validate_python(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = _format_loc(first.get("loc", ()), raw.get("type"))
        raise WorkflowValidationError(
            first.get("msg", "不明なエラー"), step_index=index, field=field or "type"
        ) from e


def parse_workflow(raw: Any) -> Workflow:
    """構造値を Workflow に変換する。

    ステップは個別にパースし、最初に問題が見つかったステップのインデックスと
    フィールドをエラーに含める。

    Raises:
        WorkflowValidationError: 構造が不正、ステップ ID の重複、存在しない ID の参照がある場合
    """
    if not isinstance(raw, dict):
        raise WorkflowValidationError("ワークフローはオブジェクトで指定してください")

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list):
        raise WorkflowValidationError("steps は配列で指定してください", field="steps")

    steps = [parse_step(item, idx) for idx, item in enumerate(raw_steps)]
    _check_references(steps)

    try:
        return Workflow.model_validate({**raw, "steps": steps})
    except PydanticValidationError as e:
        first = e.errors()[0]
        raise WorkflowValidationError(
            first.get("msg", "不明なエラー"), field=_format_loc(first.get("loc", ()))
        ) from e


def _check_references(steps: list[Step]) -> None:
    """ID の一意性と分岐 / ループ参照を、ステップのインデックス付きで検証する。"""
    seen: dict[str, int] = {}
    for idx, step in enumerate(steps):
        if step.id in seen:
            raise WorkflowValidationError(
                f"ステップ ID {step.id!r} は steps[{seen[step.id]}] と重複しています",
                step_index=idx,
                field="id",
            )
        seen[step.id] = idx

    for idx, step in enumerate(steps):
        if isinstance(step, ConditionalStep):
            fields = {"thenSteps": step.thenSteps, "elseSteps": step.elseSteps}
        elif isinstance(step, LoopStep):
            fields = {"steps": step.steps}
        else:
            continue
        for field_name, refs in fields.items():
            for ref in refs:
                if ref == step.id:
                    raise WorkflowValidationError(
                        "自身のステップ ID は参照できません", step_index=idx, field=field_name
                    )
                if ref not in seen:
                    raise WorkflowValidationError(
                        f"存在しないステップ ID {ref!r} を参照しています",
                        step_index=idx,
                        field=field_name,
                    )


def serialize_step(step: Step) -> dict[str, Any]:
    """Step を JSON 互換の構造値に変換する（None のフィールドは省略）。"""
    return step.model_dump(mode="json", exclude_none=True)


def serialize_workflow(workflow: Workflow) -> dict[str, Any]:
    """Workflow を JSON 互換の構造値に変換する（None のフィールドは省略）。"""
    return workflow.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# WorkflowParser 本体
# ---------------------------------------------------------------------------

class WorkflowParser:
    """ワークフロー文書ファイルの読み込み・書き出し・検証を担当するパーサー。

    .json は標準の json、.yaml / .yml は ruamel.yaml で読み書きする。
    """

    def __init__(self) -> None:
        """ruamel.yaml インスタンスを初期化する。"""
        self._yaml = YAML()
        self._yaml.preserve_quotes = True
        self._yaml.default_flow_style = False

    # ----- load -----

    def load(self, path: Path) -> Workflow:
        """ファイルを読み込み、Workflow に変換する。

        Raises:
            FileNotFoundError: ファイルが存在しない場合
            WorkflowValidationError: 構文エラーまたはスキーマ検証エラーの場合
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"ワークフローファイルが見つかりません: {path}")

        data = self._read(path)
        if data is None:
            raise WorkflowValidationError("ワークフローファイルが空です")
        return parse_workflow(data)

    # ----- dump -----

    def dump(self, workflow: Workflow, path: Path) -> None:
        """Workflow をファイルに書き出す。拡張子で JSON / YAML を切り替える。"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.write_document(serialize_workflow(workflow), path)

    def write_document(self, data: Any, path: Path) -> None:
        """任意の JSON 互換構造値を拡張子に応じた形式で書き出す。"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                json.dump(data, f, ensure_ascii=False, indent=2)
            else:
                self._yaml.dump(data, f)

    def read_document(self, path: Path) -> Any:
        """ファイルを拡張子に応じた形式で読み込み、通常の dict / list を返す。

        Raises:
            WorkflowValidationError: 構文エラーの場合
        """
        return self._read(Path(path))

    # ----- validate -----

    def validate(self, path: Path) -> list[DslValidationError]:
        """ファイルのスキーマ検証を行い、違反箇所を報告する。

        エラーがない場合は空リストを返す。内容の問題で例外は送出しない。
        """
        path = Path(path)
        if not path.exists():
            return [DslValidationError(
                message=f"ワークフローファイルが見つかりません: {path}",
                location="file",
            )]

        try:
            data = self._read(path)
        except WorkflowValidationError as e:
            cause = e.__cause__
            line = None
            mark = getattr(cause, "problem_mark", None)
            if mark is not None:
                line = mark.line + 1
            elif isinstance(cause, json.JSONDecodeError):
                line = cause.lineno
            return [DslValidationError(message=str(e), location="syntax", line=line)]

        if data is None:
            return [DslValidationError(message="ワークフローファイルが空です", location="file")]

        try:
            parse_workflow(data)
        except WorkflowValidationError as e:
            parts = []
            if e.step_index is not None:
                parts.append(f"steps[{e.step_index}]")
            if e.field:
                parts.append(e.field)
            return [DslValidationError(message=str(e), location=".".join(parts) or "workflow")]
        return []

    # ----- ユーティリティ -----

    def _read(self, path: Path) -> Any:
        """ファイルを読み込み、通常の dict / list に変換して返す。"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                if path.suffix.lower() == ".json":
                    return json.load(f)
                return self._to_plain(self._yaml.load(f))
        except json.JSONDecodeError as e:
            raise WorkflowValidationError(
                f"JSON 構文エラー (行 {e.lineno}, 列 {e.colno}): {e.msg}"
            ) from e
        except YAMLError as e:
            line_info = ""
            mark = getattr(e, "problem_mark", None)
            if mark is not None:
                line_info = f" (行 {mark.line + 1}, 列 {mark.column + 1})"
            raise WorkflowValidationError(f"YAML 構文エラー{line_info}: {e}") from e

    def _to_plain(self, data: Any) -> Any:
        """ruamel.yaml の CommentedMap / CommentedSeq を通常の dict / list に再帰変換する。"""
        if isinstance(data, dict):
            return {key: self._to_plain(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self._to_plain(item) for item in data]
        return data
