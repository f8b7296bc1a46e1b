"""
DSL スキーマ定義 — ワークフロー / ステップ / Run / 記録イベントのモデル

ワークフロー文書（JSON / YAML）で使用するモデルを Pydantic v2 で定義する。
ステップは type をタグとする判別共用体で、種別ごとに専用モデルを持つ。
既定値の補完はパース時にのみ行われる（timeout=5000, screenshot=false,
clearFirst=true, waitUntil=load）。

主な構成:
  - Locator: 要素特定のためのプライマリ値と順序付きフォールバック
  - GotoStep / ClickStep / TypeStep / WaitStep / ScrollStep / ExtractStep
    / ConditionalStep / LoopStep: ステップ種別
  - Workflow / WorkflowSettings: ステップ列と実行設定
  - Run / RunLogEntry: 1回の実行とその追記専用ログ
  - RecordedEvent / RecordingResult: 記録側の成果物
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# 定数
# ---------------------------------------------------------------------------

DEFAULT_STEP_TIMEOUT = 5000
"""ステップのタイムアウト既定値（ミリ秒）。"""

DEFAULT_WAIT_MS = 1000
"""waitType=time で value 省略時の待機時間（ミリ秒）。"""

DEFAULT_SCROLL_AMOUNT = 500
"""scroll up/down で amount 省略時のスクロール量（ピクセル）。"""

# 変数参照を含む URL は実行時展開まで検証を保留する
_VAR_REF = re.compile(r"\$\{[^}]+\}")


# ---------------------------------------------------------------------------
# Locator
# ---------------------------------------------------------------------------

LocatorKind = Literal["css", "xpath", "text", "semantic"]


class Locator(BaseModel):
    """操作対象要素を特定するロケータ。

    value を最初に試行し、失敗した場合は fallbacks を先頭から順に CSS として試行する。
    fallbacks は特定性の高い順に並ぶ。
    """

    model_config = ConfigDict(frozen=True)

    kind: LocatorKind = Field(default="css", description="ロケータ種別")
    value: str = Field(..., description="プライマリのロケータ値")
    fallbacks: list[str] = Field(
        default_factory=list, description="フォールバック CSS セレクタ（特定性の高い順）"
    )

    @model_validator(mode="before")
    @classmethod
    def accept_legacy_keys(cls, data: Any) -> Any:
        """旧形式（type キー / ai 種別）を kind に読み替える。"""
        if isinstance(data, dict) and "kind" not in data and "type" in data:
            data = dict(data)
            data["kind"] = data.pop("type")
        if isinstance(data, dict) and data.get("kind") == "ai":
            data = dict(data)
            data["kind"] = "semantic"
        return data

    @field_validator("value")
    @classmethod
    def value_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("ロケータの value が空です")
        return v


# ---------------------------------------------------------------------------
# ステップ共通フィールド
# ---------------------------------------------------------------------------

class BaseStep(BaseModel):
    """全ステップ種別に共通のフィールド。

    ステップは作成後に変更しない。編集は id 単位の置き換えで行う。
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="ワークフロー内で一意なステップ ID")
    description: Optional[str] = Field(default=None, description="人間向けの説明")
    timeout: int = Field(
        default=DEFAULT_STEP_TIMEOUT, gt=0, description="ステップのタイムアウト（ミリ秒）"
    )
    screenshot: bool = Field(default=False, description="完了時にスクリーンショットを撮るか")


# ---------------------------------------------------------------------------
# ステップ種別
# ---------------------------------------------------------------------------

class GotoStep(BaseStep):
    """URL へ遷移し、waitUntil の条件を満たすまで待機する。"""

    type: Literal["goto"] = "goto"
    url: str = Field(..., description="遷移先 URL")
    waitUntil: Literal["load", "domcontentloaded", "networkidle"] = Field(
        default="load", description="遷移完了とみなす条件"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """http / https の絶対 URL であることを検証する（変数参照を含む場合は保留）。"""
        if _VAR_REF.search(v):
            return v
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"URL の形式が不正です: {v!r}")
        return v


class ClickStep(BaseStep):
    """要素をクリックする。"""

    type: Literal["click"] = "click"
    selector: Locator
    waitForNavigation: bool = False
    clickCount: int = Field(default=1, ge=1)


class TypeStep(BaseStep):
    """入力要素にテキストを書き込む。"""

    type: Literal["type"] = "type"
    selector: Locator
    text: str
    clearFirst: bool = True
    pressEnter: bool = False


class WaitStep(BaseStep):
    """固定時間・要素出現・ページ遷移のいずれかを待つ。

    waitType=time の場合 value は待機ミリ秒（省略時 1000）、
    waitType=selector の場合 value は Locator（必須）。
    """

    type: Literal["wait"] = "wait"
    waitType: Literal["time", "selector", "navigation"]
    value: Optional[Union[int, float, Locator]] = None

    @model_validator(mode="before")
    @classmethod
    def fill_time_default(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("waitType") == "time" and data.get("value") is None:
            data = dict(data)
            data["value"] = DEFAULT_WAIT_MS
        return data

    @model_validator(mode="after")
    def check_value_shape(self) -> "WaitStep":
        if self.waitType == "time":
            if not isinstance(self.value, (int, float)) or self.value < 0:
                raise ValueError("waitType=time の value は 0 以上の数値で指定してください")
        elif self.waitType == "selector":
            if not isinstance(self.value, Locator):
                raise ValueError("waitType=selector の value にはロケータを指定してください")
        return self


class ScrollStep(BaseStep):
    """方向指定のスクロール、または先頭 / 末尾へのジャンプ。"""

    type: Literal["scroll"] = "scroll"
    direction: Literal["up", "down", "top", "bottom"]
    amount: Optional[int] = Field(default=None, gt=0)


class ExtractStep(BaseStep):
    """要素の属性またはテキストを取得し、storeAs の変数に格納する。"""

    type: Literal["extract"] = "extract"
    selector: Locator
    attribute: Optional[str] = None
    multiple: bool = False
    storeAs: str = Field(..., min_length=1)


class Condition(BaseModel):
    """conditional ステップの条件。

    - element_exists: value はロケータ（辞書）または CSS セレクタ文字列
    - text_contains: value はページ本文に含まれるべき文字列
    - variable_equals: value は {"name": 変数名, "value": 期待値}
    """

    model_config = ConfigDict(frozen=True)

    type: Literal["element_exists", "text_contains", "variable_equals"]
    value: Any = None

    @model_validator(mode="after")
    def check_value_shape(self) -> "Condition":
        if self.type == "element_exists":
            if not isinstance(self.value, (str, dict, Locator)) or not self.value:
                raise ValueError("element_exists の value にはロケータを指定してください")
        elif self.type == "text_contains":
            if not isinstance(self.value, str) or not self.value:
                raise ValueError("text_contains の value には文字列を指定してください")
        elif self.type == "variable_equals":
            if not isinstance(self.value, dict) or "name" not in self.value:
                raise ValueError("variable_equals の value は {name, value} 形式で指定してください")
        return self


class ConditionalStep(BaseStep):
    """条件に応じて thenSteps / elseSteps（ステップ ID 参照）を実行する。"""

    type: Literal["conditional"] = "conditional"
    condition: Condition
    thenSteps: list[str] = Field(default_factory=list)
    elseSteps: list[str] = Field(default_factory=list)

    @property
    def referenced_ids(self) -> list[str]:
        return [*self.thenSteps, *self.elseSteps]


class LoopStep(BaseStep):
    """steps（ステップ ID 参照）を iterations 回、または selector の一致要素数だけ繰り返す。"""

    type: Literal["loop"] = "loop"
    iterations: Optional[int] = Field(default=None, ge=0)
    selector: Optional[Locator] = None
    steps: list[str] = Field(..., min_length=1)

    @model_validator(mode="after")
    def check_bound(self) -> "LoopStep":
        if (self.iterations is None) == (self.selector is None):
            raise ValueError("loop には iterations と selector のどちらか一方を指定してください")
        return self

    @property
    def referenced_ids(self) -> list[str]:
        return list(self.steps)


Step = Annotated[
    Union[
        GotoStep,
        ClickStep,
        TypeStep,
        WaitStep,
        ScrollStep,
        ExtractStep,
        ConditionalStep,
        LoopStep,
    ],
    Field(discriminator="type"),
]
"""全ステップ種別の判別共用体（type フィールドで判別）。"""

STEP_TYPES: tuple[str, ...] = (
    "goto", "click", "type", "wait", "scroll", "extract", "conditional", "loop",
)

CONTROL_STEP_TYPES: tuple[str, ...] = ("conditional", "loop")


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class WorkflowSettings(BaseModel):
    """ワークフローの再生設定。"""

    supervisedMode: bool = Field(
        default=True, description="各ステップ成功後に一時停止し、オペレータの承認を待つ"
    )
    pauseOnError: bool = Field(
        default=True, description="リトライ枯渇時に failed ではなく paused にする"
    )
    maxRetries: int = Field(default=3, ge=0, description="失敗ステップの再実行回数")
    screenshotOnError: bool = Field(default=True, description="失敗時にスクリーンショットを撮る")


class Workflow(BaseModel):
    """順序付きステップ列と変数・設定をまとめたワークフロー文書のルートモデル。"""

    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    steps: list[Step]
    variables: dict[str, Any] = Field(default_factory=dict)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    createdBy: Optional[str] = None

    @model_validator(mode="after")
    def check_step_references(self) -> "Workflow":
        """ステップ ID の一意性と、分岐 / ループの参照先の存在を検証する。"""
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"ステップ ID が重複しています: {step.id!r}")
            seen.add(step.id)
        for step in self.steps:
            if isinstance(step, (ConditionalStep, LoopStep)):
                for ref in step.referenced_ids:
                    if ref == step.id:
                        raise ValueError(f"ステップ {step.id!r} が自身を参照しています")
                    if ref not in seen:
                        raise ValueError(
                            f"ステップ {step.id!r} が存在しないステップ {ref!r} を参照しています"
                        )
        return self

    def step_by_id(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def replace_step(self, step: Step) -> "Workflow":
        """同じ id のステップを置き換えた新しい Workflow を返す。

        Raises:
            KeyError: 該当する id のステップが存在しない場合
        """
        self.step_by_id(step.id)
        steps = [step if s.id == step.id else s for s in self.steps]
        return Workflow.model_validate({**self.model_dump(), "steps": steps})

    def owned_step_ids(self) -> set[str]:
        """分岐 / ループから参照され、直線実行ではスキップされるステップ ID。"""
        owned: set[str] = set()
        for step in self.steps:
            if isinstance(step, (ConditionalStep, LoopStep)):
                owned.update(step.referenced_ids)
        return owned

    def context_for(self, step: Step) -> dict[str, Step]:
        """制御ステップが実行時に必要とする参照先ステップ（推移閉包）を返す。"""
        context: dict[str, Step] = {}
        pending = list(getattr(step, "referenced_ids", []))
        while pending:
            ref = pending.pop()
            if ref in context:
                continue
            target = self.step_by_id(ref)
            context[ref] = target
            pending.extend(getattr(target, "referenced_ids", []))
        return context


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

RunStatus = Literal["pending", "running", "paused", "completed", "failed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

LogLevel = Literal["info", "warning", "error", "success"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunLogEntry(BaseModel):
    """Run ログの1行。追記のみで変更しない。"""

    model_config = ConfigDict(frozen=True)

    stepId: str
    timestamp: datetime = Field(default_factory=_utcnow)
    level: LogLevel
    message: str
    screenshot: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class Run(BaseModel):
    """ワークフローの1回の実行。

    所有する ReplayController だけが変更する。終端状態
    （completed / failed / cancelled）に入った後は変更しない。
    """

    id: str
    workflowId: str
    status: RunStatus = "pending"
    currentStepIndex: int = Field(default=0, ge=0)
    variables: dict[str, Any] = Field(default_factory=dict)
    logs: list[RunLogEntry] = Field(default_factory=list)
    error: Optional[str] = None
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# 記録イベント
# ---------------------------------------------------------------------------

RecordedEventType = Literal[
    "click", "input", "keypress", "scroll", "navigation", "change", "submit"
]


class EventTarget(BaseModel):
    """記録イベントの対象要素の情報。"""

    locator: Locator
    tagName: str
    textContent: str = ""
    value: str = ""
    attributes: dict[str, str] = Field(default_factory=dict)


class Viewport(BaseModel):
    width: int
    height: int


class RecordedEvent(BaseModel):
    """記録セッション中に観測された1つの操作。"""

    type: RecordedEventType
    timestamp: int = Field(..., description="エポックミリ秒")
    target: EventTarget
    data: dict[str, Any] = Field(default_factory=dict)
    url: str = ""
    viewport: Optional[Viewport] = None
    sessionId: Optional[str] = None


class RecordingResult(BaseModel):
    """記録停止時に返される成果物。"""

    sessionId: str
    events: list[RecordedEvent] = Field(default_factory=list)
    eventCount: int = 0
