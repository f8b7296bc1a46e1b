"""
トランスポートメッセージ — コントローラとドライバ間でやり取りするメッセージ

すべて Pydantic v2 モデルで定義し、JSON 互換の構造値として送受信できる。
コントローラ → ドライバ: ExecuteStep / ControlMessage
ドライバ → コントローラ: StepCompleted / StepFailed / StateReport

各メッセージは runId と index で相関付けられ、実行中のステップと一致しない
応答は受信側で破棄される。
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from ..dsl.parser import parse_step, serialize_step
from ..dsl.schema import Step


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    runId: str


# ---------------------------------------------------------------------------
# コントローラ → ドライバ
# ---------------------------------------------------------------------------

class ExecuteStep(_Message):
    """1ステップの実行依頼。

    Attributes:
        index: ワークフロー内のステップインデックス
        stepId: ステップ ID
        step: 実行するステップ
        contextSteps: 分岐 / ループが参照するステップ（id → Step）
        variables: 実行時点の Run 変数バッグ
        screenshotOnError: 失敗時にスクリーンショットを撮るか
    """

    kind: Literal["execute"] = "execute"
    index: int = Field(..., ge=0)
    stepId: str
    step: Any
    contextSteps: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    screenshotOnError: bool = True

    @field_validator("step", mode="before")
    @classmethod
    def parse_step_value(cls, v: Any) -> Step:
        return v if not isinstance(v, dict) else parse_step(v)

    @field_validator("contextSteps", mode="before")
    @classmethod
    def parse_context_steps(cls, v: Any) -> dict[str, Step]:
        if not isinstance(v, dict):
            return v
        return {k: parse_step(s) if isinstance(s, dict) else s for k, s in v.items()}

    def to_wire(self) -> dict[str, Any]:
        """JSON 互換の構造値に変換する。"""
        data = self.model_dump(mode="json", exclude={"step", "contextSteps"})
        data["step"] = serialize_step(self.step)
        data["contextSteps"] = {k: serialize_step(s) for k, s in self.contextSteps.items()}
        return data


class ControlMessage(_Message):
    """実行制御コマンド。

    pause / resume はドライバ側ではログに残すだけで実行には影響しない
    （一時停止はステップ境界でコントローラが行う）。stop は以降の実行依頼の拒否と
    実行中ステップの結果破棄、getState は StateReport の返信を要求する。
    """

    kind: Literal["control"] = "control"
    command: Literal["pause", "resume", "stop", "getState"]


# ---------------------------------------------------------------------------
# ドライバ → コントローラ
# ---------------------------------------------------------------------------

class StepCompleted(_Message):
    """ステップ成功の報告。variables は Run 変数バッグへの更新。"""

    kind: Literal["completed"] = "completed"
    index: int = Field(..., ge=0)
    variables: dict[str, Any] = Field(default_factory=dict)
    screenshot: Optional[str] = None


class StepFailed(_Message):
    """ステップ失敗の報告。errorType は失敗種別名。"""

    kind: Literal["failed"] = "failed"
    index: int = Field(..., ge=0)
    errorType: str
    error: str
    screenshot: Optional[str] = None


class StateReport(_Message):
    """getState への返信。"""

    kind: Literal["state"] = "state"
    busy: bool = False
    stopped: bool = False
    currentIndex: Optional[int] = None


StepReply = Union[StepCompleted, StepFailed]

DriverMessage = Annotated[
    Union[StepCompleted, StepFailed, StateReport],
    Field(discriminator="kind"),
]
"""ドライバからコントローラへ届くメッセージ（kind で判別）。"""

ControllerMessage = Annotated[
    Union[ExecuteStep, ControlMessage],
    Field(discriminator="kind"),
]
"""コントローラからドライバへ届くメッセージ（kind で判別）。"""

_DRIVER_ADAPTER: TypeAdapter = TypeAdapter(DriverMessage)
_CONTROLLER_ADAPTER: TypeAdapter = TypeAdapter(ControllerMessage)


def parse_driver_message(raw: dict[str, Any]) -> Union[StepCompleted, StepFailed, StateReport]:
    """構造値をドライバ発のメッセージに変換する。"""
    return _DRIVER_ADAPTER.validate_python(raw)


def parse_controller_message(raw: dict[str, Any]) -> Union[ExecuteStep, ControlMessage]:
    """構造値をコントローラ発のメッセージに変換する。"""
    return _CONTROLLER_ADAPTER.validate_python(raw)
