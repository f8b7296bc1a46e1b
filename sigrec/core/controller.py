"""
再生コントローラ — Run の状態機械

Run の状態（現在のインデックス、一時停止、監督モード）を所有し、トランスポート越しの
ドライバにステップを1つずつ実行させる。失敗時のリトライ / 一時停止 / 失敗の判断は
このクラスだけが行う。

状態遷移:
  idle → running → {paused, completed, failed, cancelled}
  paused → running（resume / next_step）
  任意の非終端状態 → cancelled（cancel）

主な機能:
  - start / resume / next_step / pause / cancel / get_state
  - receive: ドライバからの応答の受け取り（古い応答は破棄）
  - on: status_change / log / step_completed / approval_needed / "*" のリスナー登録
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel

from ..dsl.schema import LogLevel, Run, RunLogEntry, RunStatus, Step, Workflow
from ..transport.channel import MessageLink
from ..transport.messages import (
    ControlMessage,
    ExecuteStep,
    StateReport,
    StepCompleted,
    StepFailed,
)
from .errors import InvalidTransitionError, ProtocolViolationError, is_retryable
from .store import InMemoryRunStore, RunStore

logger = logging.getLogger(__name__)


# 許可される状態遷移（cancelled への遷移は cancel() だけが行う）
_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"running", "cancelled"}),
    "running": frozenset({"paused", "completed", "failed", "cancelled"}),
    "paused": frozenset({"running", "cancelled"}),
}

EVENT_TYPES: tuple[str, ...] = (
    "status_change", "log", "step_completed", "approval_needed", "*",
)

Listener = Callable[[dict[str, Any]], Any]


@dataclass
class RunState:
    """get_state() が返す状態のスナップショット。

    Attributes:
        status: Run の状態（Run がなければ "idle"）
        run_id: Run ID
        current_step_index: 次に実行するステップのインデックス
        step_count: ワークフローのステップ数
        supervised: 監督モードか
        in_flight_index: ドライバで実行中のステップのインデックス
    """

    status: str
    run_id: Optional[str] = None
    current_step_index: int = 0
    step_count: int = 0
    supervised: bool = False
    in_flight_index: Optional[int] = None


@dataclass
class _PendingStep:
    run_id: str
    index: int
    future: asyncio.Future


# ---------------------------------------------------------------------------
# ReplayController 本体
# ---------------------------------------------------------------------------

class ReplayController:
    """ワークフローの再生を制御する状態機械。

    start / resume / next_step は Run が一時停止するか終端状態になるまで待ってから戻る。
    cancel / pause は別のタスクから呼び出せる。

    使用例::

        channel = InProcessChannel()
        controller = ReplayController(workflow, channel.controller_endpoint)
        asyncio.create_task(controller.listen())
        run = await controller.start()
    """

    def __init__(
        self,
        workflow: Workflow,
        link: MessageLink,
        store: Optional[RunStore] = None,
    ) -> None:
        """ReplayController を初期化する。

        Args:
            workflow: 再生するワークフロー
            link: ドライバとの送受信口
            store: Run の永続化先（None でメモリ上に保持）
        """
        self._workflow = workflow
        self._link = link
        self._store: RunStore = store if store is not None else InMemoryRunStore()
        self._run: Optional[Run] = None
        self._pending: Optional[_PendingStep] = None
        self._pause_requested = False
        self._listeners: dict[str, list[Listener]] = {}
        self._owned_ids = workflow.owned_step_ids()
        self.last_state_report: Optional[StateReport] = None

    # -------------------------------------------------------------------
    # プロパティ
    # -------------------------------------------------------------------

    @property
    def run(self) -> Optional[Run]:
        """現在（または直前）の Run を返す。"""
        return self._run

    @property
    def workflow(self) -> Workflow:
        return self._workflow

    @property
    def status(self) -> str:
        """Run の状態。Run がなければ "idle"。"""
        return self._run.status if self._run is not None else "idle"

    # -------------------------------------------------------------------
    # リスナー
    # -------------------------------------------------------------------

    def on(self, event_type: str, callback: Listener) -> Callable[[], None]:
        """イベントリスナーを登録し、登録解除用の関数を返す。

        Args:
            event_type: status_change / log / step_completed / approval_needed / "*"
            callback: イベント辞書を受け取る関数
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"未知のイベント種別です: {event_type}")
        self._listeners.setdefault(event_type, []).append(callback)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

        return _unsubscribe

    def _emit(self, event_type: str, payload: dict[str, Any]) -> None:
        event = {"type": event_type, **payload}
        for callback in [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("イベントリスナーでエラーが発生しました (%s): %s", event_type, exc)

    # -------------------------------------------------------------------
    # 操作
    # -------------------------------------------------------------------

    async def start(self, variables: Optional[dict[str, Any]] = None) -> Run:
        """新しい Run をインデックス 0 から開始する。

        Args:
            variables: ワークフロー変数を上書きする初期値

        Returns:
            一時停止または終端状態に達した時点の Run

        Raises:
            InvalidTransitionError: 実行中または一時停止中の Run がある場合
        """
        if self._run is not None and not self._run.is_terminal:
            raise InvalidTransitionError(
                f"Run {self._run.id} が {self._run.status} 状態のため開始できません"
            )

        bag = {**self._workflow.variables, **(variables or {})}
        workflow_id = self._workflow.id or self._workflow.name
        try:
            run_id = await self._store.create_run(workflow_id, dict(bag))
        except Exception as exc:  # noqa: BLE001
            run_id = uuid.uuid4().hex
            logger.warning("Run の作成を永続化できませんでした（続行します）: %s", exc)

        self._run = Run(id=run_id, workflowId=workflow_id, variables=dict(bag))
        self._pause_requested = False
        logger.info(
            "Run %s を開始します: %s（%d ステップ）",
            run_id, self._workflow.name, len(self._workflow.steps),
        )
        await self._transition("running")
        await self._drive()
        return self._run

    async def resume(self) -> Run:
        """一時停止中の Run を現在のインデックスから再開する。

        監督モードでは「次のステップを承認」として働き、1ステップ実行後に再び一時停止する。

        Raises:
            InvalidTransitionError: Run が一時停止中でない場合
        """
        run = self._require_status("paused", "resume")
        self._pause_requested = False
        await self._transition("running")
        await self._send_control("resume")
        await self._drive()
        return run

    async def next_step(self) -> Run:
        """ステップを1つだけ実行し、直前の一時停止状態に戻す。

        Raises:
            InvalidTransitionError: Run が一時停止中でない場合
        """
        run = self._require_status("paused", "next_step")
        self._pause_requested = False
        await self._transition("running")
        await self._drive(single_step=True)
        return run

    async def pause(self) -> None:
        """オペレータによる一時停止。実行中のステップが完了した境界で効く。

        Raises:
            InvalidTransitionError: Run が実行中でも一時停止中でもない場合
        """
        run = self._run
        if run is None or run.status not in ("running", "paused"):
            raise InvalidTransitionError(f"{self.status} 状態では一時停止できません")
        if run.status == "paused":
            return
        self._pause_requested = True
        logger.info("Run %s: 一時停止を要求しました（現在のステップ完了後に停止）", run.id)
        await self._send_control("pause")

    async def cancel(self) -> Run:
        """Run を即座に cancelled にし、ドライバに停止を通知する。

        実行中のステップは中断しない。遅れて届いた結果は破棄する。

        Raises:
            InvalidTransitionError: Run がないか、すでに終端状態の場合
        """
        run = self._run
        if run is None or run.is_terminal:
            raise InvalidTransitionError(f"{self.status} 状態ではキャンセルできません")

        await self._transition("cancelled")
        pending = self._pending
        if pending is not None and not pending.future.done():
            pending.future.set_result(None)
        await self._send_control("stop")
        return run

    def get_state(self) -> RunState:
        """現在の状態のスナップショットを返す。"""
        run = self._run
        return RunState(
            status=self.status,
            run_id=run.id if run is not None else None,
            current_step_index=run.currentStepIndex if run is not None else 0,
            step_count=len(self._workflow.steps),
            supervised=self._workflow.settings.supervisedMode,
            in_flight_index=self._pending.index if self._pending is not None else None,
        )

    async def handle_control(self, message: ControlMessage) -> Union[Run, RunState, None]:
        """外部からの制御メッセージを対応する操作に振り分ける。"""
        if message.command == "pause":
            return await self.pause()
        if message.command == "resume":
            return await self.resume()
        if message.command == "stop":
            return await self.cancel()
        return self.get_state()

    # -------------------------------------------------------------------
    # トランスポート受信
    # -------------------------------------------------------------------

    def receive(self, reply: BaseModel) -> None:
        """ドライバからの応答を受け取る。

        実行中のステップと runId / index が一致しない応答は破棄する。
        """
        if isinstance(reply, StateReport):
            self.last_state_report = reply
            return
        try:
            self._accept(reply)
        except ProtocolViolationError as exc:
            logger.warning("古い応答を破棄しました: %s", exc)

    async def listen(self) -> None:
        """リンクが閉じられるまでドライバからの応答を受け取り続ける。"""
        while True:
            message = await self._link.receive()
            if message is None:
                break
            self.receive(message)

    def _accept(self, reply: BaseModel) -> None:
        if not isinstance(reply, (StepCompleted, StepFailed)):
            raise ProtocolViolationError(f"想定外のメッセージです: {type(reply).__name__}")
        pending = self._pending
        if pending is None or pending.future.done():
            raise ProtocolViolationError(
                f"実行中のステップがありません（受信: run={reply.runId}, index={reply.index}）"
            )
        if reply.runId != pending.run_id or reply.index != pending.index:
            raise ProtocolViolationError(
                f"実行中のステップ（run={pending.run_id}, index={pending.index}）と一致しません"
                f"（受信: run={reply.runId}, index={reply.index}）"
            )
        pending.future.set_result(reply)

    # -------------------------------------------------------------------
    # 実行ループ
    # -------------------------------------------------------------------

    async def _drive(self, single_step: bool = False) -> None:
        """running の間、ステップを順に実行する。"""
        run = self._run
        steps = self._workflow.steps
        settings = self._workflow.settings

        while run.status == "running":
            index = run.currentStepIndex
            if index >= len(steps):
                await self._transition("completed")
                break

            step = steps[index]
            if step.id in self._owned_ids:
                await self._log(
                    step.id, "info",
                    f"ステップ {step.id} は分岐 / ループから実行されるためスキップします",
                )
                await self._advance()
                continue

            succeeded = await self._run_step(step, index)
            if run.status != "running":
                return

            if not succeeded:
                if settings.pauseOnError:
                    await self._transition("paused")
                else:
                    await self._transition("failed")
                return

            await self._advance()
            if run.status != "running":
                return
            if run.currentStepIndex >= len(steps):
                await self._transition("completed")
                return

            if settings.supervisedMode:
                await self._transition("paused")
                next_step = steps[run.currentStepIndex]
                self._emit("approval_needed", {
                    "runId": run.id,
                    "index": run.currentStepIndex,
                    "stepId": next_step.id,
                    "description": next_step.description,
                })
                return
            if single_step or self._pause_requested:
                self._pause_requested = False
                await self._transition("paused")
                return

    async def _run_step(self, step: Step, index: int) -> bool:
        """ステップを実行する（maxRetries 回までリトライ）。成功したら True。"""
        run = self._run
        attempts = self._workflow.settings.maxRetries + 1
        last_error = ""

        for attempt in range(1, attempts + 1):
            if run.is_terminal:
                return False
            reply = await self._dispatch(step, index)
            if reply is None or run.is_terminal:
                return False

            if isinstance(reply, StepCompleted):
                run.variables.update(reply.variables)
                await self._log(
                    step.id, "success",
                    f"ステップ {index + 1} ({step.type}) が完了しました",
                    screenshot=reply.screenshot,
                    metadata={"attempt": attempt, "index": index},
                )
                self._emit("step_completed", {
                    "runId": run.id, "index": index, "stepId": step.id,
                })
                return True

            last_error = f"[{reply.errorType}] {reply.error}"
            await self._log(
                step.id, "error",
                f"ステップ {index + 1} ({step.type}) が失敗しました"
                f"（試行 {attempt}/{attempts}）: {reply.error}",
                screenshot=reply.screenshot,
                metadata={"attempt": attempt, "index": index, "errorType": reply.errorType},
            )
            if not is_retryable(reply.errorType):
                break

        run.error = last_error
        return False

    async def _dispatch(self, step: Step, index: int) -> Optional[BaseModel]:
        """実行依頼を送り、応答を待つ。キャンセルされた場合は None。"""
        run = self._run
        if run.is_terminal:
            return None
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending = _PendingStep(run_id=run.id, index=index, future=future)
        try:
            await self._link.send(ExecuteStep(
                runId=run.id,
                index=index,
                stepId=step.id,
                step=step,
                contextSteps=self._workflow.context_for(step),
                variables=dict(run.variables),
                screenshotOnError=self._workflow.settings.screenshotOnError,
            ))
            return await future
        finally:
            self._pending = None

    async def _advance(self) -> None:
        run = self._run
        if run.is_terminal:
            return
        run.currentStepIndex = min(run.currentStepIndex + 1, len(self._workflow.steps))
        await self._persist(
            "update_run_status", run.id, run.status, current_step_index=run.currentStepIndex
        )

    # -------------------------------------------------------------------
    # 状態遷移・ログ・永続化
    # -------------------------------------------------------------------

    async def _transition(self, status: RunStatus) -> None:
        run = self._run
        previous = run.status
        if status not in _TRANSITIONS.get(previous, frozenset()):
            raise InvalidTransitionError(f"{previous} から {status} へは遷移できません")

        run.status = status
        now = datetime.now(timezone.utc)
        if status == "running" and run.startedAt is None:
            run.startedAt = now
        if run.is_terminal:
            run.completedAt = now
        logger.info("Run %s: %s → %s", run.id, previous, status)

        if status == "paused":
            await self._persist("pause_run", run.id)
        elif status == "running" and previous == "paused":
            await self._persist("resume_run", run.id)
        else:
            await self._persist(
                "update_run_status", run.id, status,
                current_step_index=run.currentStepIndex, error=run.error,
            )
        self._emit("status_change", {
            "runId": run.id,
            "status": status,
            "previous": previous,
            "currentStepIndex": run.currentStepIndex,
        })

    async def _log(
        self,
        step_id: str,
        level: LogLevel,
        message: str,
        screenshot: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        run = self._run
        entry = RunLogEntry(
            stepId=step_id,
            level=level,
            message=message,
            screenshot=screenshot,
            metadata=metadata or {},
        )
        run.logs.append(entry)
        if level == "error":
            logger.error("Run %s: %s", run.id, message)
        else:
            logger.info("Run %s: %s", run.id, message)
        await self._persist(
            "append_log", run.id, step_id, level, message,
            screenshot=screenshot, metadata=entry.metadata,
        )
        self._emit("log", {"runId": run.id, "entry": entry})

    async def _persist(self, action: str, *args: Any, **kwargs: Any) -> None:
        """ストアを呼び出す。失敗は警告ログに留め、再生の進行は止めない。"""
        try:
            await getattr(self._store, action)(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Run の永続化に失敗しました (%s): %s", action, exc)

    async def _send_control(self, command: str) -> None:
        run = self._run
        try:
            await self._link.send(ControlMessage(runId=run.id, command=command))
        except Exception as exc:  # noqa: BLE001
            logger.warning("制御メッセージ %s を送信できませんでした: %s", command, exc)

    def _require_status(self, status: str, operation: str) -> Run:
        run = self._run
        if run is None or run.status != status:
            raise InvalidTransitionError(f"{self.status} 状態では {operation} できません")
        return run
