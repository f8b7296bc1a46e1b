"""
ドライバ — 実行依頼を受けてステップ実行器を動かし、結果を返信する

ドライバは Run の状態を持たない。Run ごとに同時に1ステップだけ実行し、
実行中に届いた2つ目の実行依頼は ProtocolViolationError としてログに記録して破棄する。
stop を受けた Run の実行依頼は無視する。実行中のステップは中断せず、結果の返信だけを止める。
"""

from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel

from ..core.errors import ProtocolViolationError
from ..core.executor import StepExecutor
from .channel import MessageLink
from .messages import ControlMessage, ExecuteStep, StateReport, StepCompleted, StepFailed

logger = logging.getLogger(__name__)


class Driver:
    """実行依頼を受け取り、StepExecutor で実行して結果を返信する。"""

    def __init__(self, executor: StepExecutor, link: MessageLink) -> None:
        """Driver を初期化する。

        Args:
            executor: ステップ実行器
            link: コントローラとの送受信口
        """
        self._executor = executor
        self._link = link
        self._in_flight: dict[str, asyncio.Task] = {}
        self._latest_index: dict[str, int] = {}
        self._stopped: set[str] = set()

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def serve(self) -> None:
        """リンクが閉じられるまでメッセージを処理する。"""
        logger.info("ドライバを開始しました")
        try:
            while True:
                message = await self._link.receive()
                if message is None:
                    break
                await self.handle(message)
        finally:
            for task in self._in_flight.values():
                task.cancel()
            logger.info("ドライバを停止しました")

    async def handle(self, message: BaseModel) -> None:
        """1メッセージを処理する。"""
        if isinstance(message, ExecuteStep):
            try:
                self._dispatch(message)
            except ProtocolViolationError as exc:
                logger.warning("実行依頼を破棄しました: %s", exc)
        elif isinstance(message, ControlMessage):
            await self._control(message)
        else:
            logger.warning("未知のメッセージを破棄しました: %r", message)

    def is_busy(self, run_id: str) -> bool:
        task = self._in_flight.get(run_id)
        return task is not None and not task.done()

    # -------------------------------------------------------------------
    # 内部メソッド
    # -------------------------------------------------------------------

    def _dispatch(self, message: ExecuteStep) -> None:
        if message.runId in self._stopped:
            logger.info("停止済みの Run %s の実行依頼を無視します", message.runId)
            return
        if self.is_busy(message.runId):
            raise ProtocolViolationError(
                f"Run {message.runId} はステップ {self._latest_index.get(message.runId)} を実行中です"
                f"（受信: index={message.index}）"
            )
        self._latest_index[message.runId] = message.index
        self._in_flight[message.runId] = asyncio.create_task(self._execute(message))

    async def _execute(self, message: ExecuteStep) -> None:
        outcome = await self._executor.execute(
            message.step,
            message.variables,
            context_steps=message.contextSteps,
            screenshot_on_error=message.screenshotOnError,
        )

        if message.runId in self._stopped:
            logger.info("停止済みの Run %s の実行結果は返信しません", message.runId)
            self._forget(message.runId)
            return
        if self._latest_index.get(message.runId) != message.index:
            return

        reply: BaseModel
        if outcome.ok:
            reply = StepCompleted(
                runId=message.runId,
                index=message.index,
                variables=outcome.variables,
                screenshot=outcome.screenshot,
            )
        else:
            reply = StepFailed(
                runId=message.runId,
                index=message.index,
                errorType=outcome.error_type or "StepError",
                error=outcome.error or "",
                screenshot=outcome.screenshot,
            )
        await self._link.send(reply)

    async def _control(self, message: ControlMessage) -> None:
        run_id = message.runId
        if message.command == "stop":
            self._stopped.add(run_id)
            if self.is_busy(run_id):
                # 実行中のステップは最後まで実行させ、結果だけを破棄する
                logger.info("Run %s を停止しました（実行中のステップは完了を待ちます）", run_id)
            else:
                self._forget(run_id)
                logger.info("Run %s を停止しました", run_id)
        elif message.command == "getState":
            await self._link.send(StateReport(
                runId=run_id,
                busy=self.is_busy(run_id),
                stopped=run_id in self._stopped,
                currentIndex=self._latest_index.get(run_id),
            ))
        else:
            logger.debug("Run %s: %s を受信しました", run_id, message.command)

    def _forget(self, run_id: str) -> None:
        """停止済み Run の実行記録を破棄する（停止済みの印だけ残す）。"""
        self._in_flight.pop(run_id, None)
        self._latest_index.pop(run_id, None)
