"""
ReplayController のユニットテスト

ドライバの代わりに、実行依頼に対して台本どおりの応答を返す模擬リンクを使う。
応答は loop.call_soon で receive() に渡し、実際のトランスポートと同じく非同期に届ける。

テスト対象:
  - 無人モードの完走、監督モードのステップごとの一時停止と approval_needed
  - リトライ（maxRetries）、pauseOnError による paused / failed
  - cancel の終端性と遅れて届いた応答の破棄
  - resume / next_step のインデックス維持、古い応答の破棄
  - 分岐 / ループ所有ステップのスキップ、変数バッグの更新
  - ストア失敗時のベストエフォート動作、リスナー
  - Run 全体での currentStepIndex の単調増加
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from sigrec.core.controller import ReplayController
from sigrec.core.errors import InvalidTransitionError
from sigrec.core.store import InMemoryRunStore
from sigrec.dsl.parser import parse_workflow
from sigrec.dsl.schema import Workflow
from sigrec.transport.messages import (
    ControlMessage,
    ExecuteStep,
    StateReport,
    StepCompleted,
    StepFailed,
)


# ---------------------------------------------------------------------------
# ヘルパー
# ---------------------------------------------------------------------------

Responder = Callable[[ExecuteStep], Any]


def ok(message: ExecuteStep, **variables: Any) -> StepCompleted:
    return StepCompleted(runId=message.runId, index=message.index, variables=variables)


def fail(message: ExecuteStep, error_type: str = "TargetNotFound") -> StepFailed:
    return StepFailed(
        runId=message.runId, index=message.index, errorType=error_type, error="boom",
    )


class ScriptedLink:
    """実行依頼ごとに responder を呼び、その戻り値を controller.receive に渡すリンク。

    responder が None を返した場合は応答しない（実行中のまま）。
    リストを返した場合は順に全て届ける。
    """

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.controller: Optional[ReplayController] = None
        self.sent: list[Any] = []

    async def send(self, message: Any) -> None:
        self.sent.append(message)
        if not isinstance(message, ExecuteStep):
            return
        replies = self.responder(message)
        if replies is None:
            return
        if not isinstance(replies, list):
            replies = [replies]
        loop = asyncio.get_running_loop()
        for reply in replies:
            loop.call_soon(self.controller.receive, reply)

    async def receive(self) -> None:
        return None

    @property
    def executed(self) -> list[int]:
        return [m.index for m in self.sent if isinstance(m, ExecuteStep)]

    @property
    def commands(self) -> list[str]:
        return [m.command for m in self.sent if isinstance(m, ControlMessage)]


def make_workflow(
    count: int = 3,
    supervised: bool = False,
    pause_on_error: bool = True,
    max_retries: int = 0,
    extra_steps: Optional[list[dict]] = None,
    variables: Optional[dict] = None,
) -> Workflow:
    steps = [
        {"id": f"s{i + 1}", "type": "wait", "waitType": "time", "value": 1}
        for i in range(count)
    ]
    return parse_workflow({
        "name": "テストワークフロー",
        "variables": variables or {},
        "settings": {
            "supervisedMode": supervised,
            "pauseOnError": pause_on_error,
            "maxRetries": max_retries,
            "screenshotOnError": False,
        },
        "steps": steps + (extra_steps or []),
    })


def make_controller(
    workflow: Workflow, responder: Responder, store: Any = None
) -> tuple[ReplayController, ScriptedLink]:
    link = ScriptedLink(responder)
    controller = ReplayController(workflow, link, store)
    link.controller = controller
    return controller, link


async def wait_for_in_flight(controller: ReplayController) -> None:
    for _ in range(100):
        if controller.get_state().in_flight_index is not None:
            return
        await asyncio.sleep(0)
    raise AssertionError("ステップが実行中になりませんでした")


def _levels(controller: ReplayController) -> list[str]:
    return [entry.level for entry in controller.run.logs]


# ===========================================================================
# 無人モード
# ===========================================================================

class TestUnattended:
    """supervisedMode=false の再生テスト。"""

    def test_runs_to_completion(self):
        controller, link = make_controller(make_workflow(3), ok)

        run = asyncio.run(controller.start())

        assert run.status == "completed"
        assert run.currentStepIndex == 3
        assert link.executed == [0, 1, 2]
        assert _levels(controller) == ["success"] * 3
        assert run.startedAt is not None
        assert run.completedAt is not None

    def test_start_begins_at_index_zero(self):
        controller, link = make_controller(make_workflow(2), ok)
        asyncio.run(controller.start())
        first = link.sent[0]
        assert isinstance(first, ExecuteStep)
        assert first.index == 0
        assert first.stepId == "s1"

    def test_empty_workflow_completes_immediately(self):
        controller, link = make_controller(make_workflow(0), ok)
        run = asyncio.run(controller.start())
        assert run.status == "completed"
        assert link.executed == []

    def test_status_change_events(self):
        controller, _link = make_controller(make_workflow(1), ok)
        statuses: list[str] = []
        controller.on("status_change", lambda e: statuses.append(e["status"]))

        asyncio.run(controller.start())

        assert statuses == ["running", "completed"]


# ===========================================================================
# 失敗ポリシー
# ===========================================================================

class TestFailurePolicy:
    """リトライと pauseOnError のテスト。"""

    def test_pause_on_error_stops_at_failed_step(self):
        """2番目のステップが失敗すると index 1 で一時停止し、エラーログは1件。"""
        def responder(message: ExecuteStep):
            return fail(message) if message.index == 1 else ok(message)

        controller, link = make_controller(make_workflow(3, max_retries=0), responder)
        run = asyncio.run(controller.start())

        assert run.status == "paused"
        assert run.currentStepIndex == 1
        errors = [e for e in run.logs if e.level == "error"]
        assert len(errors) == 1
        assert errors[0].stepId == "s2"
        assert errors[0].metadata["errorType"] == "TargetNotFound"
        assert link.executed == [0, 1]

    def test_failed_when_pause_on_error_disabled(self):
        controller, _link = make_controller(
            make_workflow(2, pause_on_error=False), lambda m: fail(m, "Timeout"),
        )
        run = asyncio.run(controller.start())

        assert run.status == "failed"
        assert run.currentStepIndex == 0
        assert "Timeout" in run.error
        assert run.completedAt is not None

    def test_retry_then_success(self):
        """2回 Timeout の後に成功すると、エラー2件・成功1件で先へ進む。"""
        attempts = {"count": 0}

        def responder(message: ExecuteStep):
            attempts["count"] += 1
            return fail(message, "Timeout") if attempts["count"] <= 2 else ok(message)

        controller, link = make_controller(make_workflow(1, max_retries=2), responder)
        run = asyncio.run(controller.start())

        assert run.status == "completed"
        assert _levels(controller) == ["error", "error", "success"]
        assert link.executed == [0, 0, 0]
        assert [e.metadata["attempt"] for e in run.logs] == [1, 2, 3]

    def test_retries_exhausted(self):
        controller, link = make_controller(
            make_workflow(2, max_retries=1), lambda m: fail(m, "NavigationFailed"),
        )
        run = asyncio.run(controller.start())

        assert run.status == "paused"
        assert _levels(controller) == ["error", "error"]
        assert link.executed == [0, 0]

    def test_step_error_is_not_retried(self):
        controller, link = make_controller(
            make_workflow(1, max_retries=3), lambda m: fail(m, "StepError"),
        )
        run = asyncio.run(controller.start())

        assert run.status == "paused"
        assert link.executed == [0]

    def test_unknown_error_type_is_not_retried(self):
        controller, link = make_controller(
            make_workflow(1, max_retries=3), lambda m: fail(m, "Mystery"),
        )
        asyncio.run(controller.start())
        assert link.executed == [0]

    def test_resume_retries_failed_step_from_same_index(self):
        state = {"broken": True}

        def responder(message: ExecuteStep):
            if message.index == 1 and state["broken"]:
                return fail(message)
            return ok(message)

        controller, link = make_controller(make_workflow(3), responder)

        async def scenario():
            paused = await controller.start()
            assert paused.currentStepIndex == 1
            state["broken"] = False
            return await controller.resume()

        run = asyncio.run(scenario())

        assert run.status == "completed"
        assert link.executed == [0, 1, 1, 2]
        assert "resume" in link.commands


# ===========================================================================
# 監督モード
# ===========================================================================

class TestSupervised:
    """supervisedMode=true の再生テスト。"""

    def test_pauses_after_each_successful_step(self):
        controller, link = make_controller(make_workflow(3, supervised=True), ok)
        approvals: list[dict] = []
        controller.on("approval_needed", approvals.append)

        async def scenario():
            first = await controller.start()
            assert first.status == "paused"
            assert first.currentStepIndex == 1
            second = await controller.next_step()
            assert second.status == "paused"
            assert second.currentStepIndex == 2
            return await controller.resume()

        run = asyncio.run(scenario())

        assert run.status == "completed"
        assert link.executed == [0, 1, 2]
        assert [a["index"] for a in approvals] == [1, 2]
        assert approvals[0]["stepId"] == "s2"

    def test_next_step_in_unattended_mode_runs_one_step(self):
        def responder(message: ExecuteStep):
            return fail(message) if message.index == 0 and len(link.executed) == 1 else ok(message)

        controller, link = make_controller(make_workflow(3), responder)

        async def scenario():
            await controller.start()
            return await controller.next_step()

        run = asyncio.run(scenario())

        assert run.status == "paused"
        assert run.currentStepIndex == 1
        assert link.executed == [0, 0]


# ===========================================================================
# ステップインデックスの単調性
# ===========================================================================

class TestStepIndexProgress:
    """Run 全体を通して currentStepIndex が減らず、ステップ数を超えないこと。"""

    def _observe(self, controller: ReplayController) -> list[int]:
        indices: list[int] = []
        controller.on("*", lambda _e: indices.append(controller.run.currentStepIndex))
        return indices

    def _assert_progress(self, indices: list[int], step_count: int) -> None:
        assert indices
        assert indices == sorted(indices)
        assert all(0 <= i <= step_count for i in indices)

    def test_supervised_run_with_failure_and_resume(self):
        failures = {"left": 2}

        def responder(message: ExecuteStep):
            if message.index == 2 and failures["left"]:
                failures["left"] -= 1
                return fail(message, "Timeout")
            return ok(message)

        controller, _link = make_controller(
            make_workflow(4, supervised=True, max_retries=0), responder,
        )
        indices = self._observe(controller)

        async def scenario():
            run = await controller.start()
            while run.status == "paused":
                run = await controller.resume()
            return run

        run = asyncio.run(scenario())

        assert run.status == "completed"
        self._assert_progress(indices, 4)
        assert indices[-1] == 4

    def test_owned_steps_skipped(self):
        workflow = make_workflow(2, extra_steps=[
            {"id": "branch", "type": "conditional",
             "condition": {"type": "variable_equals", "value": {"name": "x", "value": "1"}},
             "thenSteps": ["inner"]},
            {"id": "inner", "type": "wait", "waitType": "time", "value": 1},
        ])
        controller, _link = make_controller(workflow, ok)
        indices = self._observe(controller)

        run = asyncio.run(controller.start())

        assert run.status == "completed"
        self._assert_progress(indices, len(workflow.steps))
        assert indices[-1] == len(workflow.steps)


# ===========================================================================
# 一時停止・キャンセル
# ===========================================================================

class TestPauseAndCancel:
    """pause / cancel のテスト。"""

    def test_pause_takes_effect_at_step_boundary(self):
        controller, link = make_controller(
            make_workflow(3), lambda m: None if m.index == 0 else ok(m),
        )

        async def scenario():
            task = asyncio.create_task(controller.start())
            await wait_for_in_flight(controller)
            await controller.pause()
            assert controller.status == "running"
            controller.receive(StepCompleted(runId=controller.run.id, index=0))
            return await task

        run = asyncio.run(scenario())

        assert run.status == "paused"
        assert run.currentStepIndex == 1
        assert link.executed == [0]
        assert "pause" in link.commands

    def test_cancel_in_flight_step(self):
        controller, link = make_controller(make_workflow(3), lambda m: None)

        async def scenario():
            task = asyncio.create_task(controller.start())
            await wait_for_in_flight(controller)
            cancelled = await controller.cancel()
            result = await task
            controller.receive(StepCompleted(runId=cancelled.id, index=0))
            await asyncio.sleep(0)
            return cancelled, result

        cancelled, result = asyncio.run(scenario())

        assert cancelled.status == "cancelled"
        assert result.status == "cancelled"
        assert result.currentStepIndex == 0
        assert result.logs == []
        assert result.completedAt is not None
        assert link.executed == [0]
        assert link.commands == ["stop"]

    def test_cancel_paused_run(self):
        controller, _link = make_controller(make_workflow(2, supervised=True), ok)

        async def scenario():
            await controller.start()
            return await controller.cancel()

        assert asyncio.run(scenario()).status == "cancelled"

    def test_cancel_terminal_run_rejected(self):
        controller, _link = make_controller(make_workflow(1), ok)

        async def scenario():
            await controller.start()
            await controller.cancel()

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_cancel_before_start_rejected(self):
        controller, _link = make_controller(make_workflow(1), ok)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(controller.cancel())

    def test_cancel_between_retries_sends_no_further_attempt(self):
        """失敗ログの書き込み中にキャンセルされたら、次の試行は送らずに戻る。"""

        class CancellingStore(InMemoryRunStore):
            def __init__(self) -> None:
                super().__init__()
                self.controller: Optional[ReplayController] = None

            async def append_log(self, run_id, step_id, level, message, screenshot=None, metadata=None):
                await super().append_log(run_id, step_id, level, message, screenshot, metadata)
                if level == "error":
                    asyncio.get_running_loop().create_task(self.controller.cancel())
                    await asyncio.sleep(0)
                    await asyncio.sleep(0)

        stopped = {"value": False}

        def responder(message: ExecuteStep):
            return None if stopped["value"] else fail(message, "Timeout")

        store = CancellingStore()
        controller, link = make_controller(make_workflow(1, max_retries=2), responder, store)
        store.controller = controller
        controller.on("status_change", lambda e: stopped.update(value=e["status"] == "cancelled"))

        async def scenario():
            return await asyncio.wait_for(controller.start(), timeout=2)

        run = asyncio.run(scenario())

        assert run.status == "cancelled"
        assert link.executed == [0]
        assert link.commands == ["stop"]
        assert run.error is None


# ===========================================================================
# 状態遷移の検査
# ===========================================================================

class TestTransitions:
    def test_resume_requires_paused(self):
        controller, _link = make_controller(make_workflow(1), ok)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(controller.resume())

    def test_next_step_requires_paused(self):
        controller, _link = make_controller(make_workflow(1), ok)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(controller.next_step())

    def test_pause_requires_active_run(self):
        controller, _link = make_controller(make_workflow(1), ok)
        with pytest.raises(InvalidTransitionError):
            asyncio.run(controller.pause())

    def test_start_while_paused_rejected(self):
        controller, _link = make_controller(make_workflow(2, supervised=True), ok)

        async def scenario():
            await controller.start()
            await controller.start()

        with pytest.raises(InvalidTransitionError):
            asyncio.run(scenario())

    def test_restart_after_terminal_creates_new_run(self):
        controller, link = make_controller(make_workflow(2), ok)

        async def scenario():
            first = await controller.start()
            second = await controller.start()
            return first, second

        first, second = asyncio.run(scenario())

        assert first.id != second.id
        assert second.status == "completed"
        assert link.executed == [0, 1, 0, 1]

    def test_get_state(self):
        controller, _link = make_controller(make_workflow(2, supervised=True), ok)
        assert controller.get_state().status == "idle"

        asyncio.run(controller.start())
        state = controller.get_state()

        assert state.status == "paused"
        assert state.current_step_index == 1
        assert state.step_count == 2
        assert state.supervised is True
        assert state.in_flight_index is None

    def test_handle_control_get_state(self):
        controller, _link = make_controller(make_workflow(1), ok)
        state = asyncio.run(controller.handle_control(ControlMessage(runId="x", command="getState")))
        assert state.status == "idle"


# ===========================================================================
# 応答の相関
# ===========================================================================

class TestReplyCorrelation:
    """runId / index が一致しない応答の破棄テスト。"""

    def test_reply_without_in_flight_step_ignored(self):
        controller, _link = make_controller(make_workflow(1), ok)
        controller.receive(StepCompleted(runId="nope", index=0))
        assert controller.run is None

    def test_mismatched_replies_discarded(self):
        def responder(message: ExecuteStep):
            return [
                StepFailed(runId="other-run", index=message.index, errorType="Timeout", error="x"),
                StepFailed(runId=message.runId, index=message.index + 5, errorType="Timeout", error="x"),
                ok(message),
            ]

        controller, _link = make_controller(make_workflow(2), responder)
        run = asyncio.run(controller.start())

        assert run.status == "completed"
        assert _levels(controller) == ["success", "success"]

    def test_state_report_recorded(self):
        controller, _link = make_controller(make_workflow(1), ok)
        report = StateReport(runId="r1", busy=True, currentIndex=0)
        controller.receive(report)
        assert controller.last_state_report == report


# ===========================================================================
# 変数・制御ステップ
# ===========================================================================

class TestVariablesAndControlSteps:
    def test_initial_variables_merge_and_updates(self):
        workflow = make_workflow(2, variables={"user": "alice", "mode": "basic"})

        def responder(message: ExecuteStep):
            if message.index == 0:
                return ok(message, title="Dashboard")
            return ok(message)

        controller, link = make_controller(workflow, responder)
        run = asyncio.run(controller.start({"mode": "admin"}))

        assert run.variables == {"user": "alice", "mode": "admin", "title": "Dashboard"}
        executes = [m for m in link.sent if isinstance(m, ExecuteStep)]
        assert executes[0].variables == {"user": "alice", "mode": "admin"}
        assert executes[1].variables["title"] == "Dashboard"
        assert workflow.variables == {"user": "alice", "mode": "basic"}

    def test_owned_steps_skipped_and_sent_as_context(self):
        workflow = make_workflow(2, extra_steps=[
            {"id": "repeat", "type": "loop", "iterations": 2, "steps": ["s2"]},
        ])
        controller, link = make_controller(workflow, ok)

        run = asyncio.run(controller.start())

        assert run.status == "completed"
        assert link.executed == [0, 2]
        loop_message = [m for m in link.sent if isinstance(m, ExecuteStep)][1]
        assert set(loop_message.contextSteps) == {"s2"}
        skipped = [e for e in run.logs if e.level == "info"]
        assert [e.stepId for e in skipped] == ["s2"]


# ===========================================================================
# ストア・リスナー
# ===========================================================================

class TestStoreAndListeners:
    def test_in_memory_store_mirrors_run(self):
        store = InMemoryRunStore()
        controller, _link = make_controller(make_workflow(2), ok, store)

        run = asyncio.run(controller.start())
        stored = store.get(run.id)

        assert stored.status == "completed"
        assert stored.currentStepIndex == 2
        assert [e.level for e in stored.logs] == ["success", "success"]

    def test_store_failures_do_not_stop_replay(self):
        store = MagicMock()
        for name in ("create_run", "update_run_status", "append_log", "pause_run", "resume_run"):
            setattr(store, name, AsyncMock(side_effect=OSError("disk full")))
        controller, _link = make_controller(make_workflow(2), ok, store)

        run = asyncio.run(controller.start())

        assert run.status == "completed"
        assert run.id
        assert len(run.logs) == 2
        store.append_log.assert_awaited()

    def test_wildcard_listener_and_unsubscribe(self):
        controller, _link = make_controller(make_workflow(1), ok)
        seen: list[str] = []
        unsubscribe = controller.on("*", lambda e: seen.append(e["type"]))

        asyncio.run(controller.start())
        assert "status_change" in seen
        assert "log" in seen
        assert "step_completed" in seen

        unsubscribe()
        seen.clear()
        asyncio.run(controller.start())
        assert seen == []

    def test_listener_errors_are_contained(self):
        controller, _link = make_controller(make_workflow(1), ok)

        def broken(_event):
            raise RuntimeError("listener bug")

        controller.on("log", broken)
        assert asyncio.run(controller.start()).status == "completed"

    def test_unknown_event_type_rejected(self):
        controller, _link = make_controller(make_workflow(1), ok)
        with pytest.raises(ValueError):
            controller.on("finished", lambda e: None)
