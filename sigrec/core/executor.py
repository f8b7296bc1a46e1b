"""
ステップ実行器 — 1ステップを生きた環境に対して実行する

Run の状態には一切触れず、結果は StepOutcome として返す。失敗の扱い
（リトライ / 一時停止 / 失敗）は ReplayController が決定する。

主な機能:
  - LiveEnvironment: 実行対象環境の能力（Playwright 実装は sigrec.live）
  - StepOutcome: 実行結果（成功 / 型付き失敗、変数の更新、スクリーンショット）
  - StepExecutor: ステップ種別ごとの実行と、分岐 / ループの入れ子実行

実行前に ${vars.X} / ${env.X} を展開する。失敗は必ず型付き
（TargetNotFound / Timeout / NavigationFailed / StepError）で返す。
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

from ..dsl.schema import (
    DEFAULT_SCROLL_AMOUNT,
    ClickStep,
    Condition,
    ConditionalStep,
    ExtractStep,
    GotoStep,
    Locator,
    LoopStep,
    ScrollStep,
    Step,
    TypeStep,
    WaitStep,
)
from ..dsl.variables import VariableExpander
from .errors import StepError, StepExecutionError, StepTimeoutError, TargetNotFoundError
from .locator import LocatorResolver, describe_locator

logger = logging.getLogger(__name__)


# ハイライト表示の既定時間（ミリ秒）
DEFAULT_HIGHLIGHT_MS = 1000


# ---------------------------------------------------------------------------
# 環境の能力（プロトコル）
# ---------------------------------------------------------------------------

@runtime_checkable
class LiveEnvironment(Protocol):
    """ステップ実行器が操作する生きた環境。

    要素ハンドルは環境固有の不透明な値として扱う。
    """

    async def navigate(self, url: str, wait_until: str) -> None: ...

    async def wait_for_navigation(self) -> None: ...

    async def query_all(self, kind: str, value: str) -> list[Any]: ...

    async def scroll_into_view(self, handle: Any) -> None: ...

    async def highlight(self, handle: Any, duration_ms: int) -> None: ...

    async def click(self, handle: Any, click_count: int = 1) -> None: ...

    async def fill(self, handle: Any, text: str, clear_first: bool = True) -> None: ...

    async def press_enter(self, handle: Any) -> None: ...

    async def scroll_by(self, delta_y: int) -> None: ...

    async def scroll_to(self, position: str) -> None: ...

    async def read(self, handle: Any, attribute: Optional[str] = None) -> Optional[str]: ...

    async def page_text(self) -> str: ...

    async def screenshot(self) -> Optional[str]: ...


# ---------------------------------------------------------------------------
# 実行結果
# ---------------------------------------------------------------------------

@dataclass
class StepOutcome:
    """1ステップの実行結果。

    Attributes:
        ok: 成功したか
        variables: Run の変数バッグに反映する更新（extract の結果など）
        screenshot: スクリーンショット（パスまたは data URL）
        error_type: 失敗種別名（TargetNotFound / Timeout / NavigationFailed / StepError）
        error: エラーメッセージ
        duration_ms: 実行時間（ミリ秒）
    """

    ok: bool
    variables: dict[str, Any] = field(default_factory=dict)
    screenshot: Optional[str] = None
    error_type: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


# ---------------------------------------------------------------------------
# StepExecutor 本体
# ---------------------------------------------------------------------------

class StepExecutor:
    """ステップを生きた環境に対して実行する。

    使用例::

        executor = StepExecutor(environment, LocatorResolver())
        outcome = await executor.execute(step, run.variables)
    """

    def __init__(
        self,
        environment: LiveEnvironment,
        resolver: Optional[LocatorResolver] = None,
        poll_interval_ms: int = 100,
        highlight_ms: int = DEFAULT_HIGHLIGHT_MS,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        """StepExecutor を初期化する。

        Args:
            environment: 操作対象の環境
            resolver: ロケータ解決器（None で既定の LocatorResolver）
            poll_interval_ms: 要素出現待ちのポーリング間隔（ミリ秒）
            highlight_ms: 操作対象のハイライト表示時間（ミリ秒）
            env: ${env.X} の参照元（None で os.environ）
        """
        self._env_live = environment
        self._resolver = resolver or LocatorResolver()
        self._poll_interval = poll_interval_ms / 1000.0
        self._highlight_ms = highlight_ms
        self._env_vars = dict(os.environ if env is None else env)

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def execute(
        self,
        step: Step,
        variables: Mapping[str, Any],
        context_steps: Optional[Mapping[str, Step]] = None,
        screenshot_on_error: bool = False,
    ) -> StepOutcome:
        """ステップを実行し、結果を返す。例外は送出しない。

        Args:
            step: 実行するステップ
            variables: Run の変数バッグ（読み取りのみ）
            context_steps: 分岐 / ループが参照するステップ（id → Step）
            screenshot_on_error: 失敗時にスクリーンショットを添付するか

        Returns:
            実行結果
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        updates: dict[str, Any] = {}
        try:
            await self._run(step, dict(variables), dict(context_steps or {}), updates)
        except StepExecutionError as exc:
            return await self._failed(step, exc, screenshot_on_error, loop.time() - started)
        except Exception as exc:  # noqa: BLE001
            wrapped = StepError(f"ステップ実行中に予期しないエラーが発生しました: {exc}")
            wrapped.__cause__ = exc
            return await self._failed(step, wrapped, screenshot_on_error, loop.time() - started)

        outcome = StepOutcome(ok=True, variables=updates)
        if step.screenshot:
            outcome.screenshot = await self._safe_screenshot()
        outcome.duration_ms = (loop.time() - started) * 1000
        return outcome

    # -------------------------------------------------------------------
    # ディスパッチ
    # -------------------------------------------------------------------

    async def _run(
        self,
        step: Step,
        view: dict[str, Any],
        context: dict[str, Step],
        updates: dict[str, Any],
    ) -> None:
        """ステップ種別に応じて実行する。extract の結果は view と updates の両方に書く。"""
        step = VariableExpander(view, self._env_vars).expand_step(step)
        logger.debug("ステップ実行: %s (%s)", step.id, step.type)

        if isinstance(step, GotoStep):
            await self._goto(step)
        elif isinstance(step, ClickStep):
            await self._click(step)
        elif isinstance(step, TypeStep):
            await self._type(step)
        elif isinstance(step, WaitStep):
            await self._wait(step)
        elif isinstance(step, ScrollStep):
            await self._scroll(step)
        elif isinstance(step, ExtractStep):
            value = await self._extract(step)
            view[step.storeAs] = value
            updates[step.storeAs] = value
        elif isinstance(step, ConditionalStep):
            await self._conditional(step, view, context, updates)
        elif isinstance(step, LoopStep):
            await self._loop(step, view, context, updates)
        else:
            raise StepError(f"未知のステップ種別です: {type(step).__name__}")

    # -------------------------------------------------------------------
    # 種別ごとの実行
    # -------------------------------------------------------------------

    async def _goto(self, step: GotoStep) -> None:
        logger.info("goto: %s", step.url)
        await self._with_timeout(
            self._env_live.navigate(step.url, step.waitUntil),
            step.timeout,
            f"ページ遷移が {step.timeout}ms 以内に完了しませんでした: {step.url}",
        )

    async def _click(self, step: ClickStep) -> None:
        handle = await self._resolve_target(step.selector, step.timeout)
        await self._prepare(handle)

        navigation: Optional[asyncio.Future] = None
        if step.waitForNavigation:
            navigation = asyncio.ensure_future(self._env_live.wait_for_navigation())
        try:
            await self._env_live.click(handle, click_count=step.clickCount)
        except BaseException:
            if navigation is not None:
                navigation.cancel()
            raise
        if navigation is not None:
            await self._with_timeout(
                navigation,
                step.timeout,
                f"クリック後のページ遷移が {step.timeout}ms 以内に完了しませんでした",
            )

    async def _type(self, step: TypeStep) -> None:
        handle = await self._resolve_target(step.selector, step.timeout)
        await self._prepare(handle)
        await self._env_live.fill(handle, step.text, clear_first=step.clearFirst)
        if step.pressEnter:
            await self._env_live.press_enter(handle)

    async def _wait(self, step: WaitStep) -> None:
        if step.waitType == "time":
            await asyncio.sleep(float(step.value) / 1000.0)
        elif step.waitType == "selector":
            try:
                await self._resolve_target(step.value, step.timeout)
            except TargetNotFoundError as exc:
                raise StepTimeoutError(
                    f"要素が {step.timeout}ms 以内に出現しませんでした: {exc.locator_desc}"
                ) from exc
        else:
            await self._with_timeout(
                self._env_live.wait_for_navigation(),
                step.timeout,
                f"ページ遷移が {step.timeout}ms 以内に発生しませんでした",
            )

    async def _scroll(self, step: ScrollStep) -> None:
        if step.direction in ("top", "bottom"):
            await self._env_live.scroll_to(step.direction)
            return
        amount = step.amount or DEFAULT_SCROLL_AMOUNT
        await self._env_live.scroll_by(amount if step.direction == "down" else -amount)

    async def _extract(self, step: ExtractStep) -> Any:
        if step.multiple:
            handles = await self._resolver.resolve_all(self._env_live, step.selector)
        else:
            handles = [await self._resolve_target(step.selector, step.timeout)]

        values: list[str] = []
        for handle in handles:
            raw = await self._env_live.read(handle, step.attribute)
            text = (raw or "").strip()
            if text:
                values.append(text)

        logger.info("extract: %s = %r", step.storeAs, values if step.multiple else values[:1])
        if step.multiple:
            return values
        return values[0] if values else None

    async def _conditional(
        self,
        step: ConditionalStep,
        view: dict[str, Any],
        context: dict[str, Step],
        updates: dict[str, Any],
    ) -> None:
        matched = await self._evaluate(step.condition, view)
        branch = step.thenSteps if matched else step.elseSteps
        logger.info(
            "conditional %s: 条件=%s → %s を実行します",
            step.id, matched, "thenSteps" if matched else "elseSteps",
        )
        for ref in branch:
            await self._run(self._lookup(ref, context), view, context, updates)

    async def _loop(
        self,
        step: LoopStep,
        view: dict[str, Any],
        context: dict[str, Step],
        updates: dict[str, Any],
    ) -> None:
        if step.selector is not None:
            try:
                iterations = len(await self._resolver.resolve_all(self._env_live, step.selector))
            except TargetNotFoundError:
                iterations = 0
        else:
            iterations = step.iterations or 0

        logger.info("loop %s: %d 回繰り返します", step.id, iterations)
        previous = view.get("loopIndex")
        for i in range(iterations):
            view["loopIndex"] = i
            for ref in step.steps:
                await self._run(self._lookup(ref, context), view, context, updates)
        if previous is None:
            view.pop("loopIndex", None)
        else:
            view["loopIndex"] = previous

    # -------------------------------------------------------------------
    # 条件評価
    # -------------------------------------------------------------------

    async def _evaluate(self, condition: Condition, view: Mapping[str, Any]) -> bool:
        if condition.type == "element_exists":
            value = condition.value
            if isinstance(value, Locator):
                locator = value
            elif isinstance(value, dict):
                locator = Locator.model_validate(value)
            else:
                locator = Locator(kind="css", value=str(value))
            return await self._resolver.exists(self._env_live, locator)

        if condition.type == "text_contains":
            return str(condition.value) in (await self._env_live.page_text() or "")

        name = condition.value["name"]
        return view.get(name) == condition.value.get("value")

    # -------------------------------------------------------------------
    # ユーティリティ
    # -------------------------------------------------------------------

    async def _resolve_target(self, locator: Locator, timeout_ms: int) -> Any:
        """ロケータが解決できるまでポーリングする。

        Raises:
            TargetNotFoundError: タイムアウトまでに解決できなかった場合
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_ms / 1000.0
        while True:
            try:
                return await self._resolver.resolve(self._env_live, locator)
            except TargetNotFoundError:
                if loop.time() + self._poll_interval > deadline:
                    logger.debug("要素の待機がタイムアウトしました: %s", describe_locator(locator))
                    raise
            await asyncio.sleep(self._poll_interval)

    async def _prepare(self, handle: Any) -> None:
        """操作対象をスクロールして表示し、ハイライトする。"""
        await self._env_live.scroll_into_view(handle)
        try:
            await self._env_live.highlight(handle, self._highlight_ms)
        except Exception as exc:  # noqa: BLE001
            logger.debug("ハイライト表示に失敗しました: %s", exc)

    async def _with_timeout(self, awaitable: Any, timeout_ms: int, message: str) -> None:
        try:
            await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            raise StepTimeoutError(message) from exc

    def _lookup(self, step_id: str, context: Mapping[str, Step]) -> Step:
        try:
            return context[step_id]
        except KeyError:
            raise StepError(f"参照先のステップが見つかりません: {step_id}") from None

    async def _safe_screenshot(self) -> Optional[str]:
        try:
            return await self._env_live.screenshot()
        except Exception as exc:  # noqa: BLE001
            logger.warning("スクリーンショット保存に失敗: %s", exc)
            return None

    async def _failed(
        self, step: Step, exc: StepExecutionError, screenshot_on_error: bool, elapsed: float
    ) -> StepOutcome:
        logger.error("ステップ '%s' でエラー: [%s] %s", step.id, exc.error_type, exc)
        outcome = StepOutcome(ok=False, error_type=exc.error_type, error=str(exc))
        if screenshot_on_error:
            outcome.screenshot = await self._safe_screenshot()
        outcome.duration_ms = elapsed * 1000
        return outcome
