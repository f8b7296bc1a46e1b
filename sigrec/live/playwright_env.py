"""
Playwright 環境 — ブラウザセッション管理と LiveEnvironment の Playwright 実装

ステップ実行器が必要とする操作（遷移、要素検索、クリック、入力、スクロール、
読み取り、スクリーンショット）を Playwright の async API で提供する。

主な構成:
  - SessionState / BrowserSession: 設定に従ったブラウザの起動・終了と、環境 / 観測元の提供
  - PlaywrightEnvironment: LiveEnvironment の実装
"""

from __future__ import annotations

import base64
import enum
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from ..config import EngineConfig
from ..core.errors import NavigationFailedError
from .interaction import PageInteractionSource

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, ElementHandle, Page

logger = logging.getLogger(__name__)


# ハイライト表示のスタイル
_HIGHLIGHT_JS = """
(el, duration) => {
  const prevOutline = el.style.outline;
  const prevBackground = el.style.backgroundColor;
  el.style.outline = '3px solid #0ea5e9';
  el.style.backgroundColor = 'rgba(14, 165, 233, 0.1)';
  setTimeout(() => {
    el.style.outline = prevOutline;
    el.style.backgroundColor = prevBackground;
  }, duration);
}
"""


# ---------------------------------------------------------------------------
# セッション状態
# ---------------------------------------------------------------------------

class SessionState(enum.Enum):
    """ブラウザセッションの状態。閉じたセッションは再利用しない。"""

    IDLE = "idle"
    ACTIVE = "active"
    CLOSED = "closed"


# ---------------------------------------------------------------------------
# BrowserSession 本体
# ---------------------------------------------------------------------------

class BrowserSession:
    """EngineConfig に従って起動する、1回の再生 / 記録用のブラウザセッション。

    async with で使うと抜けるときに必ずブラウザを閉じる。
    再生には environment()、記録には interaction_source() を使う::

        async with BrowserSession(config) as session:
            executor = StepExecutor(session.environment())
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self._config = config or EngineConfig()
        self._state = SessionState.IDLE
        self._pw_instance: Optional[Any] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.launch()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def context(self) -> Optional[BrowserContext]:
        """現在の BrowserContext を返す。非アクティブ時は None。"""
        return self._context if self._state == SessionState.ACTIVE else None

    @property
    def page(self) -> Optional[Page]:
        """現在の Page を返す。非アクティブ時は None。"""
        return self._page if self._state == SessionState.ACTIVE else None

    async def launch(self) -> None:
        """設定のヘッド表示・ビューポート・slow_mo でブラウザを起動し、Page を開く。

        Raises:
            RuntimeError: 起動済み、または終了済みのセッションの場合
        """
        if self._state != SessionState.IDLE:
            raise RuntimeError(f"{self._state.value} 状態のセッションは起動できません")

        config = self._config
        logger.info(
            "ブラウザを起動しています... (headed=%s, viewport=%dx%d)",
            config.headed, config.viewport_width, config.viewport_height,
        )
        from playwright.async_api import async_playwright

        self._pw_instance = await async_playwright().start()
        try:
            self._browser = await self._pw_instance.chromium.launch(
                headless=not config.headed, slow_mo=config.slow_mo,
            )
            self._context = await self._browser.new_context(
                viewport={"width": config.viewport_width, "height": config.viewport_height},
            )
            self._page = await self._context.new_page()
        except Exception:
            logger.exception("ブラウザの起動に失敗しました")
            await self._release()
            raise
        self._state = SessionState.ACTIVE
        logger.info("ブラウザを起動しました")

    def environment(self) -> "PlaywrightEnvironment":
        """現在の Page を操作する LiveEnvironment を返す。

        スクリーンショットは設定の成果物ディレクトリ配下に保存する。
        """
        return PlaywrightEnvironment(
            self._require_page(), screenshot_dir=self._config.screenshots_dir,
        )

    def interaction_source(self) -> PageInteractionSource:
        """コンテキスト内の全ページを観測する InteractionSource を返す。"""
        self._require_page()
        return PageInteractionSource(self._context)

    async def close(self) -> None:
        """ブラウザを終了する。起動していなければ何もしない。"""
        if self._state != SessionState.ACTIVE:
            return
        logger.info("ブラウザを終了しています...")
        await self._release()
        logger.info("ブラウザを終了しました")

    def _require_page(self) -> Page:
        if self._state != SessionState.ACTIVE or self._page is None:
            raise RuntimeError("ブラウザが起動していません。先に launch() を呼んでください。")
        return self._page

    async def _release(self) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
            if self._pw_instance is not None:
                await self._pw_instance.stop()
        except Exception:  # noqa: BLE001
            logger.exception("ブラウザの終了中にエラーが発生しました")
        finally:
            self._browser = None
            self._context = None
            self._page = None
            self._pw_instance = None
            self._state = SessionState.CLOSED


# ---------------------------------------------------------------------------
# PlaywrightEnvironment
# ---------------------------------------------------------------------------

def _to_selector(kind: str, value: str) -> str:
    """ロケータ種別と値を Playwright のセレクタ文字列に変換する。

    Raises:
        ValueError: semantic ロケータ（DOM クエリでは解決できない）の場合
    """
    if kind == "css":
        return value
    if kind == "xpath":
        return f"xpath={value}"
    if kind == "text":
        return f"text={value}"
    raise ValueError(f"{kind} ロケータは直接解決できません: {value}")


class PlaywrightEnvironment:
    """Playwright の Page を操作対象とする LiveEnvironment 実装。"""

    def __init__(
        self,
        page: Page,
        screenshot_dir: Optional[Path] = None,
        scroll_settle_ms: int = 300,
    ) -> None:
        """PlaywrightEnvironment を初期化する。

        Args:
            page: 操作対象の Page
            screenshot_dir: スクリーンショット保存先（None で data URL を返す）
            scroll_settle_ms: スクロール後の待機時間（ミリ秒）
        """
        self._page = page
        self._screenshot_dir = Path(screenshot_dir) if screenshot_dir else None
        self._scroll_settle_ms = scroll_settle_ms
        self._screenshot_count = 0

    @property
    def page(self) -> Page:
        return self._page

    # ----- 遷移 -----

    async def navigate(self, url: str, wait_until: str) -> None:
        """URL へ遷移する。期限はステップ実行器側で管理するため Playwright の期限は無効にする。

        Raises:
            NavigationFailedError: ページ読み込みに失敗した場合
        """
        from playwright.async_api import Error as PlaywrightError

        try:
            await self._page.goto(url, wait_until=wait_until, timeout=0)
        except PlaywrightError as exc:
            raise NavigationFailedError(f"ページの読み込みに失敗しました: {url} — {exc}") from exc

    async def wait_for_navigation(self) -> None:
        """次のメインフレーム遷移と読み込み完了を待つ。"""
        main_frame = self._page.main_frame
        await self._page.wait_for_event(
            "framenavigated", predicate=lambda frame: frame == main_frame, timeout=0
        )
        await self._page.wait_for_load_state("load", timeout=0)

    # ----- 要素検索 -----

    async def query_all(self, kind: str, value: str) -> list[ElementHandle]:
        return await self._page.query_selector_all(_to_selector(kind, value))

    async def count(self, selector: str) -> int:
        return len(await self._page.query_selector_all(selector))

    # ----- 要素操作 -----

    async def scroll_into_view(self, handle: ElementHandle) -> None:
        await handle.evaluate("el => el.scrollIntoView({behavior: 'smooth', block: 'center'})")
        await self._page.wait_for_timeout(self._scroll_settle_ms)

    async def highlight(self, handle: ElementHandle, duration_ms: int) -> None:
        await handle.evaluate(_HIGHLIGHT_JS, duration_ms)

    async def click(self, handle: ElementHandle, click_count: int = 1) -> None:
        await handle.click(click_count=click_count)

    async def fill(self, handle: ElementHandle, text: str, clear_first: bool = True) -> None:
        """テキストを入力し、input / change イベントを発火する。"""
        if clear_first:
            await handle.fill(text)
        else:
            await handle.focus()
            await self._page.keyboard.insert_text(text)
        await handle.dispatch_event("input")
        await handle.dispatch_event("change")

    async def press_enter(self, handle: ElementHandle) -> None:
        await handle.press("Enter")

    async def read(self, handle: ElementHandle, attribute: Optional[str] = None) -> Optional[str]:
        if attribute:
            return await handle.get_attribute(attribute)
        return await handle.text_content()

    # ----- ページ操作 -----

    async def scroll_by(self, delta_y: int) -> None:
        await self._page.evaluate("dy => window.scrollBy({top: dy, behavior: 'smooth'})", delta_y)
        await self._page.wait_for_timeout(self._scroll_settle_ms)

    async def scroll_to(self, position: str) -> None:
        if position == "top":
            await self._page.evaluate("() => window.scrollTo({top: 0, behavior: 'smooth'})")
        else:
            await self._page.evaluate(
                "() => window.scrollTo({top: document.body.scrollHeight, behavior: 'smooth'})"
            )
        await self._page.wait_for_timeout(self._scroll_settle_ms)

    async def page_text(self) -> str:
        return await self._page.inner_text("body")

    async def screenshot(self) -> Optional[str]:
        """スクリーンショットを撮り、ファイルパスまたは data URL を返す。"""
        if self._screenshot_dir is None:
            data = await self._page.screenshot(type="png")
            return "data:image/png;base64," + base64.b64encode(data).decode("ascii")

        self._screenshot_dir.mkdir(parents=True, exist_ok=True)
        self._screenshot_count += 1
        path = self._screenshot_dir / f"screenshot-{self._screenshot_count:04d}.png"
        await self._page.screenshot(path=str(path))
        logger.info("スクリーンショット保存: %s", path)
        return str(path)
