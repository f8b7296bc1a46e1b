"""
PageInteractionSource — Playwright ページからの操作観測

BrowserContext の全ページに記録用スクリプト（listener.js）を注入し、
ページ側から送られる生イベントを EventRecorder に渡す。メインフレームの遷移は
navigation イベントとして Python 側で生成する。
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from playwright.async_api import BrowserContext, Frame, Page

logger = logging.getLogger(__name__)

# 注入スクリプトのパス
_LISTENER_JS_PATH = Path(__file__).parent / "listener.js"

# ページ側から呼び出すバインディング名
BINDING_NAME = "__sigrec_emit"


class PageInteractionSource:
    """BrowserContext 内のページ操作を観測する InteractionSource 実装。

    バインディングはコンテキストから取り外せないため、detach 後に届いた
    イベントは Python 側で破棄する。
    """

    def __init__(self, context: BrowserContext) -> None:
        """PageInteractionSource を初期化する。

        Args:
            context: 観測対象の BrowserContext
        """
        self._context = context
        self._callback: Optional[Callable[[dict[str, Any]], None]] = None
        self._script = ""
        self._bound = False
        self._pages: list[Page] = []
        self._nav_handlers: dict[int, Callable[[Frame], None]] = {}

    @property
    def current_page(self) -> Optional[Page]:
        """最後に開かれたページを返す。"""
        return self._pages[-1] if self._pages else None

    # -------------------------------------------------------------------
    # InteractionSource
    # -------------------------------------------------------------------

    async def attach(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """スクリプトを注入して観測を開始する。"""
        self._callback = callback
        self._script = _LISTENER_JS_PATH.read_text(encoding="utf-8")

        if not self._bound:
            await self._context.expose_binding(BINDING_NAME, self._on_binding)
            await self._context.add_init_script(self._script)
            self._context.on("page", self._watch_page)
            self._bound = True

        for page in self._context.pages:
            self._watch_page(page)
            await self._inject(page)
        logger.info("操作の観測を開始しました（%d ページ）", len(self._pages))

    async def detach(self) -> None:
        """観測を終了する。"""
        self._callback = None
        for page in list(self._pages):
            handler = self._nav_handlers.pop(id(page), None)
            if handler is not None:
                page.remove_listener("framenavigated", handler)
            try:
                await page.evaluate("() => { window.__sigrecActive = false; }")
            except Exception as exc:  # noqa: BLE001
                logger.debug("記録スクリプトの停止をスキップ: %s", exc)
        self._pages.clear()
        logger.info("操作の観測を終了しました")

    async def count(self, selector: str) -> int:
        """現在のページで CSS セレクタに一致する要素数を返す。

        ページ側で一致数を数えられなかった候補の確認にだけ使われる。

        Raises:
            RuntimeError: 観測中のページがない場合
        """
        page = self.current_page
        if page is None:
            raise RuntimeError("観測中のページがありません")
        return len(await page.query_selector_all(selector))

    # -------------------------------------------------------------------
    # 内部メソッド
    # -------------------------------------------------------------------

    def _watch_page(self, page: Page) -> None:
        if id(page) in self._nav_handlers:
            return

        def _on_navigated(frame: Frame) -> None:
            if frame == page.main_frame:
                self._emit({
                    "type": "navigation",
                    "timestamp": int(time.time() * 1000),
                    "url": frame.url,
                    "data": {"url": frame.url},
                })

        page.on("framenavigated", _on_navigated)
        self._nav_handlers[id(page)] = _on_navigated
        self._pages.append(page)

    async def _inject(self, page: Page) -> None:
        try:
            await page.evaluate(self._script)
        except Exception as exc:  # noqa: BLE001
            logger.debug("スクリプト注入をスキップ: %s", exc)

    def _on_binding(self, source: Any, payload: str) -> None:
        """ページ側から送信されたイベントデータを処理する。"""
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.warning("不正なイベントデータ: %s", payload)
            return
        self._emit(data)

    def _emit(self, data: dict[str, Any]) -> None:
        if self._callback is None:
            return
        self._callback(data)
