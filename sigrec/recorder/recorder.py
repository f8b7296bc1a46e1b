"""
EventRecorder — ユーザー操作の記録エンジン

操作の観測元（InteractionSource）から届く生イベントを RecordedEvent に変換して蓄積する。
対象要素のロケータは LocatorGenerator で生成する。一意性の確認には観測時にページ内で数えた
一致数（selectorCounts）を使い、それがない候補だけを観測元に問い合わせる。

状態は idle / recording の2つ。記録済みイベントは stop() でのみ取得できる。

主な機能:
  - start(): 記録開始（記録中なら何もせず既存のセッション ID を返す）
  - observe(): 生イベントの受け付け（観測元のコールバック）
  - stop(): 記録終了と RecordingResult の返却
  - save_recording() / load_recording(): 記録結果のファイル入出力
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from ..core.locator import ElementSnapshot, LocatorGenerator, SnapshotProbe
from ..dsl.parser import WorkflowParser
from ..dsl.schema import EventTarget, Locator, RecordedEvent, RecordingResult, Viewport

logger = logging.getLogger(__name__)


# textContent として保持する最大文字数
MAX_TEXT_LENGTH = 100

# 観測対象のイベント種別
OBSERVED_EVENT_TYPES: tuple[str, ...] = (
    "click", "input", "keypress", "scroll", "navigation", "change", "submit",
)

RawEventCallback = Callable[[dict[str, Any]], None]


# ---------------------------------------------------------------------------
# 状態・観測元
# ---------------------------------------------------------------------------

class RecorderState(enum.Enum):
    """レコーダーの状態。"""

    IDLE = "idle"
    RECORDING = "recording"


@runtime_checkable
class InteractionSource(Protocol):
    """操作の観測元。ロケータ生成時の一意性確認にも使う。"""

    async def attach(self, callback: RawEventCallback) -> None:
        """観測を開始し、生イベントごとに callback を呼ぶ。"""
        ...

    async def detach(self) -> None:
        """観測を終了する。"""
        ...

    async def count(self, selector: str) -> int:
        """CSS セレクタに一致する要素数を返す。"""
        ...


# ---------------------------------------------------------------------------
# EventRecorder 本体
# ---------------------------------------------------------------------------

class EventRecorder:
    """ユーザー操作の記録エンジン。

    生イベントは到着順にキューへ入れ、単一の処理タスクで順番に変換する。
    バッファは event_count でのみ公開し、観測のたびに複製しない。

    使用例::

        recorder = EventRecorder(PageInteractionSource(context))
        session_id = await recorder.start()
        ...
        result = await recorder.stop()
    """

    def __init__(
        self,
        source: InteractionSource,
        generator: Optional[LocatorGenerator] = None,
    ) -> None:
        """EventRecorder を初期化する。

        Args:
            source: 操作の観測元
            generator: ロケータ生成器（None で既定の LocatorGenerator）
        """
        self._source = source
        self._generator = generator or LocatorGenerator()
        self._state = RecorderState.IDLE
        self._session_id: Optional[str] = None
        self._events: list[RecordedEvent] = []
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------
    # プロパティ
    # -------------------------------------------------------------------

    @property
    def state(self) -> RecorderState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._state == RecorderState.RECORDING

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def event_count(self) -> int:
        """記録済みイベント数を返す。"""
        return len(self._events)

    # -------------------------------------------------------------------
    # パブリック API
    # -------------------------------------------------------------------

    async def start(self) -> str:
        """記録を開始し、セッション ID を返す。

        記録中に呼ばれた場合は何もせず、既存のバッファとセッション ID を維持する。
        """
        if self.is_recording:
            logger.info("すでに記録中です: %s", self._session_id)
            return self._session_id

        self._events = []
        self._session_id = uuid.uuid4().hex
        self._queue = asyncio.Queue()
        self._worker = asyncio.create_task(self._consume(self._queue))
        self._state = RecorderState.RECORDING

        try:
            await self._source.attach(self.observe)
        except Exception:
            await self._shutdown()
            self._reset()
            raise

        logger.info("記録を開始しました: session=%s", self._session_id)
        return self._session_id

    async def stop(self) -> RecordingResult:
        """記録を終了し、記録結果を返す。内部状態はクリアされる。

        Raises:
            RuntimeError: 記録中でない場合
        """
        if not self.is_recording:
            raise RuntimeError("記録中ではありません。先に start() を呼んでください。")

        try:
            await self._source.detach()
        finally:
            await self._shutdown()

        result = RecordingResult(
            sessionId=self._session_id,
            events=self._events,
            eventCount=len(self._events),
        )
        logger.info("記録を終了しました: session=%s, %d 件", result.sessionId, result.eventCount)
        self._reset()
        return result

    def observe(self, raw: dict[str, Any]) -> None:
        """観測元から届いた生イベントを受け付ける。記録中でなければ破棄する。"""
        if not self.is_recording or self._queue is None:
            logger.debug("記録中ではないためイベントを破棄しました: %s", raw.get("type"))
            return
        self._queue.put_nowait(raw)

    # -------------------------------------------------------------------
    # イベント変換
    # -------------------------------------------------------------------

    async def to_event(self, raw: dict[str, Any]) -> RecordedEvent:
        """生イベントを RecordedEvent に変換する。

        Raises:
            ValueError: 未知のイベント種別の場合
        """
        event_type = raw.get("type")
        if event_type not in OBSERVED_EVENT_TYPES:
            raise ValueError(f"未知のイベント種別です: {event_type}")

        raw_target = raw.get("target") or {}
        if event_type == "navigation":
            target = EventTarget(locator=Locator(kind="css", value="document"), tagName="document")
        elif event_type == "scroll" and (not raw_target or raw_target.get("window")):
            target = EventTarget(locator=Locator(kind="css", value="window"), tagName="window")
        else:
            snapshot = ElementSnapshot.from_dict(raw_target)
            probe = SnapshotProbe(snapshot, fallback=self._source)
            target = EventTarget(
                locator=await self._generator.generate(snapshot, probe),
                tagName=snapshot.tag,
                textContent=snapshot.text[:MAX_TEXT_LENGTH],
                value=str(raw_target.get("value") or ""),
                attributes={k: str(v) for k, v in snapshot.attributes.items()},
            )

        viewport = raw.get("viewport")
        return RecordedEvent(
            type=event_type,
            timestamp=int(raw.get("timestamp") or time.time() * 1000),
            target=target,
            data=dict(raw.get("data") or {}),
            url=raw.get("url") or "",
            viewport=Viewport(**viewport) if viewport else None,
            sessionId=self._session_id,
        )

    # -------------------------------------------------------------------
    # 内部メソッド
    # -------------------------------------------------------------------

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            raw = await queue.get()
            if raw is None:
                break
            try:
                event = await self.to_event(raw)
            except Exception as exc:  # noqa: BLE001
                logger.warning("イベントを記録できませんでした: %s", exc)
                continue
            self._events.append(event)
            logger.debug("記録: %s %s", event.type, event.target.locator.value)

    async def _shutdown(self) -> None:
        """キューに残ったイベントを処理してから処理タスクを終了する。"""
        if self._queue is not None:
            self._queue.put_nowait(None)
        if self._worker is not None:
            await self._worker

    def _reset(self) -> None:
        self._state = RecorderState.IDLE
        self._session_id = None
        self._events = []
        self._queue = None
        self._worker = None


# ---------------------------------------------------------------------------
# ファイル入出力
# ---------------------------------------------------------------------------

def save_recording(result: RecordingResult, path: Path) -> Path:
    """記録結果を JSON / YAML ファイルに保存する（拡張子で切り替え）。"""
    path = Path(path)
    WorkflowParser().write_document(result.model_dump(mode="json", exclude_none=True), path)
    logger.info("記録結果を保存しました: %s", path)
    return path


def load_recording(path: Path) -> RecordingResult:
    """保存済みの記録結果を読み込む。

    Raises:
        FileNotFoundError: ファイルが存在しない場合
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"記録ファイルが見つかりません: {path}")
    return RecordingResult.model_validate(WorkflowParser().read_document(path))
