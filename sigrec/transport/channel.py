"""
インプロセスチャネル — asyncio.Queue 2本によるコントローラ / ドライバ間の非同期リンク

送信は常にキューへの追加で完了し、受信側の処理を待たない。メッセージは
JSON 互換の構造値として運ぶため、プロセス外のリンクに置き換えても
コントローラ / ドライバ側の処理は変わらない。
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from .messages import ExecuteStep, parse_controller_message, parse_driver_message

logger = logging.getLogger(__name__)


@runtime_checkable
class MessageLink(Protocol):
    """メッセージの送受信口。"""

    async def send(self, message: BaseModel) -> None: ...

    async def receive(self) -> Optional[BaseModel]: ...


def _to_wire(message: BaseModel) -> dict[str, Any]:
    if isinstance(message, ExecuteStep):
        return message.to_wire()
    return message.model_dump(mode="json")


class ChannelEndpoint:
    """チャネルの片側。送信用キューと受信用キューを持つ。

    receive() はチャネルが閉じられると None を返す。
    """

    def __init__(
        self,
        name: str,
        outbox: asyncio.Queue,
        inbox: asyncio.Queue,
        parser: Callable[[dict[str, Any]], BaseModel],
    ) -> None:
        self.name = name
        self._outbox = outbox
        self._inbox = inbox
        self._parser = parser

    async def send(self, message: BaseModel) -> None:
        """メッセージを相手側へ送信する（相手の処理は待たない）。"""
        await self._outbox.put(_to_wire(message))

    async def receive(self) -> Optional[BaseModel]:
        """次のメッセージを受信する。不正なメッセージは警告ログを出して読み飛ばす。"""
        while True:
            raw = await self._inbox.get()
            if raw is None:
                return None
            try:
                return self._parser(raw)
            except ValidationError as exc:
                logger.warning("%s: 不正なメッセージを破棄しました: %s", self.name, exc)

    async def close(self) -> None:
        """相手側の receive() を終了させる。"""
        await self._outbox.put(None)


class InProcessChannel:
    """同一プロセス内のコントローラ / ドライバを結ぶチャネル。

    使用例::

        channel = InProcessChannel()
        controller = ReplayController(workflow, channel.controller_endpoint)
        driver = Driver(executor, channel.driver_endpoint)
    """

    def __init__(self) -> None:
        to_driver: asyncio.Queue = asyncio.Queue()
        to_controller: asyncio.Queue = asyncio.Queue()
        self.controller_endpoint = ChannelEndpoint(
            "controller", to_driver, to_controller, parse_driver_message
        )
        self.driver_endpoint = ChannelEndpoint(
            "driver", to_controller, to_driver, parse_controller_message
        )

    async def close(self) -> None:
        """両方向の受信を終了させる。"""
        await self.controller_endpoint.close()
        await self.driver_endpoint.close()
