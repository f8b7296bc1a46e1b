"""
Run ストア — Run の作成・状態更新・ログ追記の永続化契約

ReplayController はこの狭い契約だけを通じて永続化を行う。呼び出しはベストエフォートで、
失敗しても再生の進行は止めない（コントローラ側で警告ログを出す）。

主な構成:
  - RunStore: 永続化契約（プロトコル）
  - InMemoryRunStore: メモリ上の実装（テスト・既定）
  - FileRunStore: <base>/<run_id>/run.json と logs.jsonl に保存する実装
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from ..dsl.schema import LogLevel, Run, RunLogEntry, RunStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class RunStore(Protocol):
    """Run の永続化契約。"""

    async def create_run(self, workflow_id: str, variables: dict[str, Any]) -> str: ...

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        current_step_index: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None: ...

    async def append_log(
        self,
        run_id: str,
        step_id: str,
        level: LogLevel,
        message: str,
        screenshot: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None: ...

    async def pause_run(self, run_id: str) -> None: ...

    async def resume_run(self, run_id: str) -> None: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _apply_status(
    run: Run, status: RunStatus, current_step_index: Optional[int], error: Optional[str]
) -> None:
    run.status = status
    if current_step_index is not None:
        run.currentStepIndex = current_step_index
    if error is not None:
        run.error = error
    if status == "running" and run.startedAt is None:
        run.startedAt = _now()
    if run.is_terminal:
        run.completedAt = _now()


# ---------------------------------------------------------------------------
# InMemoryRunStore
# ---------------------------------------------------------------------------

class InMemoryRunStore:
    """メモリ上に Run を保持するストア。"""

    def __init__(self) -> None:
        self.runs: dict[str, Run] = {}

    async def create_run(self, workflow_id: str, variables: dict[str, Any]) -> str:
        run_id = uuid.uuid4().hex
        self.runs[run_id] = Run(id=run_id, workflowId=workflow_id, variables=dict(variables))
        return run_id

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        current_step_index: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        _apply_status(self._get(run_id), status, current_step_index, error)

    async def append_log(
        self,
        run_id: str,
        step_id: str,
        level: LogLevel,
        message: str,
        screenshot: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        self._get(run_id).logs.append(RunLogEntry(
            stepId=step_id,
            level=level,
            message=message,
            screenshot=screenshot,
            metadata=metadata or {},
        ))

    async def pause_run(self, run_id: str) -> None:
        self._get(run_id).status = "paused"

    async def resume_run(self, run_id: str) -> None:
        self._get(run_id).status = "running"

    def get(self, run_id: str) -> Optional[Run]:
        return self.runs.get(run_id)

    def _get(self, run_id: str) -> Run:
        try:
            return self.runs[run_id]
        except KeyError:
            raise KeyError(f"Run が見つかりません: {run_id}") from None


# ---------------------------------------------------------------------------
# FileRunStore
# ---------------------------------------------------------------------------

class FileRunStore:
    """ディレクトリに Run を保存するストア。

    ディレクトリ構成::

        <base_dir>/<run_id>/run.json     Run 本体（logs を除く）
        <base_dir>/<run_id>/logs.jsonl   ログ（1行1エントリの追記）
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir)

    async def create_run(self, workflow_id: str, variables: dict[str, Any]) -> str:
        run_id = uuid.uuid4().hex
        run_dir = self.base_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        (run_dir / "logs.jsonl").touch()
        self._write(Run(id=run_id, workflowId=workflow_id, variables=dict(variables)))
        logger.info("Run を作成しました: %s", run_dir)
        return run_id

    async def update_run_status(
        self,
        run_id: str,
        status: RunStatus,
        current_step_index: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        run = self._read(run_id)
        _apply_status(run, status, current_step_index, error)
        self._write(run)

    async def append_log(
        self,
        run_id: str,
        step_id: str,
        level: LogLevel,
        message: str,
        screenshot: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        entry = RunLogEntry(
            stepId=step_id,
            level=level,
            message=message,
            screenshot=screenshot,
            metadata=metadata or {},
        )
        with open(self._run_dir(run_id) / "logs.jsonl", "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    async def pause_run(self, run_id: str) -> None:
        await self.update_run_status(run_id, "paused")

    async def resume_run(self, run_id: str) -> None:
        await self.update_run_status(run_id, "running")

    def load(self, run_id: str) -> Run:
        """Run 本体とログを読み込む。

        Raises:
            FileNotFoundError: Run が存在しない場合
        """
        run = self._read(run_id)
        logs_path = self._run_dir(run_id) / "logs.jsonl"
        if logs_path.exists():
            with open(logs_path, "r", encoding="utf-8") as f:
                run.logs = [
                    RunLogEntry.model_validate_json(line) for line in f if line.strip()
                ]
        return run

    # ----- 内部メソッド -----

    def _run_dir(self, run_id: str) -> Path:
        run_dir = self.base_dir / run_id
        if not run_dir.is_dir():
            raise FileNotFoundError(f"Run が見つかりません: {run_dir}")
        return run_dir

    def _read(self, run_id: str) -> Run:
        with open(self._run_dir(run_id) / "run.json", "r", encoding="utf-8") as f:
            return Run.model_validate(json.load(f))

    def _write(self, run: Run) -> None:
        path = self.base_dir / run.id / "run.json"
        data = run.model_dump(mode="json", exclude={"logs"})
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
