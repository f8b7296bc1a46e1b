"""
RunReporter — Run の実行レポート生成

Run とワークフローを受け取り、JSON / HTML 形式のレポートを生成する。

主な機能:
  - generate_json(): JSON レポート（report.json）の生成
  - generate_html(): Jinja2 テンプレートを使用した HTML レポート（report.html）の生成
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from jinja2 import Environment, FileSystemLoader

from ..dsl.schema import Run, Workflow

logger = logging.getLogger(__name__)

# テンプレートディレクトリのパス
_TEMPLATES_DIR = Path(__file__).parent.parent / "templates"


class RunReporter:
    """Run の実行レポートを生成するクラス。"""

    # -------------------------------------------------------------------
    # JSON レポート
    # -------------------------------------------------------------------

    def generate_json(
        self, run: Run, output_dir: Path, workflow: Optional[Workflow] = None
    ) -> Path:
        """JSON レポートを生成する。

        Args:
            run: 対象の Run
            output_dir: 出力先ディレクトリ
            workflow: 実行したワークフロー（ステップ一覧の出力に使用）

        Returns:
            生成された report.json のパス
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        output_path = output_dir / "report.json"
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(self.build_report(run, workflow), f, ensure_ascii=False, indent=2)

        logger.info("JSON レポートを生成しました: %s", output_path)
        return output_path

    # -------------------------------------------------------------------
    # HTML レポート
    # -------------------------------------------------------------------

    def generate_html(
        self, run: Run, output_dir: Path, workflow: Optional[Workflow] = None
    ) -> Path:
        """HTML レポートを生成する。

        Jinja2 テンプレート（templates/run_report.html.j2）を使用して
        スタンドアロン HTML レポートを生成する。
        """
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        env = Environment(
            loader=FileSystemLoader(str(_TEMPLATES_DIR)),
            autoescape=True,
        )
        template = env.get_template("run_report.html.j2")
        html_content = template.render(report=self.build_report(run, workflow))

        output_path = output_dir / "report.html"
        with open(output_path, "w", encoding="utf-8") as f:
            f.write(html_content)

        logger.info("HTML レポートを生成しました: %s", output_path)
        return output_path

    # -------------------------------------------------------------------
    # 内部ヘルパー
    # -------------------------------------------------------------------

    def build_report(self, run: Run, workflow: Optional[Workflow] = None) -> dict[str, Any]:
        """Run をレポート用辞書に変換する。"""
        logs = [entry.model_dump(mode="json") for entry in run.logs]

        steps: list[dict[str, Any]] = []
        if workflow is not None:
            for index, step in enumerate(workflow.steps):
                step_logs = [e for e in run.logs if e.stepId == step.id]
                steps.append({
                    "index": index,
                    "id": step.id,
                    "type": step.type,
                    "description": step.description,
                    "status": self._step_status(index, step_logs, run),
                    "attempts": sum(1 for e in step_logs if e.level in ("success", "error")),
                })

        return {
            "runId": run.id,
            "workflowId": run.workflowId,
            "workflowName": workflow.name if workflow is not None else None,
            "status": run.status,
            "currentStepIndex": run.currentStepIndex,
            "error": run.error,
            "startedAt": run.startedAt.isoformat() if run.startedAt else None,
            "completedAt": run.completedAt.isoformat() if run.completedAt else None,
            "variables": run.variables,
            "steps": steps,
            "logs": logs,
            "summary": self._compute_summary(run),
        }

    def _step_status(self, index: int, step_logs: list, run: Run) -> str:
        levels = {e.level for e in step_logs}
        if "success" in levels:
            return "passed"
        if "error" in levels:
            return "failed"
        if index < run.currentStepIndex:
            return "skipped"
        return "pending"

    def _compute_summary(self, run: Run) -> dict[str, int]:
        """ログレベルごとの件数を計算する。"""
        summary = {"info": 0, "warning": 0, "error": 0, "success": 0}
        for entry in run.logs:
            summary[entry.level] += 1
        summary["total"] = len(run.logs)
        return summary
