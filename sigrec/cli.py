"""
CLI エントリポイント — Typer ベースのコマンドラインインターフェース

sigrec コマンドとして以下のサブコマンドを提供する:
  - validate: ワークフロー文書のスキーマ検証
  - run: ワークフローの再生（監督モードでは各ステップ後に承認を求める）
  - record: ブラウザ操作の記録
  - report: 保存済み Run からのレポート再生成
"""

from __future__ import annotations

import logging
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any, Optional

import typer

if TYPE_CHECKING:
    from .config import EngineConfig
    from .core.controller import ReplayController
    from .dsl.schema import Run, Workflow

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Typer アプリ定義
# ---------------------------------------------------------------------------

app = typer.Typer(
    help=(
        "sigrec — ブラウザ操作の記録と監督付き再生\n\n"
        "基本の流れ:\n"
        "  1. sigrec record URL -o recordings/session.json   操作を記録\n"
        "  2. sigrec validate flows/xxx.yaml                 ワークフローを検証\n"
        "  3. sigrec run flows/xxx.yaml                      ワークフローを再生\n\n"
        "詳しくは各コマンドに --help を付けてください。"
    ),
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="詳細ログを出力する"),
) -> None:
    """ログ出力を設定する。"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# validate コマンド
# ---------------------------------------------------------------------------

@app.command()
def validate(
    workflow_file: Path = typer.Argument(..., help="検証するワークフローファイル（.json / .yaml）"),
) -> None:
    """ワークフローファイルのスキーマ検証を行う。"""
    from .dsl.parser import WorkflowParser

    parser = WorkflowParser()
    errors = parser.validate(workflow_file)

    if not errors:
        typer.echo(f"✓ {workflow_file}: スキーマ検証 OK")
    else:
        for err in errors:
            line_info = f" (行 {err.line})" if err.line else ""
            typer.echo(f"✗ {err.location}{line_info}: {err.message}", err=True)
        raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# run コマンド
# ---------------------------------------------------------------------------

def parse_var_options(values: Optional[list[str]]) -> dict[str, str]:
    """--var NAME=VALUE の指定を辞書に変換する。

    Raises:
        typer.BadParameter: NAME=VALUE 形式でない場合
    """
    result: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"NAME=VALUE 形式で指定してください: {item}")
        result[name.strip()] = value
    return result


@app.command()
def run(
    workflow_file: Path = typer.Argument(..., help="再生するワークフローファイル（.json / .yaml）"),
    headed: Optional[bool] = typer.Option(
        None, "--headed/--headless", help="ブラウザ表示モード（デフォルト: SIGREC_HEADED または表示）",
    ),
    supervised: Optional[bool] = typer.Option(
        None, "--supervised/--unattended",
        help="各ステップ後に承認を求めるか（デフォルト: ワークフローの設定）",
    ),
    var: Optional[list[str]] = typer.Option(
        None, "--var", help="変数の初期値（NAME=VALUE、複数指定可）",
    ),
    store_dir: Optional[Path] = typer.Option(
        None, "--store", help="Run の保存先ディレクトリ（デフォルト: <artifacts>/runs）",
    ),
    report_dir: Optional[Path] = typer.Option(
        None, "--report", help="レポートの出力先ディレクトリ",
    ),
    viewport: Optional[str] = typer.Option(
        None, "--viewport", help="ビューポートサイズ（WIDTHxHEIGHT）",
    ),
    slow_mo: Optional[int] = typer.Option(
        None, "--slow-mo", help="各操作間の遅延（ミリ秒）",
    ),
) -> None:
    """ワークフローを再生する。"""
    import asyncio

    from .config import apply_cli_args, load_config_from_env
    from .dsl.parser import WorkflowParser

    try:
        variables = parse_var_options(var)
        workflow = WorkflowParser().load(workflow_file)
        if supervised is not None:
            settings = workflow.settings.model_copy(update={"supervisedMode": supervised})
            workflow = workflow.model_copy(update={"settings": settings})

        config = apply_cli_args(
            load_config_from_env(),
            SimpleNamespace(headed=headed, viewport=viewport, slow_mo=slow_mo),
        )
        result = asyncio.run(_replay(workflow, config, variables, store_dir or config.runs_dir))

        typer.echo(f"ワークフロー: {workflow.name}")
        typer.echo(f"Run: {result.id}")
        typer.echo(f"ステータス: {result.status}")
        typer.echo(f"ステップ: {result.currentStepIndex} / {len(workflow.steps)}")
        if result.error:
            typer.echo(f"エラー: {result.error}", err=True)

        if report_dir is not None:
            from .core.reporting import RunReporter

            reporter = RunReporter()
            reporter.generate_json(result, report_dir, workflow)
            html_path = reporter.generate_html(result, report_dir, workflow)
            typer.echo(f"  レポート: {html_path}")

        if result.status != "completed":
            raise typer.Exit(code=1)

    except typer.Exit:
        raise
    except typer.BadParameter:
        raise
    except Exception as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)


async def _replay(
    workflow: Workflow, config: EngineConfig, variables: dict[str, Any], store_dir: Path
) -> Run:
    """ブラウザを起動し、コントローラとドライバをつないでワークフローを再生する。"""
    import asyncio

    from .core.controller import ReplayController
    from .core.executor import StepExecutor
    from .core.store import FileRunStore
    from .live.playwright_env import BrowserSession
    from .transport.channel import InProcessChannel
    from .transport.driver import Driver

    async with BrowserSession(config) as session:
        channel = InProcessChannel()
        executor = StepExecutor(
            session.environment(),
            poll_interval_ms=config.poll_interval_ms,
            highlight_ms=config.highlight_ms,
        )
        driver = Driver(executor, channel.driver_endpoint)
        controller = ReplayController(
            workflow, channel.controller_endpoint, FileRunStore(store_dir)
        )
        controller.on("log", _echo_log)

        tasks = [
            asyncio.create_task(driver.serve()),
            asyncio.create_task(controller.listen()),
        ]
        try:
            result = await controller.start(variables)
            while result.status == "paused":
                result = await _ask_operator(controller)
        finally:
            await channel.close()
            await asyncio.gather(*tasks, return_exceptions=True)
        return result


def _echo_log(event: dict[str, Any]) -> None:
    entry = event["entry"]
    marks = {"success": "✓", "error": "✗", "warning": "!", "info": "-"}
    typer.echo(f"  {marks.get(entry.level, '-')} [{entry.stepId}] {entry.message}")


async def _ask_operator(controller: ReplayController) -> Run:
    """一時停止中の Run の扱いをオペレータに尋ねる。"""
    state = controller.get_state()
    step = controller.workflow.steps[state.current_step_index]
    label = step.description or f"{step.type} ({step.id})"
    typer.echo(f"一時停止中: 次のステップ {state.current_step_index + 1}/{state.step_count} — {label}")
    answer = typer.prompt("[c] 続行 / [n] 1ステップ実行 / [q] 中止", default="c").strip().lower()
    if answer == "q":
        return await controller.cancel()
    if answer == "n":
        return await controller.next_step()
    return await controller.resume()


# ---------------------------------------------------------------------------
# record コマンド
# ---------------------------------------------------------------------------

@app.command()
def record(
    url: Optional[str] = typer.Argument(None, help="記録対象の URL（省略時は対話入力）"),
    output: Path = typer.Option(
        Path("recordings") / "recording.json", "--output", "-o",
        help="出力先ファイルパス（.json / .yaml）",
    ),
    viewport: Optional[str] = typer.Option(
        None, "--viewport", help="ビューポートサイズ（WIDTHxHEIGHT）",
    ),
) -> None:
    """ブラウザ操作を記録する。ブラウザを閉じると記録が終了します。"""
    import asyncio

    from .config import apply_cli_args, load_config_from_env
    from .recorder.recorder import save_recording

    if url is None:
        url = typer.prompt("記録する URL を入力してください")

    try:
        config = apply_cli_args(
            load_config_from_env(), SimpleNamespace(headed=True, viewport=viewport)
        )
        typer.echo(f"URL: {url}")
        typer.echo("ブラウザを閉じると記録が終了します。\n")

        result = asyncio.run(_record(url, config))
        save_recording(result, output)
        typer.echo(f"記録完了: {output}（{result.eventCount} イベント）")
    except Exception as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)


async def _record(url: str, config: EngineConfig):
    from .live.playwright_env import BrowserSession
    from .recorder.recorder import EventRecorder

    async with BrowserSession(config) as session:
        recorder = EventRecorder(session.interaction_source())
        await recorder.start()
        page = session.page
        await page.goto(url)
        await page.wait_for_event("close", timeout=0)
        return await recorder.stop()


# ---------------------------------------------------------------------------
# report コマンド
# ---------------------------------------------------------------------------

@app.command()
def report(
    run_dir: Path = typer.Argument(..., help="Run ディレクトリ（<store>/<run_id>）"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="出力先ディレクトリ（デフォルト: Run ディレクトリ）",
    ),
    workflow_file: Optional[Path] = typer.Option(
        None, "--workflow", "-w", help="ステップ一覧に使うワークフローファイル",
    ),
) -> None:
    """保存済みの Run から JSON / HTML レポートを生成する。"""
    from .core.reporting import RunReporter
    from .core.store import FileRunStore
    from .dsl.parser import WorkflowParser

    try:
        run_data = FileRunStore(run_dir.parent).load(run_dir.name)
        workflow = WorkflowParser().load(workflow_file) if workflow_file else None

        out_dir = output or run_dir
        reporter = RunReporter()
        reporter.generate_json(run_data, out_dir, workflow)
        html_path = reporter.generate_html(run_data, out_dir, workflow)
        typer.echo(f"HTML レポートを生成しました: {html_path}")
    except Exception as exc:
        typer.echo(f"エラー: {exc}", err=True)
        raise typer.Exit(code=1)
