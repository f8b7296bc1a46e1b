"""
パーサーテスト — ステップ / ワークフローのパース・シリアライズ・ファイル入出力

エラー位置（ステップインデックスとフィールド）の報告と、
serialize(parse(x)) のラウンドトリップ特性を検証する。
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from hypothesis import given, settings

from conftest import make_step_body_strategy, make_workflow_dict_strategy
from sigrec.dsl.parser import (
    WorkflowParser,
    WorkflowValidationError,
    parse_step,
    parse_workflow,
    serialize_step,
    serialize_workflow,
)
from sigrec.dsl.schema import ClickStep, GotoStep, Workflow


# ---------------------------------------------------------------------------
# parse_step
# ---------------------------------------------------------------------------

class TestParseStep:
    """parse_step のテスト。"""

    def test_parse_goto(self):
        step = parse_step({"id": "s1", "type": "goto", "url": "https://example.com"})
        assert isinstance(step, GotoStep)
        assert step.timeout == 5000

    def test_parse_click_with_legacy_locator(self):
        step = parse_step({
            "id": "s1", "type": "click", "selector": {"type": "css", "value": "#go"},
        })
        assert isinstance(step, ClickStep)
        assert step.selector.kind == "css"

    def test_non_object_rejected(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_step(["goto"], index=3)
        assert exc_info.value.step_index == 3

    def test_missing_type(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_step({"id": "s1", "url": "https://example.com"}, index=0)
        assert exc_info.value.field == "type"
        assert "steps[0].type" in str(exc_info.value)

    def test_unknown_type(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_step({"id": "s1", "type": "hover"}, index=2)
        assert exc_info.value.step_index == 2
        assert exc_info.value.field == "type"

    def test_missing_field_reports_field_path(self):
        """必須フィールドの欠落はフィールド名付きで報告する。"""
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_step({"id": "s1", "type": "click"}, index=1)
        assert exc_info.value.step_index == 1
        assert exc_info.value.field == "selector"

    def test_nested_field_path(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_step({"id": "s1", "type": "click", "selector": {"value": ""}}, index=0)
        assert exc_info.value.field.startswith("selector")


# ---------------------------------------------------------------------------
# parse_workflow
# ---------------------------------------------------------------------------

class TestParseWorkflow:
    """parse_workflow のテスト。"""

    def test_parse_sample(self, sample_workflow_dict):
        workflow = parse_workflow(sample_workflow_dict)
        assert isinstance(workflow, Workflow)
        assert [s.id for s in workflow.steps] == ["open", "fill-user", "submit", "read-title"]
        assert workflow.settings.maxRetries == 1

    def test_steps_must_be_list(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow({"name": "wf", "steps": "goto"})
        assert exc_info.value.field == "steps"

    def test_first_invalid_step_index_reported(self, sample_workflow_dict):
        sample_workflow_dict["steps"][2] = {"id": "bad", "type": "click"}
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow(sample_workflow_dict)
        assert exc_info.value.step_index == 2

    def test_duplicate_id_reports_second_occurrence(self, sample_workflow_dict):
        sample_workflow_dict["steps"][1] = {
            "id": "open", "type": "goto", "url": "https://example.com",
        }
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow(sample_workflow_dict)
        assert exc_info.value.step_index == 1
        assert exc_info.value.field == "id"

    def test_unknown_reference_reports_field(self, sample_workflow_dict):
        sample_workflow_dict["steps"].append({
            "id": "maybe",
            "type": "conditional",
            "condition": {"type": "text_contains", "value": "Welcome"},
            "thenSteps": ["submit"],
            "elseSteps": ["missing"],
        })
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow(sample_workflow_dict)
        assert exc_info.value.step_index == 4
        assert exc_info.value.field == "elseSteps"

    def test_workflow_level_error(self):
        with pytest.raises(WorkflowValidationError) as exc_info:
            parse_workflow({"name": "", "steps": []})
        assert exc_info.value.step_index is None
        assert exc_info.value.field == "name"


# ---------------------------------------------------------------------------
# シリアライズ
# ---------------------------------------------------------------------------

class TestSerialize:
    """serialize_step / serialize_workflow のテスト。"""

    def test_serialize_fills_defaults_and_omits_none(self):
        data = serialize_step(parse_step({"id": "s1", "type": "goto", "url": "https://a.example"}))
        assert data == {
            "id": "s1",
            "type": "goto",
            "url": "https://a.example",
            "waitUntil": "load",
            "timeout": 5000,
            "screenshot": False,
        }

    def test_serialized_workflow_is_json_compatible(self, sample_workflow_dict):
        data = serialize_workflow(parse_workflow(sample_workflow_dict))
        assert json.loads(json.dumps(data)) == data

    @settings(max_examples=50, deadline=None)
    @given(raw=make_step_body_strategy())
    def test_step_round_trip(self, raw):
        """serialize(parse(x)) を再度パースすると同じステップになる。"""
        step = parse_step({"id": "s", **raw})
        assert parse_step(serialize_step(step)) == step

    @settings(max_examples=30, deadline=None)
    @given(raw=make_workflow_dict_strategy())
    def test_workflow_round_trip(self, raw):
        workflow = parse_workflow(raw)
        assert parse_workflow(serialize_workflow(workflow)) == workflow


# ---------------------------------------------------------------------------
# WorkflowParser（ファイル入出力）
# ---------------------------------------------------------------------------

class TestWorkflowParser:
    """WorkflowParser のファイル入出力と検証のテスト。"""

    def test_load_yaml(self, tmp_dir: Path, sample_yaml_content: str):
        path = tmp_dir / "flow.yaml"
        path.write_text(sample_yaml_content, encoding="utf-8")

        workflow = WorkflowParser().load(path)

        assert workflow.name == "ログインフロー"
        assert workflow.steps[1].text == "${vars.user}"
        assert workflow.steps[2].value == 1000

    def test_load_missing_file(self, tmp_dir: Path):
        with pytest.raises(FileNotFoundError):
            WorkflowParser().load(tmp_dir / "none.yaml")

    def test_load_empty_file(self, tmp_dir: Path):
        path = tmp_dir / "empty.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(WorkflowValidationError):
            WorkflowParser().load(path)

    @pytest.mark.parametrize("suffix", [".json", ".yaml"])
    def test_dump_and_load(self, tmp_dir: Path, sample_workflow_dict, suffix):
        parser = WorkflowParser()
        workflow = parse_workflow(sample_workflow_dict)
        path = tmp_dir / "out" / f"flow{suffix}"

        parser.dump(workflow, path)

        assert path.exists()
        assert parser.load(path) == workflow

    def test_validate_ok(self, tmp_dir: Path, sample_yaml_content: str):
        path = tmp_dir / "flow.yaml"
        path.write_text(sample_yaml_content, encoding="utf-8")
        assert WorkflowParser().validate(path) == []

    def test_validate_missing_file(self, tmp_dir: Path):
        errors = WorkflowParser().validate(tmp_dir / "none.yaml")
        assert len(errors) == 1
        assert errors[0].location == "file"

    def test_validate_yaml_syntax_error(self, tmp_dir: Path):
        path = tmp_dir / "broken.yaml"
        path.write_text("name: テスト\n  invalid_indent: true\n", encoding="utf-8")

        errors = WorkflowParser().validate(path)

        assert len(errors) == 1
        assert errors[0].location == "syntax"
        assert errors[0].line is not None

    def test_validate_json_syntax_error(self, tmp_dir: Path):
        path = tmp_dir / "broken.json"
        path.write_text('{"name": "wf",\n "steps": [}', encoding="utf-8")

        errors = WorkflowParser().validate(path)

        assert errors[0].location == "syntax"
        assert errors[0].line == 2

    def test_validate_schema_error_location(self, tmp_dir: Path, sample_workflow_dict):
        sample_workflow_dict["steps"][1]["selector"] = {"kind": "css"}
        path = tmp_dir / "flow.json"
        path.write_text(json.dumps(sample_workflow_dict), encoding="utf-8")

        errors = WorkflowParser().validate(path)

        assert len(errors) == 1
        assert errors[0].location == "steps[1].selector.value"
