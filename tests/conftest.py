"""
テスト共通フィクスチャ・Hypothesis ストラテジー定義

全テストモジュールで共有するフィクスチャとデータ生成器を提供する。
ストラテジーはファクトリ関数として定義し、必要なテストで組み合わせて使う。
"""

from pathlib import Path

import pytest
from hypothesis import strategies as st


# ---------------------------------------------------------------------------
# pytest フィクスチャ
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """一時ディレクトリを提供する pytest フィクスチャ。"""
    return tmp_path


@pytest.fixture
def sample_workflow_dict() -> dict:
    """サンプルの Workflow 辞書データ。

    ワークフロー文書の最小構成を辞書形式で返す。
    パーサーやスキーマ検証のテストで使用する。
    """
    return {
        "name": "ログインフロー",
        "variables": {"user": "alice"},
        "settings": {
            "supervisedMode": False,
            "pauseOnError": True,
            "maxRetries": 1,
            "screenshotOnError": False,
        },
        "steps": [
            {"id": "open", "type": "goto", "url": "http://localhost:4200/login"},
            {
                "id": "fill-user",
                "type": "type",
                "selector": {"kind": "css", "value": "#user", "fallbacks": ["input[name=user]"]},
                "text": "${vars.user}",
            },
            {
                "id": "submit",
                "type": "click",
                "selector": {"kind": "css", "value": "button[type=submit]"},
                "waitForNavigation": True,
            },
            {
                "id": "read-title",
                "type": "extract",
                "selector": {"kind": "css", "value": "h1"},
                "storeAs": "title",
            },
        ],
    }


@pytest.fixture
def sample_yaml_content() -> str:
    """サンプルのワークフロー YAML 文字列。"""
    return """\
name: ログインフロー
variables:
  user: alice
settings:
  supervisedMode: false
  maxRetries: 1
steps:
  - id: open
    type: goto
    url: http://localhost:4200/login
  - id: fill-user
    type: type
    selector:
      kind: css
      value: "#user"
    text: ${vars.user}
  - id: pause-a-bit
    type: wait
    waitType: time
"""


# ---------------------------------------------------------------------------
# Hypothesis ストラテジー（ファクトリ関数）
# ---------------------------------------------------------------------------

def _non_blank_text(max_size: int = 50):
    return st.text(min_size=1, max_size=max_size).filter(lambda s: s.strip() != "")


# --- ロケータ ---

def make_locator_dict_strategy():
    """Locator 用の辞書を生成する Hypothesis ストラテジー。"""
    return st.fixed_dictionaries({
        "kind": st.sampled_from(["css", "xpath", "text"]),
        "value": _non_blank_text(),
        "fallbacks": st.lists(_non_blank_text(), max_size=3),
    })


# --- ステップ（id を除く本体） ---

def make_goto_body_strategy():
    return st.fixed_dictionaries({
        "type": st.just("goto"),
        "url": st.from_regex(r"https?://[a-z]+\.[a-z]+(/[a-z]*)?", fullmatch=True),
        "waitUntil": st.sampled_from(["load", "domcontentloaded", "networkidle"]),
    })


def make_click_body_strategy():
    return st.fixed_dictionaries({
        "type": st.just("click"),
        "selector": make_locator_dict_strategy(),
        "waitForNavigation": st.booleans(),
        "clickCount": st.integers(min_value=1, max_value=3),
    })


def make_type_body_strategy():
    return st.fixed_dictionaries({
        "type": st.just("type"),
        "selector": make_locator_dict_strategy(),
        "text": st.text(max_size=100),
        "clearFirst": st.booleans(),
        "pressEnter": st.booleans(),
    })


def make_wait_body_strategy():
    return st.one_of(
        st.fixed_dictionaries({
            "type": st.just("wait"),
            "waitType": st.just("time"),
            "value": st.integers(min_value=0, max_value=10_000),
        }),
        st.fixed_dictionaries({
            "type": st.just("wait"),
            "waitType": st.just("selector"),
            "value": make_locator_dict_strategy(),
        }),
    )


def make_scroll_body_strategy():
    return st.fixed_dictionaries({
        "type": st.just("scroll"),
        "direction": st.sampled_from(["up", "down", "top", "bottom"]),
        "amount": st.integers(min_value=1, max_value=5000),
    })


def make_step_body_strategy():
    """id を持たないステップ辞書を生成する Hypothesis ストラテジー。"""
    return st.one_of(
        make_goto_body_strategy(),
        make_click_body_strategy(),
        make_type_body_strategy(),
        make_wait_body_strategy(),
        make_scroll_body_strategy(),
    )


# --- Workflow ---

def make_workflow_dict_strategy():
    """Workflow 用の辞書を生成する Hypothesis ストラテジー。

    ステップ ID は一意になるよう連番で割り当てる。
    """
    steps = st.lists(make_step_body_strategy(), min_size=1, max_size=10).map(
        lambda bodies: [{"id": f"step-{i}", **body} for i, body in enumerate(bodies)]
    )
    return st.fixed_dictionaries({
        "name": _non_blank_text(max_size=30),
        "variables": st.dictionaries(
            st.from_regex(r"[a-z][a-z0-9_]{0,10}", fullmatch=True),
            st.text(max_size=30),
            max_size=5,
        ),
        "settings": st.fixed_dictionaries({
            "supervisedMode": st.booleans(),
            "pauseOnError": st.booleans(),
            "maxRetries": st.integers(min_value=0, max_value=5),
        }),
        "steps": steps,
    })


# --- 要素 ID ---

def make_stable_id_strategy():
    """安定 id とみなされる（数字を含まない CSS 識別子の）id を生成する。"""
    return st.from_regex(r"[a-z][a-z_-]{0,15}", fullmatch=True)


# --- ストラテジーを pytest フィクスチャとしても公開 ---

@pytest.fixture
def workflow_dict_st():
    """Workflow 辞書ストラテジーをフィクスチャとして提供する。"""
    return make_workflow_dict_strategy()


@pytest.fixture
def step_body_st():
    """ステップ本体ストラテジーをフィクスチャとして提供する。"""
    return make_step_body_strategy()
