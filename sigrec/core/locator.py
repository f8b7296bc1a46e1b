"""
ターゲットロケータ — 要素からのロケータ生成と、ロケータからの要素解決

記録時は生きた要素のスナップショットから、プライマリ値と順序付きフォールバックを
持つ Locator を生成する。再生時は Locator を文書に対して解決し、要素ハンドルを返す。

主な機能:
  - ElementSnapshot / PathSegment: 環境に依存しない要素の記述
  - LocatorGenerator: 安定 id → data-* 属性 → クラス組み合わせ → 祖先パス → テキストの順に候補を生成
  - LocatorResolver: プライマリ → フォールバックの順に解決（1件一致を優先）
  - describe_locator: ログ / エラー用の説明文字列
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from ..dsl.schema import Locator
from .errors import TargetNotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# 定数
# ---------------------------------------------------------------------------

# テキストフォールバックを生成するテキスト長の上限（この長さ未満のみ）
TEXT_FALLBACK_MAX_LENGTH = 50

# テキストフォールバック対象のタグ
_TEXT_FALLBACK_TAGS = ("a", "button")

# 自動生成とみなす id のパターン
_UNSTABLE_ID_PATTERNS = (
    re.compile(r"^\d"),          # 先頭が数字
    re.compile(r"^:r[0-9a-z]*:?$"),  # React useId 形式（:r1: など）
    re.compile(r"\d{4,}"),       # 4桁以上の連続した数字
)

# CSS 識別子としてそのまま使える id / クラス名
_CSS_IDENT = re.compile(r"^-?[_a-zA-Z][_a-zA-Z0-9-]*$")


# ---------------------------------------------------------------------------
# 要素スナップショット
# ---------------------------------------------------------------------------

@dataclass
class PathSegment:
    """祖先パスの1階層分の情報。

    Attributes:
        tag: タグ名（小文字）
        id: id 属性（なければ空文字）
        nth_of_type: 同じタグの兄弟内での位置（1始まり）
        same_tag_siblings: 同じタグの兄弟が自身以外に存在するか
    """

    tag: str
    id: str = ""
    nth_of_type: int = 1
    same_tag_siblings: bool = False


@dataclass
class ElementSnapshot:
    """ロケータ生成に必要な要素情報。

    path は対象要素自身を末尾に含み、html 要素は含まない（body から始まる）。

    Attributes:
        tag: タグ名（小文字）
        id: id 属性
        attributes: 全属性（文書上の順序を保持）
        classes: クラス名リスト
        text: トリム済みテキスト
        path: body から対象要素までの祖先パス
        selector_counts: 観測時に要素自身の文書で数えた候補セレクタごとの一致数
    """

    tag: str
    id: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    classes: list[str] = field(default_factory=list)
    text: str = ""
    path: list[PathSegment] = field(default_factory=list)
    selector_counts: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ElementSnapshot":
        """ブラウザ側スクリプトが返す辞書からスナップショットを生成する。"""
        path = [
            PathSegment(
                tag=str(seg.get("tag", "")).lower(),
                id=seg.get("id") or "",
                nth_of_type=int(seg.get("nthOfType", 1)),
                same_tag_siblings=bool(seg.get("sameTagSiblings", False)),
            )
            for seg in data.get("path", [])
        ]
        return cls(
            tag=str(data.get("tag", "")).lower(),
            id=data.get("id") or "",
            attributes=dict(data.get("attributes") or {}),
            classes=[c for c in data.get("classes", []) if c],
            text=(data.get("text") or "").strip(),
            path=path,
            selector_counts={
                str(k): int(v) for k, v in (data.get("selectorCounts") or {}).items()
            },
        )


# ---------------------------------------------------------------------------
# 環境の能力（プロトコル）
# ---------------------------------------------------------------------------

@runtime_checkable
class SelectorProbe(Protocol):
    """生成中の候補が文書内で一意かを確認するための能力。"""

    async def count(self, selector: str) -> int:
        """CSS セレクタに一致する要素数を返す。"""
        ...


@runtime_checkable
class QueryableDocument(Protocol):
    """再生時にロケータを解決する対象の文書。"""

    async def query_all(self, kind: str, value: str) -> list[Any]:
        """ロケータ種別と値に一致する要素ハンドルを文書順で返す。"""
        ...


class SnapshotProbe:
    """観測時に数えた一致数で一意性を答える SelectorProbe。

    スナップショットに一致数がない候補だけを fallback に問い合わせる。
    fallback がなければ LookupError を送出する（生成器は一意でないとみなす）。
    """

    def __init__(self, snapshot: ElementSnapshot, fallback: Optional[SelectorProbe] = None) -> None:
        self._counts = snapshot.selector_counts
        self._fallback = fallback

    async def count(self, selector: str) -> int:
        if selector in self._counts:
            return self._counts[selector]
        if self._fallback is None:
            raise LookupError(f"観測時の一致数がありません: {selector}")
        return await self._fallback.count(selector)


# ---------------------------------------------------------------------------
# ヘルパー関数
# ---------------------------------------------------------------------------

def is_stable_id(value: str) -> bool:
    """id が自動生成されたものでなく、セレクタに使える安定したものかを判定する。"""
    if not value or not value.strip():
        return False
    return not any(p.search(value) for p in _UNSTABLE_ID_PATTERNS)


def _id_selector(value: str) -> str:
    if _CSS_IDENT.match(value):
        return f"#{value}"
    return f'[id="{_escape_attr(value)}"]'


def _escape_attr(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def describe_locator(locator: Locator) -> str:
    """ロケータの人間可読な説明文字列を生成する。

    エラーメッセージやログで使用する。
    """
    desc = f"{locator.kind}='{locator.value}'"
    if locator.fallbacks:
        desc += f", fallbacks=[{', '.join(locator.fallbacks)}]"
    return desc


# ---------------------------------------------------------------------------
# LocatorGenerator
# ---------------------------------------------------------------------------

class LocatorGenerator:
    """要素スナップショットから Locator を生成する。

    生成は冪等で、同じ要素と同じ文書に対しては常に同じ Locator を返す。
    一意性の確認は SelectorProbe に委譲し、確認に失敗した候補は一意でないとみなす。
    """

    async def generate(self, snapshot: ElementSnapshot, probe: SelectorProbe) -> Locator:
        """要素のロケータを生成する。

        Args:
            snapshot: 対象要素のスナップショット
            probe: 一意性確認に使う文書

        Returns:
            kind=css の Locator
        """
        # 1. 安定した id があれば即座に採用
        if is_stable_id(snapshot.id):
            return Locator(kind="css", value=_id_selector(snapshot.id))

        # 2. data-* 属性で一意なもの
        for name, value in snapshot.attributes.items():
            if not name.startswith("data-"):
                continue
            selector = f'{snapshot.tag}[{name}="{_escape_attr(value)}"]'
            if await self._is_unique(probe, selector):
                return Locator(kind="css", value=selector)

        candidates: list[str] = []

        # 3. クラスの組み合わせ
        classes = [c for c in snapshot.classes if _CSS_IDENT.match(c)]
        if classes:
            selector = snapshot.tag + "".join(f".{c}" for c in classes)
            if await self._is_unique(probe, selector):
                candidates.append(selector)

        # 4. 祖先パス
        path_selector = self._build_path(snapshot)
        if path_selector:
            candidates.append(path_selector)

        # 5. リンク / ボタンのテキスト
        text_selector = self._build_text_selector(snapshot)
        if text_selector:
            candidates.append(text_selector)

        unique = list(dict.fromkeys(candidates))
        if not unique:
            unique = [snapshot.tag or "*"]

        locator = Locator(kind="css", value=unique[0], fallbacks=unique[1:])
        logger.debug("ロケータを生成しました: %s", describe_locator(locator))
        return locator

    # ----- 内部メソッド -----

    async def _is_unique(self, probe: SelectorProbe, selector: str) -> bool:
        try:
            return await probe.count(selector) == 1
        except Exception as exc:  # noqa: BLE001
            logger.debug("一意性の確認に失敗しました（一意でないとみなします）: %s — %s", selector, exc)
            return False

    def _build_path(self, snapshot: ElementSnapshot) -> str:
        """祖先パスの CSS セレクタを組み立てる。

        安定した id を持つ祖先に到達した時点でその祖先を起点にする。
        """
        parts: list[str] = []
        for seg in reversed(snapshot.path):
            if seg.tag == "html":
                break
            if parts and is_stable_id(seg.id):
                parts.append(f"{seg.tag}{_id_selector(seg.id)}")
                break
            part = seg.tag
            if seg.same_tag_siblings:
                part += f":nth-of-type({seg.nth_of_type})"
            parts.append(part)
        return " > ".join(reversed(parts))

    def _build_text_selector(self, snapshot: ElementSnapshot) -> Optional[str]:
        is_button_like = (
            snapshot.tag in _TEXT_FALLBACK_TAGS
            or snapshot.attributes.get("role") == "button"
        )
        text = snapshot.text.strip()
        if not is_button_like or not text or len(text) >= TEXT_FALLBACK_MAX_LENGTH:
            return None
        return f"{snapshot.tag}:has-text({json.dumps(text, ensure_ascii=False)})"


# ---------------------------------------------------------------------------
# LocatorResolver
# ---------------------------------------------------------------------------

@dataclass
class CandidateFailure:
    """解決に失敗した候補の情報。

    Attributes:
        index: 候補リスト内のインデックス（0 がプライマリ）
        selector_desc: 候補の説明文字列
        reason: 失敗理由
    """

    index: int
    selector_desc: str
    reason: str


class LocatorResolver:
    """Locator を文書に対して解決する。

    候補はプライマリ（locator.kind で解釈）、続いて各フォールバック（CSS）の順。
    1件だけ一致する候補を優先し、なければ1件以上一致する最初の候補の先頭要素を返す。
    """

    async def resolve(self, document: QueryableDocument, locator: Locator) -> Any:
        """ロケータを解決し、要素ハンドルを1つ返す。

        Raises:
            TargetNotFoundError: どの候補も要素に一致しなかった場合
        """
        results, failures = await self._query_candidates(document, locator)

        for idx, desc, matches in results:
            if len(matches) == 1:
                logger.debug("候補 %d (%s) が一意に一致しました", idx, desc)
                return matches[0]

        for idx, desc, matches in results:
            if matches:
                logger.warning(
                    "一意に一致する候補がないため、候補 %d (%s) の %d 件中先頭の要素を使用します",
                    idx, desc, len(matches),
                )
                return matches[0]

        raise self._not_found(locator, failures)

    async def resolve_all(self, document: QueryableDocument, locator: Locator) -> list[Any]:
        """1件以上一致する最初の候補の全要素を返す。

        Raises:
            TargetNotFoundError: どの候補も要素に一致しなかった場合
        """
        results, failures = await self._query_candidates(document, locator)
        for _idx, _desc, matches in results:
            if matches:
                return matches
        raise self._not_found(locator, failures)

    async def exists(self, document: QueryableDocument, locator: Locator) -> bool:
        """ロケータがいずれかの要素に一致するかを返す。"""
        results, _failures = await self._query_candidates(document, locator)
        return any(matches for _idx, _desc, matches in results)

    # ----- 内部メソッド -----

    async def _query_candidates(
        self, document: QueryableDocument, locator: Locator
    ) -> tuple[list[tuple[int, str, list[Any]]], list[CandidateFailure]]:
        candidates = [(locator.kind, locator.value)]
        candidates.extend(("css", fb) for fb in locator.fallbacks)

        results: list[tuple[int, str, list[Any]]] = []
        failures: list[CandidateFailure] = []
        for idx, (kind, value) in enumerate(candidates):
            desc = f"{kind}='{value}'"
            try:
                matches = list(await document.query_all(kind, value))
            except Exception as exc:  # noqa: BLE001
                failures.append(CandidateFailure(idx, desc, f"クエリに失敗しました: {exc}"))
                continue
            if not matches:
                failures.append(CandidateFailure(idx, desc, "要素が見つかりません（0件ヒット）"))
                continue
            results.append((idx, desc, matches))
        return results, failures

    def _not_found(self, locator: Locator, failures: list[CandidateFailure]) -> TargetNotFoundError:
        details = "\n".join(f"  [{f.index}] {f.selector_desc}: {f.reason}" for f in failures)
        return TargetNotFoundError(describe_locator(locator), f"試行結果:\n{details}")
