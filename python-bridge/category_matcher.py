"""
Lazada category label -> Manjaro category.

Keyword prefilter narrows the static catalog, a Qwen (DashScope) completion
picks one numbered candidate, and a keyword score takes over whenever the
model is missing, failing, or answers something unusable.
"""

import json
import logging
import re
from collections.abc import Iterable
from pathlib import Path

from curl_cffi import requests

from listing_models import TargetCategory
from manjaro_errors import ResolutionUnavailable

logger = logging.getLogger(__name__)

PREFILTER_FALLBACK_SIZE = 100
MAX_CANDIDATES = 50
LLM_TIMEOUT = 60

_TOKEN_SPLIT_RE = re.compile(r"[\s,./\-_&>]+")
_BRACKETED_ID_RE = re.compile(r"\[?(\d+)\]?")


class CategoryCatalog:
    """Flat, ordered list of target categories, loaded once and looked up by id."""

    def __init__(self, categories: Iterable[TargetCategory] = ()):
        self._categories: list[TargetCategory] = []
        self._by_id: dict[str, TargetCategory] = {}
        self.replace(categories)

    def __len__(self) -> int:
        return len(self._categories)

    def __iter__(self):
        return iter(self._categories)

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._by_id

    def get(self, category_id: str) -> TargetCategory | None:
        return self._by_id.get(category_id)

    def head(self, n: int) -> list[TargetCategory]:
        return self._categories[:n]

    def replace(self, categories: Iterable[TargetCategory]) -> None:
        self._categories = list(categories)
        self._by_id = {c.id: c for c in self._categories}

    @classmethod
    def load(cls, path: Path) -> "CategoryCatalog":
        """Read a [{id, name, full_path}] JSON list. A missing file is an empty catalog."""
        path = Path(path)
        if not path.exists():
            logger.error("Category file not found: %s", path)
            return cls()
        raw = json.loads(path.read_text(encoding="utf-8"))
        categories = [
            TargetCategory(
                id=str(node["id"]),
                display_name=str(node["name"]),
                full_path_label=str(node["full_path"]),
            )
            for node in raw
            if isinstance(node, dict) and node.get("id") and node.get("name")
        ]
        logger.info("Loaded %d categories from %s", len(categories), path)
        return cls(categories)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = [
            {"id": c.id, "name": c.display_name, "full_path": c.full_path_label}
            for c in self._categories
        ]
        path.write_text(json.dumps(data, ensure_ascii=False, indent=1), encoding="utf-8")


def tokenize(label: str) -> list[str]:
    """Lower-case words longer than two characters, first occurrence order."""
    seen: dict[str, None] = {}
    for word in _TOKEN_SPLIT_RE.split(label.lower()):
        if len(word) > 2:
            seen.setdefault(word, None)
    return list(seen)


def keyword_score(tokens: Iterable[str], category: TargetCategory) -> int:
    """+10 exact short-name hit, +5 short-name substring, +2 anywhere in the path."""
    name = category.display_name.lower()
    path = category.full_path_label.lower()
    score = 0
    for token in tokens:
        if name == token:
            score += 10
        elif token in name:
            score += 5
        if token in path:
            score += 2
    return score


class CategoryMatcher:
    def __init__(
        self,
        catalog: CategoryCatalog,
        api_key: str = "",
        api_url: str = "https://dashscope.aliyuncs.com/api/v1/services/aigc/text-generation/generation",
        model: str = "qwen-turbo",
        session: requests.Session | None = None,
    ):
        self.catalog = catalog
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.session = session or requests.Session(impersonate="chrome")

    def resolve(self, source_label: str | None) -> TargetCategory | None:
        if not len(self.catalog):
            logger.error("No categories loaded, cannot match %r", source_label)
            return None
        if not source_label or not source_label.strip():
            return None

        try:
            matched = self.match_by_llm(source_label)
        except ResolutionUnavailable as e:
            logger.info("LLM match unavailable (%s), using keyword match", e.message)
        else:
            logger.info("LLM match: %s -> %s", source_label, matched.full_path_label)
            return matched

        matched = self.match_by_keyword(source_label)
        if matched is not None:
            logger.info("Keyword match: %s -> %s", source_label, matched.full_path_label)
        return matched

    # ── candidates ──

    def prefilter(self, source_label: str) -> list[TargetCategory]:
        tokens = tokenize(source_label)
        return [
            c for c in self.catalog
            if any(token in c.full_path_label.lower() for token in tokens)
        ]

    def candidates(self, source_label: str) -> list[TargetCategory]:
        found = self.prefilter(source_label) or self.catalog.head(PREFILTER_FALLBACK_SIZE)
        return found[:MAX_CANDIDATES]

    @staticmethod
    def build_prompt(source_label: str, candidates: list[TargetCategory]) -> str:
        options = "".join(
            f"{i}. [{c.id}] {c.full_path_label}\n" for i, c in enumerate(candidates, start=1)
        )
        return (
            "You are an e-commerce product categorisation expert. Pick the single most "
            "suitable category for the source category from the numbered target list.\n\n"
            f"Source category: {source_label}\n\n"
            f"Target categories:\n{options}\n"
            "Important: you MUST choose the closest entry from the list above, even if "
            "none is an exact match.\n"
            "Answer with the entry number or category ID only, nothing else. Example: 3596"
        )

    # ── model ──

    def ask_model(self, prompt: str) -> str:
        """One DashScope completion. Any failure surfaces as ResolutionUnavailable."""
        if not self.api_key:
            raise ResolutionUnavailable("no API key configured")
        payload = {
            "model": self.model,
            "input": {"messages": [{"role": "user", "content": prompt}]},
            "parameters": {"max_tokens": 20, "temperature": 0.1},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(self.api_url, headers=headers, json=payload, timeout=LLM_TIMEOUT)
        except requests.errors.RequestsError as e:
            raise ResolutionUnavailable(f"request failed: {e}")
        if not 200 <= resp.status_code < 300:
            raise ResolutionUnavailable(f"HTTP {resp.status_code}: {resp.text[:200]}", resp.status_code)
        try:
            data = json.loads(resp.text)
        except (json.JSONDecodeError, ValueError) as e:
            raise ResolutionUnavailable(f"invalid JSON: {e}")

        output = data.get("output") if isinstance(data, dict) else None
        if isinstance(output, dict):
            if isinstance(output.get("text"), str):
                return output["text"].strip()
            choices = output.get("choices")
            if isinstance(choices, list) and choices:
                content = (choices[0].get("message") or {}).get("content")
                if isinstance(content, str):
                    return content.strip()
        raise ResolutionUnavailable(f"no text in response: {resp.text[:200]}")

    def parse_model_answer(self, text: str, candidates: list[TargetCategory]) -> TargetCategory | None:
        """Ordinal into `candidates` first, then a literal catalog id anywhere in the text."""
        digits = re.sub(r"[^0-9]", "", text)
        if digits:
            index = int(digits)
            if 1 <= index <= len(candidates):
                return candidates[index - 1]
            if digits in self.catalog:
                return self.catalog.get(digits)
        for m in _BRACKETED_ID_RE.finditer(text):
            if m.group(1) in self.catalog:
                return self.catalog.get(m.group(1))
        return None

    def match_by_llm(self, source_label: str) -> TargetCategory:
        candidates = self.candidates(source_label)
        answer = self.ask_model(self.build_prompt(source_label, candidates))
        matched = self.parse_model_answer(answer, candidates)
        if matched is None:
            raise ResolutionUnavailable(f"unusable answer {answer!r}")
        return matched

    # ── fallback ──

    def match_by_keyword(self, source_label: str) -> TargetCategory | None:
        """Highest keyword score wins; ties keep catalog order. Zero score still yields a category."""
        tokens = tokenize(source_label)
        best: TargetCategory | None = None
        best_score = -1
        for category in self.catalog:
            score = keyword_score(tokens, category)
            if score > best_score:
                best, best_score = category, score
        return best
