"""Theme consolidation engine.

Turns the raw theme candidates extracted batch by batch into a bounded,
ranked, non-redundant theme list for one platform.

Pipeline:
1. Clean candidates and sort them canonically
2. Primary grouping against each group's seed candidate
3. Group consolidation to a fixpoint (transitive similarity)
4. Per-group merge of title, description, quotes and suggestions
5. Final dedup on near-identical titles
6. Importance scoring
7. Selection of the top themes by score

Usage:
    engine = ThemeConsolidationEngine()
    themes = engine.consolidate(candidates)

    for theme in themes:
        print(theme["title"], len(theme["quotes"]))

The engine is a pure function of its input: the same candidates in any
order produce the same output in the same order. Output quotes are
always verbatim copies of input quotes.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

from reviewpulse_core.domain.schemas.themes import ThemeCandidate
from reviewpulse_core.domain.services.theme_similarity import (
    content_similarity,
    normalize_text,
    semantic_buckets,
    title_similarity,
)


# =============================================================================
# CONSTANTS
# =============================================================================


NO_THEMES_TITLE = "No Significant Themes Identified"
NO_THEMES_DESCRIPTION = (
    "The analysis completed but no significant themes were identified "
    "in the collected reviews."
)
NO_THEMES_SUGGESTIONS = [
    "Review the source data quality",
    "Consider expanding the review collection scope",
]

GENERIC_TITLE_TERMS = frozenset(
    {"general", "misc", "miscellaneous", "various", "other", "stuff", "things", "feedback", "overall"}
)

DOMAIN_TITLE_TERMS = frozenset(
    {
        "crash", "crashes", "bug", "bugs", "login", "sync", "notification", "notifications",
        "battery", "performance", "slow", "price", "pricing", "subscription", "ads",
        "interface", "design", "feature", "features", "support", "update", "updates",
        "payment", "account", "privacy", "security", "search", "loading", "offline",
        "startup", "navigation", "integration", "export",
    }
)

AI_SUMMARY_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^\s*(many|some|most|several|multiple|few|numerous)\s+users\b",
        r"^\s*users?\s+(report|reports|mention|mentions|mentioned|say|says|complain|complains|"
        r"note|notes|express|expressed|indicate|indicates|feel|find|found|are|have)\b",
        r"^\s*reviewers?\s+(report|mention|say|complain|note|express)",
        r"\banalysis\s+(shows|indicates|reveals|suggests)\b",
        r"\breviews?\s+(indicate|show|suggest|reveal)\b",
        r"^\s*based on (the )?reviews\b",
        r"^\s*overall,?\s+users\b",
    )
]

ACTION_VERBS = frozenset(
    {
        "add", "implement", "fix", "improve", "consider", "provide", "introduce", "enhance",
        "allow", "make", "create", "include", "offer", "enable", "optimize", "optimise",
        "resolve", "update", "reduce", "increase", "ensure", "develop", "streamline",
    }
)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class ConsolidationConfig:
    """Thresholds and caps for theme consolidation."""

    title_threshold: float = 0.8
    title_content_threshold: float = 0.5
    content_threshold: float = 0.6
    group_title_threshold: float = 0.6
    final_dedup_threshold: float = 0.85
    max_quotes: int = 10
    max_suggestions: int = 8
    max_themes: int = 50
    min_description_length: int = 20


# =============================================================================
# INTERNAL STRUCTURES
# =============================================================================


@dataclass
class _Candidate:
    """A cleaned candidate with precomputed comparison features."""

    title: str
    description: str
    quotes: list[str]
    suggestions: list[str]
    platform: Optional[str]
    norm_title: str = ""
    buckets: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self):
        self.norm_title = normalize_text(self.title)
        self.buckets = semantic_buckets(self.title)

    def sort_key(self) -> tuple:
        return (
            self.norm_title,
            self.title,
            self.description,
            tuple(self.quotes),
            tuple(self.suggestions),
            self.platform or "",
        )

    def importance(self, min_description_length: int) -> float:
        """Score contribution of this candidate to its merged theme."""
        score = 3 * len(self.quotes) + 2 * len(self.suggestions)
        score += min(len(self.title) / 10, 5)
        if len(self.description) > min_description_length:
            score += 2
        return score


CandidateInput = Union[ThemeCandidate, dict[str, Any]]


# =============================================================================
# HELPERS
# =============================================================================


def _clean_list(values: Any) -> list[str]:
    if not values:
        return []
    if isinstance(values, str):
        values = [values]
    cleaned = []
    for value in values:
        if isinstance(value, dict):
            value = value.get("text") or value.get("quote") or ""
        if value is None:
            continue
        text = str(value).strip()
        if text:
            cleaned.append(text)
    return cleaned


def clean_candidates(candidates: Iterable[CandidateInput]) -> list[_Candidate]:
    """Drop untitled candidates, trim fields and sort canonically."""
    cleaned = []
    for raw in candidates:
        data = raw.model_dump() if isinstance(raw, ThemeCandidate) else dict(raw or {})
        title = str(data.get("title") or "").strip()
        if not title:
            continue
        cleaned.append(
            _Candidate(
                title=title,
                description=str(data.get("description") or "").strip(),
                quotes=_clean_list(data.get("quotes")),
                suggestions=_clean_list(data.get("suggestions")),
                platform=data.get("platform"),
            )
        )
    cleaned.sort(key=lambda c: c.sort_key())
    return cleaned


def is_ai_summary(quote: str) -> bool:
    """True for quotes that read like model-written summaries."""
    return any(p.search(quote) for p in AI_SUMMARY_PATTERNS)


def normalize_suggestion(suggestion: str) -> str:
    """Normalize a suggestion and strip its leading action verbs."""
    words = normalize_text(suggestion).split()
    while words and words[0] in ACTION_VERBS:
        words = words[1:]
    return " ".join(words)


def title_quality(title: str) -> float:
    """Quality score used to pick the representative title of a group."""
    length = len(title)
    words = normalize_text(title).split()
    score = 0.0

    if 10 <= length <= 50:
        score += 3
    elif length < 10:
        score -= 1
    else:
        score -= (length - 50) / 25

    score += min(sum(1 for w in words if w in DOMAIN_TITLE_TERMS), 3)

    if 2 <= len(words) <= 6:
        score += 2
    elif len(words) > 6:
        score += 1

    score -= 2 * sum(1 for w in words if w in GENERIC_TITLE_TERMS)
    return score


def _dedupe_texts(
    texts: Iterable[str],
    normalizer,
    limit: int,
    exclude=None,
) -> list[str]:
    """Group texts by normalized form, keep the longest variant of each.

    Survivors are ordered by frequency, then length, then text.
    """
    counts: Counter[str] = Counter()
    best: dict[str, str] = {}
    for text in texts:
        if exclude is not None and exclude(text):
            continue
        key = normalizer(text)
        if not key:
            continue
        counts[key] += 1
        current = best.get(key)
        if current is None or len(text) > len(current) or (len(text) == len(current) and text < current):
            best[key] = text

    ordered = sorted(best, key=lambda k: (-counts[k], -len(best[k]), best[k]))
    return [best[k] for k in ordered[:limit]]


def no_themes_sentinel(platform: Optional[str] = None) -> dict[str, Any]:
    """The theme returned when there is nothing to consolidate."""
    return {
        "title": NO_THEMES_TITLE,
        "description": NO_THEMES_DESCRIPTION,
        "quotes": [],
        "suggestions": list(NO_THEMES_SUGGESTIONS),
        "platform": platform,
    }


# =============================================================================
# ENGINE
# =============================================================================


class ThemeConsolidationEngine:
    """Rule-based merge, dedup and ranking of theme candidates."""

    def __init__(self, config: Optional[ConsolidationConfig] = None):
        self.config = config or ConsolidationConfig()

    def is_similar(self, a: _Candidate, b: _Candidate) -> bool:
        """Advanced-similar predicate between two candidates."""
        t_sim = title_similarity(a.norm_title, b.norm_title)
        if t_sim >= self.config.title_threshold:
            return True
        if t_sim >= self.config.title_content_threshold:
            c_sim = content_similarity(a.description, b.description, a.quotes, b.quotes)
            if c_sim >= self.config.content_threshold:
                return True
        return bool(a.buckets & b.buckets)

    def group(self, candidates: list[_Candidate]) -> list[list[_Candidate]]:
        """Primary grouping followed by consolidation to a fixpoint."""
        groups: list[list[_Candidate]] = []
        grouped = [False] * len(candidates)
        for i, seed in enumerate(candidates):
            if grouped[i]:
                continue
            grouped[i] = True
            current = [seed]
            for j in range(i + 1, len(candidates)):
                if not grouped[j] and self.is_similar(seed, candidates[j]):
                    grouped[j] = True
                    current.append(candidates[j])
            groups.append(current)

        return self._consolidate_groups(groups)

    def _groups_related(self, a: list[_Candidate], b: list[_Candidate]) -> bool:
        if title_similarity(a[0].norm_title, b[0].norm_title) >= self.config.group_title_threshold:
            return True
        return any(self.is_similar(x, y) for x in a for y in b)

    def _consolidate_groups(self, groups: list[list[_Candidate]]) -> list[list[_Candidate]]:
        changed = True
        while changed:
            changed = False
            merged: list[list[_Candidate]] = []
            for group in groups:
                for target in merged:
                    if self._groups_related(target, group):
                        target.extend(group)
                        changed = True
                        break
                else:
                    merged.append(list(group))
            groups = merged
        return groups

    def merge_group(self, group: list[_Candidate]) -> dict[str, Any]:
        """Fold a group of candidates into one scored theme."""
        cfg = self.config
        title = max(group, key=lambda c: (title_quality(c.title), -len(c.title), _neg(c.title))).title

        descriptions = [c.description for c in group if c.description]
        description = max(descriptions, key=lambda d: (len(d), _neg(d))) if descriptions else ""

        quotes = _dedupe_texts(
            (q for c in group for q in c.quotes),
            normalize_text,
            cfg.max_quotes,
            exclude=is_ai_summary,
        )
        suggestions = _dedupe_texts(
            (s for c in group for s in c.suggestions),
            normalize_suggestion,
            cfg.max_suggestions,
        )

        return {
            "title": title,
            "description": description,
            "quotes": quotes,
            "suggestions": suggestions,
            "platform": group[0].platform,
            "_score": sum(c.importance(cfg.min_description_length) for c in group),
            "_candidate_count": len(group),
        }

    def final_dedup(self, themes: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Drop themes whose title nearly repeats an accepted one."""
        accepted: list[dict[str, Any]] = []
        for theme in themes:
            if any(
                title_similarity(theme["title"], kept["title"]) >= self.config.final_dedup_threshold
                for kept in accepted
            ):
                continue
            accepted.append(theme)
        return accepted

    def consolidate(
        self,
        candidates: Iterable[CandidateInput],
        platform: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """Consolidate candidates into the final ranked theme list.

        Args:
            candidates: ThemeCandidate models or plain dicts for one platform.
            platform: Platform tag applied to the sentinel when input is empty.

        Returns:
            At most ``max_themes`` theme dicts with title, description,
            quotes, suggestions and platform, ordered by importance.
        """
        cleaned = clean_candidates(candidates)
        if not cleaned:
            return [no_themes_sentinel(platform)]

        merged = [self.merge_group(g) for g in self.group(cleaned)]
        merged.sort(key=_rank_key)
        deduped = self.final_dedup(merged)

        return [
            {k: v for k, v in theme.items() if not k.startswith("_")}
            for theme in deduped[: self.config.max_themes]
        ]


def _neg(text: str) -> tuple:
    """Sort key that orders strings descending inside a max() call."""
    return tuple(-ord(ch) for ch in text)


def _rank_key(theme: dict[str, Any]) -> tuple:
    return (-theme["_score"], normalize_text(theme["title"]), theme["title"])


def consolidate_themes(
    candidates: Iterable[CandidateInput],
    platform: Optional[str] = None,
    config: Optional[ConsolidationConfig] = None,
) -> list[dict[str, Any]]:
    """Convenience wrapper around ThemeConsolidationEngine.consolidate."""
    return ThemeConsolidationEngine(config).consolidate(candidates, platform=platform)


__all__ = [
    "ConsolidationConfig",
    "ThemeConsolidationEngine",
    "consolidate_themes",
    "clean_candidates",
    "is_ai_summary",
    "normalize_suggestion",
    "no_themes_sentinel",
    "title_quality",
    "NO_THEMES_TITLE",
]
