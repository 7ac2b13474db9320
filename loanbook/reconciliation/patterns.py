"""
Pattern Store - learned description rules for create-type suggestions.

A pattern maps a vendor-keyword fingerprint (plus amount band and
direction) to a reconciliation target. Patterns are created when a human
confirms a create decision and reinforced on every repeat; they are never
removed automatically. Persistence is explicit through load/save.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import structlog

from ..config import Settings, get_settings
from ..models import (
    BankEntry,
    Pattern,
    SplitRatios,
    TargetType,
    utcnow,
)
from ..utils.text_similarity import (
    extract_vendor_keywords,
    keyword_similarity,
    levenshtein_similarity,
)

logger = structlog.get_logger()

FUZZY_TOKEN_THRESHOLD = 0.75


@dataclass(frozen=True)
class KeywordWeights:
    exact: float
    contains: float
    fuzzy: float


PRIMARY_WEIGHTS = KeywordWeights(exact=1.0, contains=0.7, fuzzy=0.5)
SECONDARY_WEIGHTS = KeywordWeights(exact=1.0, contains=0.8, fuzzy=0.6)


@dataclass
class PatternMatch:
    """A pattern accepted for a bank entry, with its ranking score."""
    pattern: Pattern
    keyword_score: float
    score: float


def fingerprint(text: Optional[str]) -> str:
    """Space-joined top vendor keywords of a description."""
    return " ".join(extract_vendor_keywords(text))


def keyword_match_score(
    entry_tokens: List[str],
    pattern_tokens: List[str],
    weights: KeywordWeights = PRIMARY_WEIGHTS,
) -> float:
    """
    Fuzzy overlap of two token lists.

    Each pattern token takes its best weight against the entry tokens
    (equality, containment, then edit distance); the sum is divided by the
    larger token count.
    """
    if not entry_tokens or not pattern_tokens:
        return 0.0

    total = 0.0
    for pattern_token in pattern_tokens:
        best = 0.0
        for entry_token in entry_tokens:
            if entry_token == pattern_token:
                best = weights.exact
                break
            if entry_token in pattern_token or pattern_token in entry_token:
                best = max(best, weights.contains)
            elif levenshtein_similarity(entry_token, pattern_token) >= FUZZY_TOKEN_THRESHOLD:
                best = max(best, weights.fuzzy)
        total += best

    return total / max(len(entry_tokens), len(pattern_tokens))


class PatternStore:
    """
    In-memory collection of learned patterns with JSON persistence.
    """

    def __init__(
        self,
        patterns: Optional[List[Pattern]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self._patterns: Dict[str, Pattern] = {}
        for pattern in patterns or []:
            self._patterns[pattern.id] = pattern

    def __len__(self) -> int:
        return len(self._patterns)

    @property
    def patterns(self) -> List[Pattern]:
        return list(self._patterns.values())

    def get(self, pattern_id: Optional[str]) -> Optional[Pattern]:
        return self._patterns.get(pattern_id) if pattern_id else None

    def find_best(self, entry: BankEntry) -> Optional[PatternMatch]:
        """
        Best pattern for a bank entry, ranked by
        confidence * 0.6 + keyword score * 0.25 + usage boost.
        """
        entry_tokens = extract_vendor_keywords(entry.description)
        if not entry_tokens:
            return None

        best: Optional[PatternMatch] = None
        for pattern in self._patterns.values():
            pattern_tokens = pattern.keywords
            if not pattern_tokens:
                continue
            if pattern.direction != entry.direction:
                continue
            if not pattern.accepts_amount(entry.abs_cents):
                continue

            kw_score = keyword_match_score(entry_tokens, pattern_tokens, PRIMARY_WEIGHTS)
            if kw_score < self.settings.pattern_keyword_threshold:
                continue

            usage_boost = min(pattern.match_count / 20, 0.15)
            score = pattern.confidence_score * 0.6 + kw_score * 0.25 + usage_boost
            if best is None or score > best.score:
                best = PatternMatch(pattern=pattern, keyword_score=kw_score, score=score)

        return best

    def suggest_expense_type(self, entry: BankEntry) -> Optional[PatternMatch]:
        """Secondary expense-type hint for a debit from patterns that carry one."""
        if entry.is_credit:
            return None
        entry_tokens = extract_vendor_keywords(entry.description)
        if not entry_tokens:
            return None

        best: Optional[PatternMatch] = None
        for pattern in self._patterns.values():
            if not pattern.expense_type_id or pattern.direction != entry.direction:
                continue
            kw_score = keyword_match_score(entry_tokens, pattern.keywords, SECONDARY_WEIGHTS)
            if kw_score == 0:
                continue

            usage_boost = min(pattern.match_count / 10, 0.2)
            score = min(kw_score * 0.6 + pattern.confidence_score * 0.2 + usage_boost, 0.99)
            if score < self.settings.pattern_secondary_threshold:
                continue
            if best is None or score > best.score:
                best = PatternMatch(pattern=pattern, keyword_score=kw_score, score=score)

        return best

    def learn(
        self,
        entry: BankEntry,
        target_type: TargetType,
        loan_id: Optional[str] = None,
        investor_id: Optional[str] = None,
        expense_type_id: Optional[str] = None,
        split_ratios: Optional[SplitRatios] = None,
    ) -> Optional[Pattern]:
        """
        Record a human-confirmed create decision.

        Reinforces a similar pattern of the same target type, otherwise
        creates a new one with a band around the observed amount.
        Returns None when the description yields no fingerprint.
        """
        text = fingerprint(entry.description)
        if not text:
            return None

        for pattern in self._patterns.values():
            if pattern.target_type != target_type:
                continue
            if keyword_similarity(pattern.keyword_fingerprint, text) > self.settings.pattern_similarity_threshold:
                if split_ratios is not None:
                    pattern.split_ratios = split_ratios
                return self.reinforce(pattern.id, self.settings.pattern_reinforce_step)

        band = self.settings.pattern_amount_band
        pattern = Pattern(
            keyword_fingerprint=text,
            description_pattern=text,
            amount_min_cents=int(entry.abs_cents * (1 - band)),
            amount_max_cents=int(round(entry.abs_cents * (1 + band))),
            direction=entry.direction,
            bank_source=entry.bank_source,
            target_type=target_type,
            loan_id=loan_id,
            investor_id=investor_id,
            expense_type_id=expense_type_id,
            split_ratios=split_ratios or SplitRatios(),
            confidence_score=self.settings.pattern_initial_confidence,
        )
        self._patterns[pattern.id] = pattern
        logger.info(
            "Pattern learned",
            pattern_id=pattern.id,
            fingerprint=text,
            target_type=target_type.value,
        )
        return pattern

    def reinforce(self, pattern_id: str, step: float) -> Optional[Pattern]:
        """Count another confirmed use and raise confidence by step."""
        pattern = self._patterns.get(pattern_id)
        if pattern is None:
            logger.warning("Pattern not found for reinforcement", pattern_id=pattern_id)
            return None
        pattern.match_count += 1
        pattern.confidence_score = min(1.0, pattern.confidence_score + step)
        pattern.last_used_at = utcnow()
        logger.info(
            "Pattern reinforced",
            pattern_id=pattern.id,
            match_count=pattern.match_count,
            confidence=round(pattern.confidence_score, 3),
        )
        return pattern

    @classmethod
    def load(cls, path: Path, settings: Optional[Settings] = None) -> "PatternStore":
        """Load patterns from a JSON file; a missing file yields an empty store."""
        path = Path(path)
        if not path.exists():
            logger.info("No pattern file found, starting empty", path=str(path))
            return cls(settings=settings)

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        patterns = [Pattern.from_dict(item) for item in data.get("patterns", [])]
        logger.info("Patterns loaded", path=str(path), count=len(patterns))
        return cls(patterns, settings=settings)

    def save(self, path: Path) -> Path:
        """Write all patterns to a JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "saved_at": utcnow().isoformat(),
            "total_patterns": len(self._patterns),
            "patterns": [p.to_dict() for p in self._patterns.values()],
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

        logger.info("Patterns saved", path=str(path), count=len(self._patterns))
        return path
