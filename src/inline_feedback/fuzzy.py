"""Text matching primitives for anchor reconciliation.

Provides token-set similarity, context-line scoring, and unique substring
search. Everything here is pure, deterministic, and works on lists of lines
already split on "\\n".
"""

import re
from typing import NamedTuple

from inline_feedback.config import ReconcileSettings

_TOKEN_RE = re.compile(r"[a-z0-9_]+")


def normalize_line_endings(text: str) -> str:
    """Convert CRLF line endings to LF."""
    return text.replace("\r\n", "\n")


def split_lines(text: str) -> list[str]:
    """Split normalized text into lines. A trailing newline yields a final empty line."""
    return normalize_line_endings(text).split("\n")


def get_slice(lines: list[str], start_line: int, end_line: int) -> str:
    """Join lines start_line..end_line (1-indexed, inclusive), clamped to the file."""
    start_idx = max(0, start_line - 1)
    end_idx = max(start_idx, end_line)
    return "\n".join(lines[start_idx:end_idx])


def token_set(text: str) -> set[str]:
    """Case-insensitive alphanumeric/underscore runs."""
    return set(_TOKEN_RE.findall(text.lower()))


def score_text_similarity(
    left: str | None, right: str | None, settings: ReconcileSettings | None = None
) -> float:
    """Similarity of two snippets on a 0-1 scale.

    Weighted blend of token Jaccard similarity and relative length
    difference, computed on whitespace-trimmed text. Identical snippets
    score 1.0.

    Args:
        left: Stored target content
        right: Candidate content
        settings: Weights (defaults to ReconcileSettings())

    Returns:
        Similarity score from 0.0 (unrelated) to 1.0 (identical)
    """
    settings = settings or ReconcileSettings()
    a = (left or "").strip()
    b = (right or "").strip()
    if a == b:
        return 1.0

    left_tokens = token_set(a)
    right_tokens = token_set(b)
    intersection = len(left_tokens & right_tokens)
    union = len(left_tokens) + len(right_tokens) - intersection
    jaccard = 0.0 if union == 0 else intersection / union

    max_len = max(len(a), len(b))
    length_score = 1.0 if max_len == 0 else 1.0 - min(1.0, abs(len(a) - len(b)) / max_len)

    return jaccard * settings.jaccard_weight + length_score * settings.length_weight


class ContextScore(NamedTuple):
    """Exact-match ratio of stored context lines around a candidate."""

    score: float | None  # None when no context was stored
    matched: int
    total: int


def score_context(
    lines: list[str],
    start_line: int,
    target_line_count: int,
    context_before: list[str],
    context_after: list[str],
) -> ContextScore:
    """Count stored context lines that match the file around a candidate.

    Args:
        lines: Current file lines
        start_line: Candidate 1-indexed start line
        target_line_count: Number of lines in the anchored range
        context_before: Stored lines immediately above the anchor
        context_after: Stored lines immediately below the anchor

    Returns:
        ContextScore with matched/total ratio, or score None if nothing was stored
    """
    matched = 0
    total = 0
    line_count = len(lines)

    for i, expected in enumerate(context_before):
        total += 1
        idx = start_line - len(context_before) + i - 1
        if 0 <= idx < line_count and lines[idx] == expected:
            matched += 1

    for i, expected in enumerate(context_after):
        total += 1
        idx = start_line + target_line_count - 1 + i
        if 0 <= idx < line_count and lines[idx] == expected:
            matched += 1

    if total == 0:
        return ContextScore(score=None, matched=0, total=0)
    return ContextScore(score=matched / total, matched=matched, total=total)


def find_unique_exact_match(content: str, target: str | None) -> int | None:
    """Character offset of target in content if it occurs exactly once.

    Overlapping occurrences count, so "aa" in "aaa" is ambiguous.

    Returns:
        Offset of the single occurrence, or None if absent or repeated
    """
    if not target:
        return None

    first = content.find(target)
    if first == -1:
        return None
    if content.find(target, first + 1) != -1:
        return None
    return first


def index_to_line_number(content: str, index: int) -> int:
    """1-indexed line number containing character offset index."""
    return content.count("\n", 0, index) + 1


class MatchCandidate(NamedTuple):
    """A scored candidate start line from the fuzzy scan."""

    line: int  # 1-indexed start line
    score: float  # Combined score
    context_score: float | None
    context_matches: int
    context_total: int


def scan_candidates(
    lines: list[str],
    stored_target: str,
    stored_start_line: int,
    target_line_count: int,
    context_before: list[str],
    context_after: list[str],
    settings: ReconcileSettings | None = None,
) -> tuple[MatchCandidate | None, MatchCandidate | None]:
    """Score every start line in the file and keep the two best.

    The combined score weighs context agreement, target similarity, and
    proximity to the stored position; without stored context only the last
    two are used.

    Returns:
        (best, second_best); either may be None for tiny files
    """
    settings = settings or ReconcileSettings()
    max_start_line = max(1, len(lines) - target_line_count + 1)
    best: MatchCandidate | None = None
    second: MatchCandidate | None = None

    for candidate_start in range(1, max_start_line + 1):
        candidate_end = candidate_start + target_line_count - 1
        target_score = score_text_similarity(
            stored_target, get_slice(lines, candidate_start, candidate_end), settings
        )
        context = score_context(
            lines, candidate_start, target_line_count, context_before, context_after
        )
        distance = abs(candidate_start - stored_start_line)
        proximity_score = 1.0 - min(1.0, distance / settings.proximity_span)

        if context.score is None:
            combined = (
                target_score * settings.no_context_target_weight
                + proximity_score * settings.no_context_proximity_weight
            )
        else:
            combined = (
                context.score * settings.context_weight
                + target_score * settings.target_weight
                + proximity_score * settings.proximity_weight
            )

        candidate = MatchCandidate(
            line=candidate_start,
            score=combined,
            context_score=context.score,
            context_matches=context.matched,
            context_total=context.total,
        )

        if best is None or candidate.score > best.score:
            second = best
            best = candidate
        elif second is None or candidate.score > second.score:
            second = candidate

    return best, second


def accept_candidate(
    best: MatchCandidate | None,
    second: MatchCandidate | None,
    has_context: bool,
    settings: ReconcileSettings | None = None,
) -> int | None:
    """Decide whether the best fuzzy candidate is trustworthy.

    The best candidate is rejected when it is below threshold, when a
    runner-up that also clears the threshold is within ambiguity_delta, or
    when context was stored but none of it matched.

    Returns:
        Accepted 1-indexed start line, or None
    """
    if best is None:
        return None

    settings = settings or ReconcileSettings()
    threshold = (
        settings.threshold_with_context if has_context else settings.threshold_without_context
    )

    strong_enough = best.score >= threshold
    ambiguous = (
        second is not None
        and second.score >= threshold
        and (best.score - second.score) < settings.ambiguity_delta
    )
    has_signal = not has_context or best.context_matches > 0

    if strong_enough and not ambiguous and has_signal:
        return best.line
    return None
