"""
Token Estimation
-----------------
A cheap, dependency-free token estimate used on every hot path (chunk sizing,
rate-limiter token budgets, embedding input guards).

Two estimates are taken and the larger one wins.

Character estimate:
  tokens = len(text) / 3.8
           - 0.2 per whitespace run      (spaces are usually merged into the next token)
           + 0.3 per digit run           (numbers fragment into several tokens)
           + 0.5 per camelCase boundary  (identifiers split at case changes)
           + 0.3 per punctuation char    (operators / brackets are their own tokens)

Piece estimate, for digit and symbol dense text (JSON, timestamps, ids):
  text is cut the way cl100k_base pre-tokenizes it (words with one leading
  char, digit groups of up to 3, symbol runs, whitespace runs), then
           word        1 per 6 chars + 1 per camelCase boundary
           digit group 1
           symbol run  1 per 2 chars
           whitespace  1

The result is rounded up, minimum 1 for non-empty text. Outside long rare
words a pre-tokenized piece seldom encodes to more tokens than it counts as
here, so the estimate sits at or above cl100k_base counts and sizing against
it errs on the side of smaller chunks rather than overrunning provider input
limits.

Coefficients live on TokenEstimator so they can be retuned;
`exact_token_count` (tiktoken) is the reference used to check the bias.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass
from functools import lru_cache

import tiktoken

# ── Constants ─────────────────────────────────────────────────────────────────

MAX_EMBEDDING_TOKENS = 8191
DEFAULT_CHUNK_SIZE = 512
DEFAULT_CHUNK_OVERLAP = 50

_WHITESPACE_RUN = re.compile(r"\s+")
_DIGIT_RUN = re.compile(r"\d+")
_CAMEL_BOUNDARY = re.compile(r"[a-z][A-Z]")
_SPECIAL_CHAR = re.compile(r"[{}()\[\]<>:;,.!?@#$%^&*+=|\\/-]")
_PIECE = re.compile(
    r"(?P<word>(?i:'(?:[sdmt]|ll|ve|re))|(?:[^\r\n\w]|_)?[^\W\d_]+)"
    r"|(?P<digits>\d{1,3})"
    r"|(?P<symbols> ?(?:[^\s\w]|_)+[\r\n]*)"
    r"|(?P<space>\s+)"
)


@dataclass(frozen=True)
class TokenEstimator:
    chars_per_token: float = 3.8
    whitespace_weight: float = -0.2
    digit_run_weight: float = 0.3
    camel_case_weight: float = 0.5
    special_char_weight: float = 0.3
    chars_per_word_token: float = 6.0
    chars_per_symbol_token: float = 2.0

    def char_estimate(self, text: str) -> float:
        estimate = len(text) / self.chars_per_token
        estimate += len(_WHITESPACE_RUN.findall(text)) * self.whitespace_weight
        estimate += len(_DIGIT_RUN.findall(text)) * self.digit_run_weight
        estimate += len(_CAMEL_BOUNDARY.findall(text)) * self.camel_case_weight
        estimate += len(_SPECIAL_CHAR.findall(text)) * self.special_char_weight
        return estimate

    def piece_estimate(self, text: str) -> float:
        total = 0.0
        for match in _PIECE.finditer(text):
            kind = match.lastgroup
            piece = match.group()
            if kind == "word":
                total += math.ceil(len(piece) / self.chars_per_word_token)
                total += len(_CAMEL_BOUNDARY.findall(piece))
            elif kind == "symbols":
                total += max(1, math.ceil(len(piece.strip()) / self.chars_per_symbol_token))
            else:
                total += 1
        return total

    def count(self, text: str) -> int:
        if not text:
            return 0
        estimate = max(self.char_estimate(text), self.piece_estimate(text))
        return max(1, math.ceil(estimate))


DEFAULT_ESTIMATOR = TokenEstimator()
CHARS_PER_TOKEN = DEFAULT_ESTIMATOR.chars_per_token


def count_tokens(text: str) -> int:
    """Estimated token count of `text` (0 for empty text)."""
    return DEFAULT_ESTIMATOR.count(text)


@lru_cache(maxsize=1)
def _encoding() -> tiktoken.Encoding:
    return tiktoken.get_encoding("cl100k_base")


def exact_token_count(text: str) -> int:
    """Exact cl100k_base count, used to calibrate the estimate."""
    return len(_encoding().encode(text))


def is_within_token_limit(text: str, max_tokens: int = MAX_EMBEDDING_TOKENS) -> bool:
    return count_tokens(text) <= max_tokens


def truncate_to_tokens(text: str, max_tokens: int, suffix: str = "...") -> str:
    """
    Truncate text to roughly `max_tokens`, preferring a clean break.

    Break preference: last sentence end (no suffix), then last paragraph
    break, then last word boundary past 70% of the window, then a hard cut.
    """
    if not text:
        return ""
    if count_tokens(text) <= max_tokens:
        return text

    target_chars = int(max_tokens * CHARS_PER_TOKEN)
    truncated = text[:target_chars]

    sentence = re.match(r"^([\s\S]*[.!?])\s+[A-Z]", truncated)
    if sentence and len(sentence.group(1)) > target_chars * 0.5:
        return sentence.group(1)

    paragraph = re.match(r"^([\s\S]*)\n\n", truncated)
    if paragraph and len(paragraph.group(1)) > target_chars * 0.5:
        return paragraph.group(1) + suffix

    last_space = truncated.rfind(" ")
    if last_space > target_chars * 0.7:
        return truncated[:last_space] + suffix

    return truncated + suffix


def split_at_boundaries(
    text: str,
    target_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> list[str]:
    """
    Split text into windows of about `target_size` estimated tokens.

    Each window ends at the best boundary found in it: paragraph break,
    line break, sentence end, then word boundary. A boundary must sit past
    half the window to be preferred, and past 30% to be used at all;
    otherwise the window is cut hard. Consecutive windows share up to
    `overlap` tokens (capped at half the window).
    """
    if not text or not text.strip():
        return []
    if count_tokens(text) <= target_size:
        return [text]

    target_chars = max(1, int(target_size * CHARS_PER_TOKEN))
    overlap_chars = int(overlap * CHARS_PER_TOKEN)
    safe_overlap = min(overlap_chars, int(target_chars * 0.5))

    segments: list[str] = []
    start = 0
    max_iterations = math.ceil(len(text) / max(1, target_chars - safe_overlap)) + 10
    iterations = 0

    while start < len(text) and iterations < max_iterations:
        iterations += 1
        end = min(start + target_chars, len(text))

        if end < len(text):
            region = text[start:end]
            half = target_chars * 0.5

            breakpoint_ = region.rfind("\n\n")
            if breakpoint_ < half:
                breakpoint_ = region.rfind("\n")
            if breakpoint_ < half:
                sentence = re.match(r"([\s\S]*[.!?])\s+", region)
                if sentence and len(sentence.group(1)) > half:
                    breakpoint_ = len(sentence.group(1))
            if breakpoint_ < half:
                breakpoint_ = region.rfind(" ")
            if breakpoint_ > target_chars * 0.3:
                end = start + breakpoint_ + 1

        segment = text[start:end].strip()
        if segment:
            segments.append(segment)

        start = max(end - safe_overlap, start + 1)

        if len(text) - start < target_chars * 0.3:
            remaining = text[start:].strip()
            if remaining and (not segments or remaining != segments[-1]):
                segments.append(remaining)
            break

    return segments


def split_to_token_limit(text: str, max_tokens: int) -> list[str]:
    """
    Recursively bisect `text` at the boundary nearest its middle until every
    piece's estimate is within `max_tokens`.
    """
    text = text.strip()
    if not text:
        return []
    if count_tokens(text) <= max_tokens or len(text) <= 1:
        return [text]

    middle = len(text) // 2
    cut = -1
    for separator in ("\n\n", "\n", ". ", " "):
        left = text.rfind(separator, 0, middle + 1)
        right = text.find(separator, middle)
        candidates = [p for p in (left, right) if 0 < p < len(text) - 1]
        if candidates:
            cut = min(candidates, key=lambda p: abs(p - middle)) + len(separator.rstrip() or separator)
            break
    if cut <= 0 or cut >= len(text):
        cut = middle

    return split_to_token_limit(text[:cut], max_tokens) + split_to_token_limit(text[cut:], max_tokens)
