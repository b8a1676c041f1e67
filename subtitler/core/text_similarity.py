"""
Text comparison helpers shared by OCR collapsing, pass merging,
overlap deduplication and the Chinese-subtitle filter.
"""

import re
from difflib import SequenceMatcher

# CJK unified ideographs (basic, extension A, compatibility, extensions B+)
_HAN_RE = re.compile(
    '[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\U00020000-\U0002ebef\U00030000-\U0003134f]'
)
_LATIN_RE = re.compile(r'[A-Za-z]')
_DIGIT_RE = re.compile(r'[0-9]')
_SPACES_RE = re.compile(r'\s+')


def similarity_percent(a: str, b: str) -> float:
    """Similarity of two strings on a 0..100 scale."""
    if not a and not b:
        return 100.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b, autojunk=False).ratio() * 100.0


def normalize_compact(text: str) -> str:
    """Lowercase and keep only letters and digits."""
    return ''.join(ch for ch in (text or '').lower() if ch.isalnum())


def normalize_words(text: str) -> str:
    """Lowercase; every run of non letters/digits becomes a single space."""
    spaced = ''.join(ch if ch.isalnum() else ' ' for ch in (text or '').lower())
    return _SPACES_RE.sub(' ', spaced).strip()


def is_similar_compact(a: str, b: str, threshold: float) -> bool:
    """OCR comparison: exact match after normalization, or similarity >= threshold."""
    left = normalize_compact(a)
    right = normalize_compact(b)
    if not left or not right:
        return False
    if left == right:
        return True
    return similarity_percent(left, right) >= threshold


def is_similar_words(a: str, b: str, threshold: float) -> bool:
    left = normalize_words(a)
    right = normalize_words(b)
    if not left or not right:
        return False
    if left == right:
        return True
    return similarity_percent(left, right) >= threshold


def count_han(text: str) -> int:
    return len(_HAN_RE.findall(text or ''))


def pick_preferred_text(left: str, right: str) -> str:
    """Prefer the text with more Han characters, else the longer one."""
    left = (left or '').strip()
    right = (right or '').strip()
    if not left:
        return right
    if not right:
        return left
    left_han = count_han(left)
    right_han = count_han(right)
    if left_han != right_han:
        return left if left_han > right_han else right
    return right if len(right) > len(left) else left


def is_likely_chinese(text: str) -> bool:
    """Heuristic for OCR noise in Chinese subtitle tracks."""
    text = (text or '').strip()
    if not text:
        return False

    han = count_han(text)
    latin = len(_LATIN_RE.findall(text))
    digits = len(_DIGIT_RE.findall(text))
    total = han + latin + digits

    if total == 0 or han == 0:
        return False

    han_ratio = han / total
    latin_ratio = (latin + digits) / total

    if total <= 2:
        return han_ratio >= 0.5 and latin_ratio <= 0.2

    if han_ratio < 0.6:
        return False

    if latin_ratio > 0.2 and han_ratio < 0.8:
        return False

    return True
