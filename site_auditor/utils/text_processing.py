"""Text processing utilities shared by the extractor, scoring and competitor analysis.

``visible_text`` is the single source of page text: word count, readability
and keyword phrases are all computed from its output.
"""

import re
from collections import Counter
from difflib import SequenceMatcher
from typing import Iterable, Optional

import textstat
from bs4 import BeautifulSoup

# Elements whose text never counts as page content.
_NON_CONTENT_TAGS = ("script", "style", "noscript", "template", "svg", "iframe")
# Structural boilerplate excluded from word count.
_BOILERPLATE_TAGS = ("nav", "header", "footer", "aside")
_BOILERPLATE_ROLES = ("navigation", "banner", "contentinfo")

_WORD_RE = re.compile(r"[a-z0-9][a-z0-9'\-]*[a-z0-9]|[a-z0-9]", re.IGNORECASE)

# Above this combined length SequenceMatcher.ratio() is quadratic enough to
# stall an audit, so the multiset upper bound is used instead.
_FULL_RATIO_MAX_CHARS = 200_000

STOPWORDS = frozenset(
    """
    a about above after again against all also am an and any are as at be
    because been before being below between both but by can could did do does
    doing down during each few for from further get had has have having he her
    here hers him his how i if in into is it its itself just me more most my no
    nor not now of off on once only or other our ours out over own same she
    should so some such than that the their theirs them then there these they
    this those through to too under until up us very was we were what when
    where which while who whom why will with would you your yours
    home page click read more learn contact menu skip content cookie cookies
    """.split()
)

# Approximate glyph widths (px) of the search-result title font.
_CHAR_WIDTHS: dict[str, int] = {
    "i": 4, "j": 4, "l": 4, "t": 4, "f": 5, "r": 6,
    "a": 9, "b": 9, "c": 8, "d": 9, "e": 9, "g": 9,
    "h": 9, "k": 8, "n": 9, "o": 9, "p": 9, "q": 9,
    "s": 8, "u": 9, "v": 8, "w": 13, "x": 8, "y": 8, "z": 8,
    "A": 11, "B": 11, "C": 11, "D": 12, "E": 10, "F": 10,
    "G": 12, "H": 12, "I": 5, "J": 7, "K": 11, "L": 9,
    "M": 14, "N": 12, "O": 12, "P": 10, "Q": 12, "R": 11,
    "S": 10, "T": 10, "U": 12, "V": 11, "W": 16, "X": 11,
    "Y": 10, "Z": 10,
    " ": 4, "-": 5, "_": 8, ".": 4, ",": 4, ":": 4, ";": 4,
    "!": 5, "?": 9, "(": 5, ")": 5, "[": 5, "]": 5,
    "|": 4, "/": 5, "\\": 5, "&": 11, "#": 10, "@": 15,
}
_DEFAULT_CHAR_WIDTH = 9


def visible_text(html: str) -> str:
    """Return the human-visible content text of *html*.

    Scripts, styles and structural boilerplate (nav, header, footer, aside
    and their ARIA-role equivalents) are removed before the text is
    collected, and whitespace is collapsed.
    """
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    doomed = soup.find_all(list(_NON_CONTENT_TAGS + _BOILERPLATE_TAGS))
    doomed += soup.find_all(attrs={"role": list(_BOILERPLATE_ROLES)})
    doomed += soup.find_all(attrs={"aria-hidden": "true"})
    for tag in doomed:
        # nested boilerplate is already gone with its parent
        if not tag.decomposed:
            tag.decompose()
    body = soup.body or soup
    text = body.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()


def count_words(text: str) -> int:
    """Count words in text."""
    return len(_WORD_RE.findall(text))


def calculate_readability(text: str) -> Optional[dict[str, float]]:
    """Flesch Reading Ease and average sentence length via textstat.

    Returns ``None`` when the text has no words.
    """
    words = count_words(text)
    if words == 0:
        return None
    sentences = max(textstat.sentence_count(text), 1)
    return {
        "flesch_reading_ease": round(textstat.flesch_reading_ease(text), 1),
        "avg_sentence_length": round(words / sentences, 1),
        "sentence_count": sentences,
    }


def tokenize(text: str) -> list[str]:
    return [w.lower() for w in _WORD_RE.findall(text)]


def extract_keyword_phrases(texts: Iterable[str], limit: int = 20) -> list[str]:
    """Most frequent 2-3 word phrases across *texts*.

    Phrases containing a stopword or a bare number are ignored.  Ties are
    broken alphabetically so the output is deterministic.
    """
    counts: Counter = Counter()
    for text in texts:
        if not text:
            continue
        # n-grams never span a sentence boundary
        for chunk in re.split(r"[.!?;:|\n–—]+", text):
            tokens = tokenize(chunk)
            for size in (2, 3):
                for i in range(len(tokens) - size + 1):
                    gram = tokens[i : i + size]
                    if any(t in STOPWORDS or t.isdigit() or len(t) < 2 for t in gram):
                        continue
                    counts[" ".join(gram)] += 1
    ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    return [phrase for phrase, _ in ranked[:limit]]


def similarity_ratio(a: str, b: str) -> float:
    """Similarity of two strings in ``[0, 1]``."""
    if not a and not b:
        return 1.0
    matcher = SequenceMatcher(None, a, b, autojunk=False)
    if len(a) + len(b) > _FULL_RATIO_MAX_CHARS:
        return matcher.quick_ratio()
    return matcher.ratio()


def title_pixel_width(text: str) -> float:
    """Estimated rendered width of a title in a search result."""
    return float(sum(_CHAR_WIDTHS.get(ch, _DEFAULT_CHAR_WIDTH) for ch in text))
