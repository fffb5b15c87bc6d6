import re
import unicodedata
from typing import List, Set

from rapidfuzz.distance import JaroWinkler

from trustproof.schemas import NameMatchResult

TITLES = (
    "mr", "mme", "mlle", "dr", "pr", "prof", "el hadj", "el hadji", "hadj", "hadji",
    "maitre", "cheikh", "imam", "pasteur", "pere", "soeur", "frere",
)
PARTICLES = frozenset({"de", "du", "des", "le", "la", "les", "el", "al", "ben", "ibn", "bint", "ould", "dit"})

# Part pairs below this similarity are not counted as matched
PART_MATCH_FLOOR = 0.7


def normalize_name(name: str) -> str:
    """Lowercase, strip accents and titles, turn apostrophes and hyphens into spaces."""
    text = unicodedata.normalize("NFD", name.lower())
    text = "".join(c for c in text if not unicodedata.combining(c))
    text = re.sub(r"['’`]", " ", text)
    text = re.sub(r"[-–—]", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    for title in TITLES:
        if text.startswith(title + " "):
            text = text[len(title) + 1:]
    return text


def name_parts(name: str) -> List[str]:
    return [p for p in normalize_name(name).split(" ") if len(p) > 1 and p not in PARTICLES]


def match_names(reference: str, candidate: str, threshold: float = 85) -> NameMatchResult:
    """
    Score two names 0..100: 40% whole-name Jaro-Winkler, 40% mean of best
    part-to-part similarities, 20% share of parts that found a partner.
    """
    parts1, parts2 = name_parts(reference), name_parts(candidate)
    if not parts1 or not parts2:
        return NameMatchResult(reference_name=reference, match_score=0, is_match=False,
                               details=["One or both names are empty"])

    details: List[str] = []
    full = JaroWinkler.similarity(" ".join(parts1), " ".join(parts2))
    details.append(f"Whole-name similarity: {round(full * 100)}%")

    used: Set[int] = set()
    total, matched = 0.0, 0
    for part in parts1:
        best_score, best_index = 0.0, -1
        for j, other in enumerate(parts2):
            if j in used:
                continue
            score = JaroWinkler.similarity(part, other)
            if score > best_score:
                best_score, best_index = score, j
        if best_index >= 0 and best_score > PART_MATCH_FLOOR:
            used.add(best_index)
            total += best_score
            matched += 1
            if best_score > 0.9:
                details.append(f'"{part}" ~ "{parts2[best_index]}" ({round(best_score * 100)}%)')

    ratio = matched / max(len(parts1), len(parts2))
    average = total / matched if matched else 0.0
    score = round((full * 0.4 + average * 0.4 + ratio * 0.2) * 100)
    if len(parts1) != len(parts2):
        details.append(f"Different number of name parts: {len(parts1)} vs {len(parts2)}")

    return NameMatchResult(
        reference_name=reference,
        match_score=max(0, min(100, score)),
        is_match=score >= threshold,
        details=details,
    )
