"""Language certification scales and level comparison.

Each language has its own ordinal scale; ranks are only meaningful inside
one scale. ``beginner`` is the floor of every scale.

  japanese  JLPT   beginner < n5 < n4 < n3 < n2 < n1
  korean    TOPIK  beginner < topik_1 < ... < topik_6
  english   CEFR   beginner < a1 < a2 < b1 < b2 < c1 < c2
"""

BEGINNER = "beginner"

JAPANESE = "japanese"
KOREAN = "korean"
ENGLISH = "english"

LANGUAGE_SCALES: dict[str, dict[str, int]] = {
    JAPANESE: {BEGINNER: 0, "n5": 1, "n4": 2, "n3": 3, "n2": 4, "n1": 5},
    KOREAN: {
        BEGINNER: 0,
        "topik_1": 1,
        "topik_2": 2,
        "topik_3": 3,
        "topik_4": 4,
        "topik_5": 5,
        "topik_6": 6,
    },
    ENGLISH: {BEGINNER: 0, "a1": 1, "a2": 2, "b1": 3, "b2": 4, "c1": 5, "c2": 6},
}

# Level names are unique across scales, so a level alone identifies its rank.
_ALL_LEVELS: dict[str, int] = {
    level: rank for scale in LANGUAGE_SCALES.values() for level, rank in scale.items()
}

SUPPORTED_LANGUAGES = frozenset(LANGUAGE_SCALES)


def normalize(value: str) -> str:
    return value.strip().lower()


def level_rank(level: str, language: str | None = None) -> int:
    """Return the ordinal rank of ``level``; unknown levels rank 0.

    With ``language`` given, the level must belong to that language's scale
    (a Korean level presented for a Japanese skill ranks 0).
    """
    table = _ALL_LEVELS if language is None else LANGUAGE_SCALES.get(normalize(language), {})
    return table.get(normalize(level), 0)


def is_level_of(level: str, language: str) -> bool:
    """True if ``level`` is a named step on ``language``'s scale."""
    return normalize(level) in LANGUAGE_SCALES.get(normalize(language), {})


def compare_levels(worker_level: str, required_level: str, language: str | None = None) -> bool:
    """True iff the worker's level ranks at or above the required level.

    The caller has already established that both levels belong to the same
    language; pass ``language`` to also reject levels from a foreign scale.
    """
    return level_rank(worker_level, language) >= level_rank(required_level, language)
