"""
Edit-distance based fuzzy string comparison.
"""


def levenshtein_distance(word1: str, word2: str) -> int:
    """Calculate Levenshtein distance between two words."""
    if len(word1) < len(word2):
        return levenshtein_distance(word2, word1)

    if len(word2) == 0:
        return len(word1)

    previous_row = list(range(len(word2) + 1))
    for i, c1 in enumerate(word1):
        current_row = [i + 1]
        for j, c2 in enumerate(word2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def similarity(str1: str, str2: str) -> float:
    """
    Normalized similarity in [0, 1].

    1.0 means identical, 0.0 means maximally different for the given lengths.
    Two empty strings are identical.
    """
    longest = max(len(str1), len(str2))
    if longest == 0:
        return 1.0

    distance = levenshtein_distance(str1, str2)
    return (longest - distance) / longest


__all__ = ["levenshtein_distance", "similarity"]
