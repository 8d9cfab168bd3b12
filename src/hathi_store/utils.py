"""Utility functions for the Hathi storage layer."""
import re


def slug_to_sentence_case(slug: str) -> str:
    """Convert a context slug into its display form.

    Each hyphen-separated word gets an upper-case first letter and a
    lower-cased remainder; words are joined with spaces.

    Examples:
        "test-context-a" -> "Test Context A"
        "machine-learning" -> "Machine Learning"
        "API" -> "Api"

    Args:
        slug: The context slug.

    Returns:
        The display name, or "" for an empty slug.
    """
    if not slug:
        return ""
    return " ".join(word[:1].upper() + word[1:].lower() for word in slug.split("-"))


def sentence_case_to_slug(sentence: str) -> str:
    """Convert a display name back to a context slug.

    Examples:
        "Test Context A" -> "test-context-a"
        "  Machine   Learning " -> "machine-learning"
    """
    if not sentence:
        return ""
    return re.sub(r"\s+", "-", sentence.strip().lower())


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)


def dedupe_preserving_order(values) -> list:
    """Drop repeated values while keeping first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result
