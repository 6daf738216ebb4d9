"""
Tag name normalization.

Produces the collision key used for tag uniqueness: two names that differ
only in case, Unicode compatibility form, or whitespace are the same tag.
The pipeline is pure (no I/O) and idempotent:
``normalize(normalize(x)) == normalize(x)``.
"""

from __future__ import annotations

import logging
import unicodedata

logger = logging.getLogger(__name__)

# Zero-width characters to strip
_ZERO_WIDTH_CHARS: frozenset[str] = frozenset(
    {
        "\u200B",  # ZERO WIDTH SPACE
        "\u200C",  # ZERO WIDTH NON-JOINER
        "\u200D",  # ZERO WIDTH JOINER
        "\uFEFF",  # ZERO WIDTH NO-BREAK SPACE / BOM
    }
)


def clean_display_name(raw_name: str) -> str:
    """
    Tidy a user-supplied name for display without folding its case.

    Strips surrounding whitespace, removes zero-width characters and
    collapses inner runs of whitespace (including tabs and NBSP) to one space.

    Examples
    --------
    >>> clean_display_name("  Harry\\u00a0 Potter ")
    'Harry Potter'
    """
    text = "".join(ch for ch in raw_name if ch not in _ZERO_WIDTH_CHARS)
    return " ".join(text.split())


class TagNormalizationService:
    """
    Service that folds tag names into their uniqueness key.

    Steps, in order:

    1. Strip zero-width characters
    2. NFKC normalize (compatibility forms such as full-width letters fold)
    3. Collapse whitespace runs to single spaces and trim
    4. Casefold

    The result is ``None`` when nothing is left.
    """

    def normalize(self, raw_name: str) -> str | None:
        """
        Normalize *raw_name* into its collision key.

        Parameters
        ----------
        raw_name : str
            The tag name as typed by a user.

        Returns
        -------
        str | None
            The normalized key, or ``None`` for blank input.

        Examples
        --------
        >>> svc = TagNormalizationService()
        >>> svc.normalize("  Harry   POTTER ")
        'harry potter'
        >>> svc.normalize("\\u200b ") is None
        True
        """
        text = "".join(ch for ch in raw_name if ch not in _ZERO_WIDTH_CHARS)
        text = unicodedata.normalize("NFKC", text)
        text = " ".join(text.split())
        text = text.casefold()
        return text if text else None

    def split_names(self, value: str, delimiter: str = ",") -> list[str]:
        """
        Split a delimiter-separated tag string into display names.

        Blank pieces are dropped and repeated names (by normalized key) keep
        only their first occurrence, so the output order follows the input.

        Examples
        --------
        >>> TagNormalizationService().split_names("HP, hp ,, Hermione Granger")
        ['HP', 'Hermione Granger']
        """
        names: list[str] = []
        seen: set[str] = set()
        for piece in value.split(delimiter):
            name = clean_display_name(piece)
            key = self.normalize(name)
            if key is None or key in seen:
                continue
            seen.add(key)
            names.append(name)
        return names
