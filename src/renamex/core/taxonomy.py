"""Candidate-label taxonomies and canonical-label resolution.

Each category (theme, style) is an ordered list of canonical entries. The
synonyms of every entry are sent to the classifier as prompts; whichever
synonym wins is mapped back to the entry's key.
"""

from __future__ import annotations

import unicodedata
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

UNKNOWN_LABEL = "unknown"


class Category(StrEnum):
    THEME = "theme"
    STYLE = "style"


def normalize_label(text: str) -> str:
    """Trim, case-fold and strip diacritics so 'Leão ' matches 'leao'."""
    decomposed = unicodedata.normalize("NFKD", text.strip().casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


@dataclass(frozen=True)
class LabelOption:
    """A canonical label and the synonyms that resolve to it."""

    key: str
    candidates: tuple[str, ...]


@dataclass(frozen=True)
class Taxonomy:
    """Ordered label options for one category.

    The normalized-candidate lookup table is built once at construction. When
    two options share a normalized candidate the earlier option keeps it.
    """

    category: Category
    options: tuple[LabelOption, ...]
    _lookup: dict[str, str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        lookup: dict[str, str] = {}
        for option in self.options:
            for candidate in option.candidates:
                lookup.setdefault(normalize_label(candidate), option.key)
        object.__setattr__(self, "_lookup", lookup)

    def __iter__(self) -> Iterator[LabelOption]:
        return iter(self.options)

    def __len__(self) -> int:
        return len(self.options)

    @property
    def keys(self) -> list[str]:
        return [option.key for option in self.options]

    def flatten_candidates(self) -> list[str]:
        return flatten_candidates(self.options)

    def canonicalize(self, raw_label: str) -> str:
        return self._lookup.get(normalize_label(raw_label), raw_label)

    def covers(self, raw_label: str) -> bool:
        """Return True if ``raw_label`` resolves to one of this taxonomy's keys."""
        return normalize_label(raw_label) in self._lookup


def flatten_candidates(options: Iterable[LabelOption]) -> list[str]:
    """Concatenate every option's candidates in order, duplicates included."""
    return [candidate for option in options for candidate in option.candidates]


def canonicalize(taxonomy: Taxonomy, raw_label: str) -> str:
    """Map a predicted label to its canonical key, or return it unchanged on a miss."""
    return taxonomy.canonicalize(raw_label)


# ---------------------------------------------------------------------------
# Default taxonomies
# ---------------------------------------------------------------------------

THEME_TAXONOMY = Taxonomy(
    category=Category.THEME,
    options=(
        LabelOption("leão", ("leão", "leao", "lion")),
        LabelOption("lobo", ("lobo", "wolf")),
        LabelOption("onça", ("onça", "onca", "jaguar", "leopard")),
        LabelOption("jesus", ("jesus", "cristo", "jesus cristo", "christ")),
        LabelOption("pequena sereia", ("pequena sereia", "ariel", "the little mermaid")),
        LabelOption("caveira", ("caveira", "skull")),
        LabelOption("rosa", ("rosa", "rose")),
        LabelOption("dragão", ("dragão", "dragao", "dragon")),
        LabelOption("dog", ("dog", "cachorro", "puppy")),
    ),
)

STYLE_TAXONOMY = Taxonomy(
    category=Category.STYLE,
    options=(
        LabelOption("realismo", ("realismo", "realistic", "realism")),
        LabelOption(
            "realismo-pb",
            (
                "realismo pb",
                "realismo preto e branco",
                "preto e branco realista",
                "black and white realistic",
                "bw realistic",
            ),
        ),
        LabelOption("fineline", ("fineline", "fine line", "linha fina")),
        LabelOption("geométrico", ("geométrico", "geometrico", "geometric")),
        LabelOption("mandala", ("mandala",)),
        LabelOption("aquarela", ("aquarela", "watercolor", "watercolour")),
        LabelOption("religiosa", ("religiosa", "religious", "religion")),
        LabelOption("escrita", ("escrita", "lettering", "tipografia", "hand lettering")),
    ),
)

TAXONOMIES: dict[Category, Taxonomy] = {
    Category.THEME: THEME_TAXONOMY,
    Category.STYLE: STYLE_TAXONOMY,
}
