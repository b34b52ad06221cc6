"""
tariffprop.keys — Hierarchy keys for the Section → Chapter → HS4 tree.

A key is one of three frozen value objects:

    SectionKey("1")
    ChapterKey("1", "01")
    HS4Key("1", "01", "0101")

Keys compare and hash structurally, so IDs containing "_" can never
collide. str(key) gives the "_"-joined display form ("1_01_0101"); it is
never parsed back into a key.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from tariffprop.constants import (
    KEY_SEPARATOR,
    LEVEL_CHAPTER,
    LEVEL_HS4,
    LEVEL_SECTION,
    VALID_LEVEL_TYPES,
)


@dataclass(frozen=True, slots=True)
class SectionKey:
    section_id: str

    @property
    def level(self) -> str:
        return LEVEL_SECTION

    def __str__(self) -> str:
        return self.section_id


@dataclass(frozen=True, slots=True)
class ChapterKey:
    section_id: str
    chapter_id: str

    @property
    def level(self) -> str:
        return LEVEL_CHAPTER

    @property
    def section(self) -> SectionKey:
        return SectionKey(self.section_id)

    def __str__(self) -> str:
        return KEY_SEPARATOR.join((self.section_id, self.chapter_id))


@dataclass(frozen=True, slots=True)
class HS4Key:
    section_id: str
    chapter_id: str
    hs4_code: str

    @property
    def level(self) -> str:
        return LEVEL_HS4

    @property
    def section(self) -> SectionKey:
        return SectionKey(self.section_id)

    @property
    def chapter(self) -> ChapterKey:
        return ChapterKey(self.section_id, self.chapter_id)

    def __str__(self) -> str:
        return KEY_SEPARATOR.join((self.section_id, self.chapter_id, self.hs4_code))


HierarchyKey = Union[SectionKey, ChapterKey, HS4Key]


def make_key(
    level_type: str,
    section_id: str,
    chapter_id: Optional[str] = None,
    hs4_code: Optional[str] = None,
) -> HierarchyKey:
    """Build the key for a node at the given level.

    Raises ValueError for an unknown level, or when a component the level
    needs is missing.
    """
    if level_type not in VALID_LEVEL_TYPES:
        raise ValueError(
            f"Unknown level type '{level_type}'. Must be one of {sorted(VALID_LEVEL_TYPES)}."
        )
    if level_type == LEVEL_SECTION:
        return SectionKey(str(section_id))
    if chapter_id is None:
        raise ValueError(f"chapter_id is required for level '{level_type}'.")
    if level_type == LEVEL_CHAPTER:
        return ChapterKey(str(section_id), str(chapter_id))
    if hs4_code is None:
        raise ValueError("hs4_code is required for level 'hs4'.")
    return HS4Key(str(section_id), str(chapter_id), str(hs4_code))
