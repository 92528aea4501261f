"""Collectible disease characters unlocked by completing cases."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .case_schema import is_non_empty_str, path

RARITIES: Tuple[str, ...] = ("common", "uncommon", "rare", "legendary")


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class DiseaseCharacter:
    id: str
    case_id: str
    name: str
    category: str
    rarity: str = "common"
    subtitle: str = ""
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CategoryStats:
    caught: int = 0
    total: int = 0


@dataclass(frozen=True)
class CollectionStats:
    total_caught: int
    total_available: int
    completion_percent: int
    by_category: Dict[str, CategoryStats] = field(default_factory=dict)


class CharacterCatalog:
    """The fixed set of characters a player can collect."""

    def __init__(self, characters: Iterable[DiseaseCharacter] = ()) -> None:
        self._characters: List[DiseaseCharacter] = list(characters)
        self._by_id = {character.id: character for character in self._characters}

    def __iter__(self) -> Iterator[DiseaseCharacter]:
        return iter(self._characters)

    def __len__(self) -> int:
        return len(self._characters)

    def __contains__(self, character_id: object) -> bool:
        return character_id in self._by_id

    def get(self, character_id: str) -> Optional[DiseaseCharacter]:
        return self._by_id.get(character_id)

    def by_case_id(self, case_id: str) -> Optional[DiseaseCharacter]:
        for character in self._characters:
            if character.case_id == case_id:
                return character
        return None

    def by_category(self, category: str) -> List[DiseaseCharacter]:
        return [character for character in self._characters if character.category == category]

    def stats(self, caught: Mapping[str, Any]) -> CollectionStats:
        """Summarise which catalog characters appear in ``caught``.

        Ids in ``caught`` that are not in the catalog are ignored.
        """
        by_category: Dict[str, CategoryStats] = {}
        total_caught = 0
        for character in self._characters:
            current = by_category.get(character.category, CategoryStats())
            is_caught = character.id in caught
            if is_caught:
                total_caught += 1
            by_category[character.category] = CategoryStats(
                caught=current.caught + (1 if is_caught else 0),
                total=current.total + 1,
            )
        total = len(self._characters)
        percent = round_half_up(total_caught / total * 100) if total > 0 else 0
        return CollectionStats(
            total_caught=total_caught,
            total_available=total,
            completion_percent=percent,
            by_category=by_category,
        )


def validate_characters(data: Any) -> List[str]:
    errors: List[str] = []
    if not isinstance(data, list):
        return [f"{path('characters')}: must be a list of character objects."]
    seen: set[str] = set()
    for index, entry in enumerate(data):
        entry_path = path("characters", index)
        if not isinstance(entry, Mapping):
            errors.append(f"{entry_path}: must be an object.")
            continue
        for key in ("id", "caseId", "name", "category"):
            if not is_non_empty_str(entry.get(key)):
                errors.append(f"{entry_path}: requires a non-empty '{key}'.")
        rarity = entry.get("rarity", "common")
        if rarity not in RARITIES:
            errors.append(f"{entry_path}: unknown rarity {rarity!r}.")
        character_id = entry.get("id")
        if isinstance(character_id, str):
            if character_id in seen:
                errors.append(f"{entry_path}: duplicate character id '{character_id}'.")
            seen.add(character_id)
    return errors


def parse_characters(data: Any) -> CharacterCatalog:
    errors = validate_characters(data)
    if errors:
        raise ValueError("Invalid character catalog:\n- " + "\n- ".join(errors))
    return CharacterCatalog(
        DiseaseCharacter(
            id=entry["id"],
            case_id=entry["caseId"],
            name=entry["name"],
            category=entry["category"],
            rarity=entry.get("rarity", "common"),
            subtitle=entry.get("subtitle") or "",
            tags=tuple(tag for tag in entry.get("tags") or () if isinstance(tag, str)),
        )
        for entry in data
    )


def load_characters(path_: Path | str) -> CharacterCatalog:
    with open(path_, "r", encoding="utf-8") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("characters")
    return parse_characters(data)
