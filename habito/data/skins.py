from __future__ import annotations
from typing import Dict, List, NamedTuple


class Skin(NamedTuple):
    id: str
    name: str
    rarity: str


SKINS: List[Skin] = [
    Skin("egbert", "Egbert", "common"),
    Skin("pum", "Pum", "common"),
    Skin("bell", "Bell", "common"),
    Skin("buns", "Buns", "uncommon"),
    Skin("doog", "Doog", "uncommon"),
    Skin("dock", "Dock", "uncommon"),
    Skin("gose", "Gose", "uncommon"),
    Skin("axol", "Axol", "rare"),
    Skin("snee", "Snee", "rare"),
    Skin("turmy", "Turmy", "rare"),
    Skin("boom", "Boom", "rare"),
    Skin("brr", "Brr", "epic"),
    Skin("rac", "Rac", "epic"),
    Skin("ooo", "OOO", "epic"),
    Skin("rad", "Rad", "legendary"),
]

_BY_ID: Dict[str, Skin] = {s.id: s for s in SKINS}


def is_known_skin(skin_id: str) -> bool:
    return skin_id in _BY_ID


def locked_skin_ids(unlocked: List[str]) -> List[str]:
    """Catalog order, so random selection over it is reproducible with a seeded RNG."""
    owned = set(unlocked)
    return [s.id for s in SKINS if s.id not in owned]
