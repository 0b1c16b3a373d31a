from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

THEME_ICON_COUNT = 3
CORE_ICON_COUNT = 2


@dataclass(frozen=True)
class Element:
    id: str
    name: str
    icon: str
    is_whisp: bool = False

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "icon": self.icon}


@dataclass(frozen=True)
class Theme:
    id: str
    name: str
    elements: Tuple[Element, ...]
    is_core: bool = False

    @property
    def whisps(self) -> List[Element]:
        return [element for element in self.elements if element.is_whisp]

    @property
    def icons(self) -> List[Element]:
        return [element for element in self.elements if not element.is_whisp]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_core": self.is_core,
            "element_count": len(self.elements),
        }


FALLBACK_THEMES = [
    {
        "id": "travel",
        "name": "Travel",
        "elements": [
            {"id": "travel-passport", "name": "Passport", "icon": "passport", "is_whisp": True},
            {"id": "travel-suitcase", "name": "Suitcase", "icon": "suitcase"},
            {"id": "travel-plane", "name": "Plane", "icon": "plane"},
            {"id": "travel-map", "name": "Map", "icon": "map"},
        ],
    },
    {
        "id": "core-basics",
        "name": "Basics",
        "core": True,
        "elements": [
            {"id": "core-sun", "name": "Sun", "icon": "sun"},
            {"id": "core-heart", "name": "Heart", "icon": "heart"},
            {"id": "core-clock", "name": "Clock", "icon": "clock"},
        ],
    },
]


class ThemeCatalog:
    """Read-only catalogue of themes and their elements."""

    def __init__(self, themes: List[Theme]):
        self._themes: Dict[str, Theme] = {theme.id: theme for theme in themes}
        self._elements: Dict[str, Element] = {
            element.id: element for theme in themes for element in theme.elements
        }

    @classmethod
    def from_path(cls, path: str | Path) -> "ThemeCatalog":
        themes_path = Path(path)
        raw_themes = FALLBACK_THEMES
        if themes_path.exists():
            try:
                payload = json.loads(themes_path.read_text(encoding="utf-8"))
                if isinstance(payload, dict):
                    payload = payload.get("themes")
                if isinstance(payload, list) and payload:
                    raw_themes = payload
            except json.JSONDecodeError as exc:
                logger.warning("Theme catalogue %s is not valid JSON: %s", themes_path, exc)
        else:
            logger.warning("Theme catalogue %s not found; using built-in themes.", themes_path)
        return cls([theme for theme in map(cls._parse_theme, raw_themes) if theme])

    @staticmethod
    def _parse_theme(raw) -> Optional[Theme]:
        if not isinstance(raw, dict):
            return None
        theme_id = str(raw.get("id") or "").strip()
        name = str(raw.get("name") or "").strip()
        if not theme_id or not name:
            return None
        elements = []
        for item in raw.get("elements") or []:
            if not isinstance(item, dict):
                continue
            element_id = str(item.get("id") or "").strip()
            element_name = str(item.get("name") or "").strip()
            if not element_id or not element_name:
                continue
            elements.append(
                Element(
                    id=element_id,
                    name=element_name,
                    icon=str(item.get("icon") or element_name.lower()),
                    is_whisp=bool(item.get("is_whisp")),
                )
            )
        return Theme(
            id=theme_id,
            name=name,
            elements=tuple(elements),
            is_core=bool(raw.get("core") or raw.get("is_core")),
        )

    def list_themes(self, *, include_core: bool = False) -> List[Theme]:
        return [
            theme
            for theme in self._themes.values()
            if include_core or not theme.is_core
        ]

    def get_theme(self, theme_id: str) -> Optional[Theme]:
        return self._themes.get(str(theme_id or ""))

    def get_element(self, element_id: str) -> Optional[Element]:
        return self._elements.get(str(element_id or ""))

    def pick_whisp(self, theme: Theme, rng: random.Random) -> Optional[Element]:
        candidates = theme.whisps or list(theme.elements)
        if not candidates:
            return None
        return rng.choice(candidates)

    def pick_icons(self, theme: Theme, rng: random.Random) -> List[Element]:
        """Three icons from the theme followed by two from the core themes."""
        core_pool = [
            element
            for core in self._themes.values()
            if core.is_core and core.id != theme.id
            for element in core.elements
        ]
        picked = self._sample(theme.icons, THEME_ICON_COUNT, rng)
        picked += self._sample(core_pool, CORE_ICON_COUNT, rng)
        return picked

    @staticmethod
    def _sample(pool: List[Element], count: int, rng: random.Random) -> List[Element]:
        items = list(pool)
        for index in range(len(items) - 1, 0, -1):
            swap_index = rng.randint(0, index)
            items[index], items[swap_index] = items[swap_index], items[index]
        return items[:count]
