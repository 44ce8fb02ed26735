"""Seal labels and the hand-sign / jutsu reference catalogs."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import yaml

from jutsu_engine.errors import UnknownJutsu

LANGUAGES = ("en", "zh")


class SealLabel(str, Enum):
    """Closed set of seal identifiers shared by every classifier backend.

    Declaration order is the neural model's class index order.
    """
    BIRD = "bird"
    BOAR = "boar"
    DOG = "dog"
    DRAGON = "dragon"
    HARE = "hare"
    HORSE = "horse"
    MONKEY = "monkey"
    OX = "ox"
    RAM = "ram"
    RAT = "rat"
    SNAKE = "snake"
    TIGER = "tiger"

    @classmethod
    def parse(cls, value: str | SealLabel) -> SealLabel:
        if isinstance(value, SealLabel):
            return value
        return cls(str(value).strip().lower())


@dataclass(frozen=True)
class ClassificationResult:
    """Per-frame output of any classifier backend.

    ``label=None`` means nothing recognisable was seen this frame.
    ``tip`` carries corrective advice when the backend provides one.
    """
    label: Optional[SealLabel] = None
    confidence: float = 0.0
    tip: Optional[str] = None

    @property
    def detected(self) -> bool:
        return self.label is not None

    def to_dict(self) -> dict:
        return {
            "label": self.label.value if self.label else None,
            "confidence": round(self.confidence, 3),
            "tip": self.tip,
        }


NO_DETECTION = ClassificationResult()


class Element(Enum):
    FIRE = "fire"
    WATER = "water"
    LIGHTNING = "lightning"
    EARTH = "earth"
    WIND = "wind"
    NEUTRAL = "neutral"


class Difficulty(Enum):
    E = "E-Rank"
    D = "D-Rank"
    C = "C-Rank"
    B = "B-Rank"
    A = "A-Rank"
    S = "S-Rank"


@dataclass(frozen=True)
class LocalizedString:
    en: str
    zh: str = ""

    def get(self, language: str) -> str:
        if language == "zh" and self.zh:
            return self.zh
        return self.en

    @classmethod
    def from_value(cls, value) -> LocalizedString:
        if isinstance(value, LocalizedString):
            return value
        if isinstance(value, dict):
            return cls(en=value.get("en", ""), zh=value.get("zh", ""))
        return cls(en=str(value))


@dataclass(frozen=True)
class HandSign:
    """Static metadata for a single seal."""
    id: SealLabel
    name: LocalizedString
    description: LocalizedString
    image_url: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id.value,
            "name": {"en": self.name.en, "zh": self.name.zh},
            "description": {"en": self.description.en, "zh": self.description.zh},
            "image_url": self.image_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> HandSign:
        return cls(
            id=SealLabel.parse(data["id"]),
            name=LocalizedString.from_value(data.get("name", data["id"])),
            description=LocalizedString.from_value(data.get("description", "")),
            image_url=data.get("image_url", ""),
        )


@dataclass(frozen=True)
class Jutsu:
    """An ordered sequence of seals that must be performed to activate."""
    id: str
    name: LocalizedString
    description: LocalizedString
    sequence: tuple[SealLabel, ...]
    element: Element = Element.NEUTRAL
    difficulty: Difficulty = Difficulty.C
    video_url: Optional[str] = None

    def __post_init__(self):
        if not self.sequence:
            raise ValueError(f"Jutsu {self.id!r} needs at least one seal")

    def __len__(self) -> int:
        return len(self.sequence)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": {"en": self.name.en, "zh": self.name.zh},
            "description": {"en": self.description.en, "zh": self.description.zh},
            "sequence": [s.value for s in self.sequence],
            "element": self.element.value,
            "difficulty": self.difficulty.value,
            "video_url": self.video_url,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Jutsu:
        return cls(
            id=data["id"],
            name=LocalizedString.from_value(data.get("name", data["id"])),
            description=LocalizedString.from_value(data.get("description", "")),
            sequence=tuple(SealLabel.parse(s) for s in data.get("sequence", [])),
            element=Element(data.get("element", "neutral")),
            difficulty=Difficulty(data.get("difficulty", "C-Rank")),
            video_url=data.get("video_url"),
        )


_IMAGE_BASE = "https://raw.githubusercontent.com/the-muda-organization/naruto-hand-signs/master/public/images"


def _sign(label: SealLabel, en: str, zh: str, desc_en: str, desc_zh: str) -> HandSign:
    return HandSign(
        id=label,
        name=LocalizedString(en, zh),
        description=LocalizedString(desc_en, desc_zh),
        image_url=f"{_IMAGE_BASE}/{label.value}.png",
    )


DEFAULT_HAND_SIGNS: tuple[HandSign, ...] = (
    _sign(SealLabel.SNAKE, "Snake (Mi)", "巳 (蛇)",
          "Interlace all fingers of both hands.", "双手手指交叉叠放。"),
    _sign(SealLabel.RAM, "Ram (Hitsuji)", "未 (羊)",
          "Extend index and middle fingers of both hands, with left covering right.",
          "竖起中指和食指，左手放在右手上面。"),
    _sign(SealLabel.MONKEY, "Monkey (Saru)", "申 (猴)",
          "Right hand flat on top of left hand palm.", "右手平放在左手掌心上。"),
    _sign(SealLabel.BOAR, "Boar (I)", "亥 (猪)",
          "Form fists and press the knuckles together.", "握紧双拳，手心向下，指关节相对。"),
    _sign(SealLabel.HORSE, "Horse (Uma)", "午 (马)",
          "Extend index fingers and press them together.", "双手食指相对，其余手指交叉。"),
    _sign(SealLabel.TIGER, "Tiger (Tora)", "寅 (虎)",
          "Clasp hands together and extend index and thumb.", "双手合十，拇指和食指并拢竖起。"),
    _sign(SealLabel.OX, "Ox (Ushi)", "丑 (牛)",
          "Right hand fingers on top of left hand flat fingers.", "右手横放，左手手指伸直按在右手背。"),
    _sign(SealLabel.DOG, "Dog (Inu)", "戌 (狗)",
          "Place left hand flat on top of right fist.", "左手平放在右拳上方。"),
    _sign(SealLabel.BIRD, "Bird (Tori)", "酉 (鸟)",
          "Touch the tips of your fingers together in an angular shape.",
          "双手手指交叉，食指和拇指形成三角形尖角。"),
)

DEFAULT_JUTSU: tuple[Jutsu, ...] = (
    Jutsu(
        id="chidori",
        name=LocalizedString("Chidori", "雷遁·千鸟"),
        description=LocalizedString(
            "Concentrates lightning chakra into the palm.",
            "将大量查克拉集中在手上形成高强度电流。",
        ),
        sequence=(SealLabel.OX, SealLabel.RAM, SealLabel.MONKEY),
        element=Element.LIGHTNING,
        difficulty=Difficulty.A,
    ),
    Jutsu(
        id="summoning",
        name=LocalizedString("Summoning Jutsu", "通灵之术"),
        description=LocalizedString(
            "A space-time ninjutsu that allows the user to summon animals.",
            "时空间忍术，允许忍者召唤与其签订契约的生物。",
        ),
        sequence=(SealLabel.BOAR, SealLabel.DOG, SealLabel.BIRD, SealLabel.MONKEY, SealLabel.RAM),
        element=Element.NEUTRAL,
        difficulty=Difficulty.B,
    ),
    Jutsu(
        id="fireball",
        name=LocalizedString("Great Fireball Technique", "火遁·豪火球之术"),
        description=LocalizedString(
            "A powerful technique that kneads chakra into fire.",
            "将查克拉转化为火焰，从口中吐出巨大的火球。",
        ),
        sequence=(
            SealLabel.SNAKE, SealLabel.RAM, SealLabel.MONKEY,
            SealLabel.BOAR, SealLabel.HORSE, SealLabel.TIGER,
        ),
        element=Element.FIRE,
        difficulty=Difficulty.C,
    ),
)


class Catalog:
    """Read-only lookup of hand signs and jutsu by id."""

    def __init__(
        self,
        signs: Optional[list[HandSign]] = None,
        jutsu: Optional[list[Jutsu]] = None,
    ):
        self._signs: dict[SealLabel, HandSign] = {}
        self._jutsu: dict[str, Jutsu] = {}
        for sign in signs or []:
            self._signs[sign.id] = sign
        for entry in jutsu or []:
            self._jutsu[entry.id] = entry

    def sign(self, label: str | SealLabel) -> HandSign:
        try:
            key = SealLabel.parse(label)
        except ValueError:
            raise UnknownJutsu(f"Unknown seal: {label}") from None
        if key not in self._signs:
            raise UnknownJutsu(f"No hand sign entry for seal: {key.value}")
        return self._signs[key]

    def jutsu(self, jutsu_id: str) -> Jutsu:
        if jutsu_id not in self._jutsu:
            raise UnknownJutsu(f"Unknown jutsu: {jutsu_id}")
        return self._jutsu[jutsu_id]

    def sign_name(self, label: str | SealLabel, language: str = "en") -> str:
        """Display name of a seal, falling back to the bare label."""
        try:
            return self.sign(label).name.get(language)
        except UnknownJutsu:
            return str(getattr(label, "value", label)).capitalize()

    @property
    def signs(self) -> list[HandSign]:
        return list(self._signs.values())

    @property
    def jutsu_list(self) -> list[Jutsu]:
        return list(self._jutsu.values())

    def __iter__(self) -> Iterator[Jutsu]:
        return iter(self._jutsu.values())

    def __len__(self) -> int:
        return len(self._jutsu)

    def __contains__(self, jutsu_id: object) -> bool:
        return jutsu_id in self._jutsu

    def to_dict(self) -> dict:
        return {
            "signs": [s.to_dict() for s in self._signs.values()],
            "jutsu": [j.to_dict() for j in self._jutsu.values()],
        }

    @classmethod
    def from_yaml(cls, path: str | Path) -> Catalog:
        """Load a catalog from YAML with top-level ``signs`` and ``jutsu`` lists."""
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        signs = [HandSign.from_dict(s) for s in data.get("signs", [])]
        jutsu = [Jutsu.from_dict(j) for j in data.get("jutsu", [])]
        return cls(signs, jutsu)

    def to_yaml(self, path: str | Path):
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, allow_unicode=True, sort_keys=False)

    @classmethod
    def with_defaults(cls) -> Catalog:
        """Catalog with the built-in signs and jutsu."""
        return cls(list(DEFAULT_HAND_SIGNS), list(DEFAULT_JUTSU))
