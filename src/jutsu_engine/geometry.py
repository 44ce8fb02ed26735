"""Rule-based seal classification from tracked hand landmarks.

A finger counts as extended when its tip is clearly farther from the wrist
than its knuckle (MCP joint). Two-hand seals are resolved by an ordered
decision list over per-hand extension flags, wrist height and wrist
separation; the first rule that matches wins.

Only seals with a reliable landmark signature have a rule. Everything else
(e.g. dragon, hare, rat) is never produced by this classifier.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Sequence

import numpy as np

from jutsu_engine.seals import SealLabel

WRIST = 0
FINGER_TIPS = (4, 8, 12, 16, 20)
FINGER_MCPS = (2, 5, 9, 13, 17)
FINGER_NAMES = ("thumb", "index", "middle", "ring", "pinky")
NUM_LANDMARKS = 21

EXTENSION_RATIO = 1.15

# Two-hand thresholds (normalized image units)
MAX_WRIST_DISTANCE = 0.35
CLOSE_WRIST_DISTANCE = 0.15
STACKED_WRIST_OFFSET = 0.08


@dataclass(frozen=True)
class HandShape:
    """Extension flags of one hand plus its wrist position."""
    thumb: bool
    index: bool
    middle: bool
    ring: bool
    pinky: bool
    wrist: np.ndarray

    @property
    def count(self) -> int:
        return sum((self.thumb, self.index, self.middle, self.ring, self.pinky))

    @property
    def flat(self) -> bool:
        return self.count >= 4

    @property
    def fist(self) -> bool:
        return self.count <= 1 and not self.index

    @property
    def index_only(self) -> bool:
        return self.index and not (self.thumb or self.middle or self.ring or self.pinky)

    @property
    def index_and_middle(self) -> bool:
        return self.index and self.middle and not (self.ring or self.pinky)

    @property
    def thumb_and_index(self) -> bool:
        return self.thumb and self.index and not (self.middle or self.ring or self.pinky)


def _as_hand(landmarks) -> Optional[np.ndarray]:
    """Coerce landmarks to a (21, 3) float array, or None if malformed."""
    try:
        arr = np.asarray(landmarks, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if arr.shape != (NUM_LANDMARKS, 3) or not np.all(np.isfinite(arr)):
        return None
    return arr


def finger_states(landmarks) -> list[bool]:
    """Extension flag for each finger, thumb first.

    Raises:
        ValueError: landmarks are not a finite (21, 3) array.
    """
    hand = _as_hand(landmarks)
    if hand is None:
        raise ValueError("Expected 21 landmarks with (x, y, z) each")

    wrist = hand[WRIST]
    states = []
    for tip_idx, mcp_idx in zip(FINGER_TIPS, FINGER_MCPS):
        tip_dist = np.linalg.norm(hand[tip_idx] - wrist)
        mcp_dist = np.linalg.norm(hand[mcp_idx] - wrist)
        states.append(bool(tip_dist > EXTENSION_RATIO * mcp_dist))
    return states


def extended_count(landmarks) -> int:
    return sum(finger_states(landmarks))


def hand_shape(landmarks) -> HandShape:
    hand = _as_hand(landmarks)
    if hand is None:
        raise ValueError("Expected 21 landmarks with (x, y, z) each")
    return HandShape(*finger_states(hand), wrist=hand[WRIST])


def _single_hand(hand: HandShape) -> Optional[SealLabel]:
    # The second hand is usually hidden behind the first, so only the two
    # least ambiguous silhouettes are accepted.
    if hand.count >= 4 and not hand.thumb:
        return SealLabel.MONKEY
    if hand.count <= 1:
        return SealLabel.BOAR
    return None


_TwoHandRule = tuple[SealLabel, Callable[[HandShape, HandShape, float], bool]]


def _one_flat_over_fist(a: HandShape, b: HandShape, _dist: float) -> bool:
    # Image y grows downward: the flat hand rests above the fist.
    if a.flat and b.fist:
        return a.wrist[1] <= b.wrist[1]
    if b.flat and a.fist:
        return b.wrist[1] <= a.wrist[1]
    return False


TWO_HAND_RULES: tuple[_TwoHandRule, ...] = (
    # palm on palm
    (SealLabel.MONKEY, lambda a, b, d: a.flat and b.flat and d < CLOSE_WRIST_DISTANCE),
    # flat fingers laid across each other, one hand higher
    (SealLabel.OX, lambda a, b, d: a.flat and b.flat
        and abs(a.wrist[1] - b.wrist[1]) > STACKED_WRIST_OFFSET),
    (SealLabel.DOG, _one_flat_over_fist),
    (SealLabel.RAM, lambda a, b, d: a.index_and_middle and b.index_and_middle),
    (SealLabel.TIGER, lambda a, b, d: a.thumb_and_index and b.thumb_and_index),
    (SealLabel.HORSE, lambda a, b, d: a.index_only and b.index_only),
    (SealLabel.BOAR, lambda a, b, d: a.fist and b.fist),
)


def _two_hands(first: HandShape, second: HandShape) -> Optional[SealLabel]:
    dist = float(np.linalg.norm(first.wrist - second.wrist))
    if dist >= MAX_WRIST_DISTANCE:
        return None

    for label, rule in TWO_HAND_RULES:
        if rule(first, second, dist):
            return label
    return None


def classify_hands(hands: Sequence) -> Optional[SealLabel]:
    """Classify up to two hands of landmarks into a seal.

    Args:
        hands: Sequence of landmark arrays, each shape (21, 3), in
            normalized image coordinates. Extra hands beyond two are ignored.

    Returns:
        The matched seal, or None. Never raises on malformed input.
    """
    if hands is None:
        return None

    try:
        parsed = [_as_hand(h) for h in list(hands)[:2]]
    except TypeError:
        return None

    if not parsed or any(h is None for h in parsed):
        return None

    shapes = [hand_shape(h) for h in parsed]
    if len(shapes) == 1:
        return _single_hand(shapes[0])
    return _two_hands(shapes[0], shapes[1])
