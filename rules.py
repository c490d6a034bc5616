"""
8-Ball Rules — shot accounting and the turn/foul/group/win state machine.

A shot spans many physics frames. ShotOutcome collects what happened
(cushion contacts, which kinds of ball dropped), ShotClassifier spots the
frame where everything comes to rest, and RuleEngine.finalize_shot turns
the finished outcome into the next MatchState.
"""

import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, Optional

from physics import Ball, CUE_BALL, EIGHT_BALL

logger = logging.getLogger(__name__)

GROUP_SIZE: int = 7
BREAK_MIN_CUSHIONS: int = 4   # a break with no group ball down must drive this many rails


class Player(enum.Enum):
    A = "A"
    B = "B"

    @property
    def other(self) -> "Player":
        return Player.B if self is Player.A else Player.A


class Group(enum.Enum):
    SOLIDS = "solids"
    STRIPES = "stripes"

    @property
    def other(self) -> "Group":
        return Group.STRIPES if self is Group.SOLIDS else Group.SOLIDS


class ShotCategory(enum.Enum):
    CUE = "cue"
    DESIGNATED = "designated"
    SOLID = "solid"
    STRIPE = "stripe"


GROUP_CATEGORY = {
    Group.SOLIDS: ShotCategory.SOLID,
    Group.STRIPES: ShotCategory.STRIPE,
}


class MatchPhase(enum.Enum):
    AWAITING_SHOT = 0
    SELECTING_GROUP = 1
    FINISHED = 2


def categorize(number: int) -> ShotCategory:
    """Map a ball number to exactly one category."""
    if number == CUE_BALL:
        return ShotCategory.CUE
    if number == EIGHT_BALL:
        return ShotCategory.DESIGNATED
    if number < EIGHT_BALL:
        return ShotCategory.SOLID
    return ShotCategory.STRIPE


def group_of(category: ShotCategory) -> Optional[Group]:
    for group, cat in GROUP_CATEGORY.items():
        if cat is category:
            return group
    return None


# ──────────────────────────────────────────────
# Shot accounting
# ──────────────────────────────────────────────

@dataclass
class ShotOutcome:
    """Events of the shot in progress plus the balls still on the table."""
    cushion_hits: int = 0
    pocketed: set = field(default_factory=set)
    pocketed_numbers: list = field(default_factory=list)
    remaining: Dict[Group, int] = field(
        default_factory=lambda: {Group.SOLIDS: GROUP_SIZE, Group.STRIPES: GROUP_SIZE})
    # Groups already empty at the instant the 8-ball dropped
    cleared_at_designated: frozenset = frozenset()

    @property
    def scratch(self) -> bool:
        return ShotCategory.CUE in self.pocketed

    @property
    def designated(self) -> bool:
        return ShotCategory.DESIGNATED in self.pocketed

    def pocketed_group(self, group: Group) -> bool:
        return GROUP_CATEGORY[group] in self.pocketed

    @property
    def any_group_pocketed(self) -> bool:
        return self.pocketed_group(Group.SOLIDS) or self.pocketed_group(Group.STRIPES)

    def record_cushion(self) -> None:
        self.cushion_hits += 1

    def record_pocket(self, number: int) -> ShotCategory:
        category = categorize(number)
        self.pocketed.add(category)
        self.pocketed_numbers.append(number)
        group = group_of(category)
        if group is not None:
            self.remaining[group] = max(0, self.remaining[group] - 1)
        elif category is ShotCategory.DESIGNATED:
            self.cleared_at_designated = frozenset(
                g for g, left in self.remaining.items() if left == 0)
        return category

    def record_event(self, ev: dict) -> None:
        """Fold one physics event into the outcome."""
        kind = ev.get("type")
        if kind == "cushion":
            self.record_cushion()
        elif kind == "pocket":
            self.record_pocket(ev["ball"])

    def reset(self) -> None:
        """Clear per-shot fields. Remaining counts carry over."""
        self.cushion_hits = 0
        self.pocketed = set()
        self.pocketed_numbers = []
        self.cleared_at_designated = frozenset()

    def summary(self) -> dict:
        return {
            "cushion_hits": self.cushion_hits,
            "pocketed": sorted(self.pocketed_numbers),
            "scratch": self.scratch,
            "remaining": {g.value: n for g, n in self.remaining.items()},
        }


def any_moving(balls: Iterable[Ball]) -> bool:
    return any(b.is_moving() for b in balls)


def count_remaining(balls: Iterable[Ball]) -> Dict[Group, int]:
    """Group balls still on the table."""
    counts = {g: 0 for g in Group}
    for b in balls:
        group = group_of(categorize(b.number))
        if b.active and group is not None:
            counts[group] += 1
    return counts


class ShotClassifier:
    """Falling-edge detector over "is any ball moving"."""

    def __init__(self):
        self.was_moving = False
        self.moving = False

    def update(self, moving: bool) -> bool:
        """Feed this frame's state; True exactly when a shot just ended."""
        self.was_moving, self.moving = self.moving, moving
        return self.was_moving and not self.moving

    def observe(self, balls: Iterable[Ball]) -> bool:
        return self.update(any_moving(balls))

    def reset(self) -> None:
        self.was_moving = False
        self.moving = False


# ──────────────────────────────────────────────
# Match state machine
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class MatchState:
    player: Player = Player.A
    required_group: Optional[Group] = None   # None -> open table
    phase: MatchPhase = MatchPhase.AWAITING_SHOT
    is_break: bool = True
    free_shot: bool = False
    winner: Optional[Player] = None
    last_foul: bool = False

    @property
    def is_open(self) -> bool:
        return self.required_group is None

    @property
    def awaiting_group_choice(self) -> bool:
        return self.phase is MatchPhase.SELECTING_GROUP

    @property
    def finished(self) -> bool:
        return self.phase is MatchPhase.FINISHED

    def group_for(self, player: Player) -> Optional[Group]:
        if self.required_group is None:
            return None
        return self.required_group if player is self.player else self.required_group.other


class RuleEngine:
    """Pure transitions from (ShotOutcome, MatchState) to the next MatchState."""

    @staticmethod
    def _pass_turn(state: MatchState, **changes) -> MatchState:
        group = state.required_group.other if state.required_group is not None else None
        return replace(state, player=state.player.other, required_group=group, **changes)

    @staticmethod
    def is_foul(outcome: ShotOutcome, state: MatchState) -> bool:
        if outcome.scratch:
            return True
        return (state.is_break and not outcome.any_group_pocketed
                and outcome.cushion_hits < BREAK_MIN_CUSHIONS)

    @classmethod
    def finalize_shot(cls, outcome: ShotOutcome, state: MatchState) -> MatchState:
        """Apply the rules to a finished shot. Total over every input."""
        if state.phase is not MatchPhase.AWAITING_SHOT:
            return state

        shooter = state.player

        if outcome.designated:
            own = state.required_group
            won = (own is not None and own in outcome.cleared_at_designated
                   and not outcome.scratch)
            winner = shooter if won else shooter.other
            logger.info("8-ball down: player %s wins (%s)", winner.value,
                        "legal finish" if won else "loss of game for %s" % shooter.value)
            return replace(state, phase=MatchPhase.FINISHED, winner=winner,
                           is_break=False, free_shot=False, last_foul=not won)

        if cls.is_foul(outcome, state):
            logger.info("Foul by player %s (scratch=%s, cushions=%d); ball in hand for %s",
                        shooter.value, outcome.scratch, outcome.cushion_hits,
                        shooter.other.value)
            return cls._pass_turn(state, is_break=False, free_shot=True, last_foul=True)

        base = replace(state, is_break=False, free_shot=False, last_foul=False)

        if state.is_open:
            solids = outcome.pocketed_group(Group.SOLIDS)
            stripes = outcome.pocketed_group(Group.STRIPES)
            if not (solids or stripes):
                return cls._pass_turn(base)
            if state.is_break:
                # Table stays open after the break; shooter continues
                return base
            if solids and stripes:
                logger.info("Player %s pocketed both groups: awaiting group choice",
                            shooter.value)
                return replace(base, phase=MatchPhase.SELECTING_GROUP)
            group = Group.SOLIDS if solids else Group.STRIPES
            logger.info("Player %s assigned %s", shooter.value, group.value)
            return replace(base, required_group=group)

        own = state.required_group
        if outcome.pocketed_group(own) and not outcome.pocketed_group(own.other):
            return base
        return cls._pass_turn(base)

    @staticmethod
    def select_group(state: MatchState, group: Group) -> MatchState:
        """Resolve a pending group choice for the current player."""
        if state.phase is not MatchPhase.SELECTING_GROUP:
            return state
        logger.info("Player %s chose %s", state.player.value, group.value)
        return replace(state, required_group=group, phase=MatchPhase.AWAITING_SHOT)

    @staticmethod
    def take_ball_in_hand(state: MatchState) -> MatchState:
        return replace(state, free_shot=False)
