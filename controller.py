"""
PoolController — game logic layer

Owns the whole match: balls, table, shot accounting and rule state.
The UI layer (server.py or any renderer) talks to it through:
  ctrl.advance(dt)              — one tick: physics, pockets, shot end, rules
  ctrl.aim_and_shoot(target)    — strike the cue ball toward a table point
  ctrl.place_cue_ball(pos)      — ball in hand after a foul
  ctrl.select_group(choice)     — resolve a pending solids/stripes choice
  ctrl.pending_events           — list of dicts to consume and act on
  ctrl.physics_events           — this tick's collision dicts for sounds
  ctrl.snapshot()               — read-only view for rendering
"""

import json
import logging
import math
import random

import numpy as np

from physics import (
    PhysicsEngine, Ball, BALL_RADIUS, CUE_BALL, RACK_POSITIONS, CUE_SLOT, rack_balls,
)
from rules import (
    RuleEngine, MatchState, MatchPhase, ShotOutcome, ShotClassifier, Group, any_moving,
    count_remaining,
)

logger = logging.getLogger(__name__)


# ── Fast ball copy (used by simulate_shot) ────────────────────────────────────
def _copy_ball(b: Ball) -> Ball:
    return Ball(b.number, position=b.position.copy(), velocity=b.velocity.copy(),
                active=b.active, radius=b.radius)


DEFAULT_INFO_MSG = "Drag to aim, release to shoot.  [N] New rack  [1-5] Scenario"


def _as_planar(value) -> tuple[float, float]:
    """(x, z) floats from a two-item sequence. TypeError/ValueError otherwise."""
    if isinstance(value, (str, bytes, dict)) or len(value) != 2:
        raise ValueError(f"expected [x, z], got {value!r}")
    x, z = float(value[0]), float(value[1])
    if not (math.isfinite(x) and math.isfinite(z)):
        raise ValueError(f"non-finite point {value!r}")
    return x, z


_GROUP_ALIASES = {
    "first": Group.SOLIDS, "solids": Group.SOLIDS, "solid": Group.SOLIDS,
    "second": Group.STRIPES, "stripes": Group.STRIPES, "stripe": Group.STRIPES,
}


class PoolController:
    """Game-state machine + physics orchestration for one 8-ball match."""

    # ── Class-level constants ─────────────────────────────────────────────────
    DEFAULT_DT       = 1.0 / 60.0
    MAX_SHOT_FRAMES  = 20000
    CUE_SPOT         = RACK_POSITIONS[CUE_SLOT]
    DEFAULT_AIM      = (0.0, 0.0)

    # ── Constructor ───────────────────────────────────────────────────────────

    def __init__(self, seed: int | None = None):
        self.engine = PhysicsEngine()
        self._sim_engine = PhysicsEngine()   # reused for headless simulate_shot()
        self.rules = RuleEngine()

        self.balls: list[Ball] = []
        self.match = MatchState()
        self.outcome = ShotOutcome()
        self.classifier = ShotClassifier()

        self.aim_target = np.array(self.DEFAULT_AIM, dtype=float)   # (x, z)
        self.shot_count = 0
        self.history: list[dict] = []

        self.status_msg = ""
        self.info_msg = DEFAULT_INFO_MSG

        # Event queues
        self.pending_events: list[dict] = []   # UI commands
        self.physics_events: list[dict] = []   # collision sounds

        self.new_game(seed)

    # ──────────────────────────────────────────────────────────────────────────
    # Main loop
    # ──────────────────────────────────────────────────────────────────────────

    def advance(self, dt: float) -> None:
        """Run one tick. Called every frame by the UI layer."""
        self.physics_events.clear()

        self.engine.update(self.balls, dt)
        for ev in self.engine.events:
            self.physics_events.append(ev)
            self.outcome.record_event(ev)
            if ev["type"] == "pocket":
                self.pending_events.append({"type": "pocketed", "ball": ev["ball"]})

        if self.classifier.observe(self.balls):
            self._on_shot_finished()

    def run_until_stopped(self, dt: float | None = None,
                          max_frames: int | None = None) -> int:
        """Tick until the current shot has ended. Returns frames stepped."""
        dt = dt or self.DEFAULT_DT
        max_frames = max_frames or self.MAX_SHOT_FRAMES
        frames = 0
        while frames < max_frames:
            self.advance(dt)
            frames += 1
            if not self.is_shot_in_progress:
                break
        return frames

    def _on_shot_finished(self) -> None:
        shooter = self.match.player
        summary = self.outcome.summary()
        self.match = self.rules.finalize_shot(self.outcome, self.match)
        self.shot_count += 1

        summary.update({
            "shot": self.shot_count,
            "player": shooter.value,
            "foul": self.match.last_foul,
            "next_player": self.match.player.value,
        })
        self.history.append(summary)
        self.outcome.reset()
        logger.info("Shot %d by %s finished: pocketed=%s cushions=%d foul=%s",
                    self.shot_count, shooter.value, summary["pocketed"],
                    summary["cushion_hits"], summary["foul"])

        self.pending_events.append({"type": "shot_result", **summary})

        if self.match.finished:
            msg = f"Player {self.match.winner.value} wins!"
            self.pending_events.append({"type": "game_over", "winner": self.match.winner.value})
            self.status_msg = msg
            self.info_msg = f"{msg}  [N] New rack"
            return

        if not self.cue_ball.active:
            self._respot_cue_ball()

        if self.match.awaiting_group_choice:
            self.pending_events.append({"type": "group_choice", "player": shooter.value})
            self.status_msg = f"Player {shooter.value}: choose solids or stripes."
        elif self.match.free_shot:
            self.pending_events.append({"type": "free_shot", "player": self.match.player.value})
            self.status_msg = f"Foul! Player {self.match.player.value} has ball in hand."
        else:
            self.status_msg = f"Player {self.match.player.value} to shoot."

    # ──────────────────────────────────────────────────────────────────────────
    # Ball management
    # ──────────────────────────────────────────────────────────────────────────

    @property
    def cue_ball(self) -> Ball:
        return self.balls[CUE_BALL]

    def ball(self, number: int) -> Ball:
        return self.balls[number]

    def clear_balls(self) -> None:
        self.balls = []
        self.pending_events.append({"type": "clear_balls"})

    def new_game(self, seed: int | None = None) -> None:
        """Re-rack and start a fresh match with player A breaking."""
        self.clear_balls()
        self.balls = rack_balls(random.Random(seed))
        self.match = MatchState()
        self.outcome = ShotOutcome()
        self.classifier.reset()
        self.aim_target = np.array(self.DEFAULT_AIM, dtype=float)
        self.shot_count = 0
        self.history = []

        for b in self.balls:
            self.pending_events.append({"type": "spawn_ball", "ball": b.number})
        self.status_msg = "Player A to break."
        self.info_msg = DEFAULT_INFO_MSG
        logger.info("New rack (seed=%s)", seed)

    def _is_free_spot(self, x: float, z: float, ignore: int | None = None) -> bool:
        for b in self.balls:
            if not b.active or b.number == ignore:
                continue
            if math.hypot(b.position[0] - x, b.position[2] - z) < 2 * BALL_RADIUS:
                return False
        return True

    def _respot_cue_ball(self) -> None:
        """Bring a scratched cue ball back near its head spot."""
        x0, z0 = self.CUE_SPOT
        step = 2 * BALL_RADIUS
        for k in range(int(2 * self.engine.half_width / step) + 1):
            for sign in (-1, 1):
                x, z = self.engine.clamp_to_table(x0 + sign * k * step, z0)
                if self._is_free_spot(x, z, ignore=CUE_BALL):
                    cue = self.cue_ball
                    cue.set_planar(x, z)
                    cue.velocity[:] = 0.0
                    cue.active = True
                    self.pending_events.append({"type": "spawn_ball", "ball": CUE_BALL})
                    return
        logger.warning("No free spot along the head string for the cue ball")

    # ──────────────────────────────────────────────────────────────────────────
    # Player input (all no-ops while a shot is running)
    # ──────────────────────────────────────────────────────────────────────────

    @property
    def is_shot_in_progress(self) -> bool:
        return self.classifier.moving or any_moving(self.balls)

    def set_aim_target(self, x: float, z: float) -> bool:
        try:
            x, z = _as_planar((x, z))
        except (TypeError, ValueError) as exc:
            logger.debug("set_aim_target ignored: %s", exc)
            return False
        self.aim_target = np.array(self.engine.clamp_to_table(x, z))
        return True

    def move_aim_target(self, dx: float, dz: float) -> bool:
        try:
            dx, dz = _as_planar((dx, dz))
        except (TypeError, ValueError) as exc:
            logger.debug("move_aim_target ignored: %s", exc)
            return False
        return self.set_aim_target(self.aim_target[0] + dx, self.aim_target[1] + dz)

    def aim_and_shoot(self, target=None) -> bool:
        """Launch the cue ball toward ``target`` (x, z) or the stored aim point."""
        if self.is_shot_in_progress or self.match.phase is not MatchPhase.AWAITING_SHOT:
            logger.debug("aim_and_shoot ignored: shot running or match not awaiting a shot")
            return False
        cue = self.cue_ball
        if not cue.active:
            logger.debug("aim_and_shoot ignored: cue ball off the table")
            return False

        try:
            target = _as_planar(self.aim_target if target is None else target)
        except (TypeError, ValueError) as exc:
            logger.debug("aim_and_shoot ignored: %s", exc)
            return False
        velocity = self.engine.aim_velocity(cue, target)
        if velocity is None:
            logger.debug("aim_and_shoot ignored: aim point on the cue ball")
            return False

        cue.velocity = velocity
        # The strike is a moving frame: a shot dead within one tick still ends
        self.classifier.observe(self.balls)
        if self.match.free_shot:
            self.match = self.rules.take_ball_in_hand(self.match)
        self.pending_events.append({"type": "shot_fired", "player": self.match.player.value})
        self.status_msg = "Running..."
        return True

    def place_cue_ball(self, position) -> bool:
        """Ball in hand: put the cue ball anywhere free on the table."""
        if (not self.match.free_shot or self.is_shot_in_progress
                or self.match.phase is not MatchPhase.AWAITING_SHOT):
            logger.debug("place_cue_ball ignored: no ball in hand")
            return False
        try:
            x, z = self.engine.clamp_to_table(*_as_planar(position))
        except (TypeError, ValueError) as exc:
            logger.debug("place_cue_ball ignored: %s", exc)
            return False
        if not self._is_free_spot(x, z, ignore=CUE_BALL):
            logger.debug("place_cue_ball ignored: (%.3f, %.3f) overlaps a ball", x, z)
            return False

        cue = self.cue_ball
        cue.set_planar(x, z)
        cue.velocity[:] = 0.0
        cue.active = True
        self.match = self.rules.take_ball_in_hand(self.match)
        self.pending_events.append({"type": "spawn_ball", "ball": CUE_BALL})
        self.status_msg = f"Player {self.match.player.value} to shoot."
        return True

    def select_group(self, choice) -> bool:
        """Accepts a Group or one of 'first'/'second'/'solids'/'stripes'."""
        if not self.match.awaiting_group_choice:
            logger.debug("select_group ignored: no choice pending")
            return False
        group = choice if isinstance(choice, Group) else _GROUP_ALIASES.get(str(choice).lower())
        if group is None:
            logger.debug("select_group ignored: unknown choice %r", choice)
            return False
        self.match = self.rules.select_group(self.match, group)
        self.status_msg = f"Player {self.match.player.value} shoots {group.value}."
        return True

    # ──────────────────────────────────────────────────────────────────────────
    # Read-only query surface
    # ──────────────────────────────────────────────────────────────────────────

    def ball_states(self) -> list[dict]:
        return [{
            "number": b.number,
            "pos": [round(float(b.position[0]), 5),
                    round(float(b.position[1]), 5),
                    round(float(b.position[2]), 5)],
            "active": b.active,
        } for b in self.balls]

    def snapshot(self) -> dict:
        m = self.match
        return {
            "balls": self.ball_states(),
            "player": m.player.value,
            "group": m.required_group.value if m.required_group else "open",
            "is_break": m.is_break,
            "free_shot": m.free_shot,
            "group_choice": m.awaiting_group_choice,
            "winner": m.winner.value if m.winner else None,
            "moving": self.is_shot_in_progress,
            "remaining": {g.value: n for g, n in self.outcome.remaining.items()},
            "aim": [round(float(self.aim_target[0]), 5), round(float(self.aim_target[1]), 5)],
        }

    # ──────────────────────────────────────────────────────────────────────────
    # Command surface
    # ──────────────────────────────────────────────────────────────────────────

    def get_state_json(self) -> str:
        """Return current ball layout as a compact single-line set-command JSON."""
        balls = {}
        for b in self.balls:
            if b.active:
                balls[str(b.number)] = {
                    "pos": [round(float(b.position[0]), 4), round(float(b.position[2]), 4)],
                }
            else:
                balls[str(b.number)] = {"active": False}
        return json.dumps({"cmd": "set", "balls": balls}, separators=(',', ':'))

    def execute_command(self, text: str) -> None:
        """Parse a JSON command string and dispatch to handlers.

        Malformed JSON, wrong payload shapes and unknown commands are
        logged, reported through ``status_msg`` and otherwise ignored.
        """
        if not text:
            logger.debug("execute_command: empty text")
            return
        try:
            data = json.loads(text.replace('\r', ''))
        except json.JSONDecodeError as exc:
            logger.warning("Command JSON parse error: %s", exc)
            self.status_msg = f"JSON error: {exc}"
            return
        if not isinstance(data, dict):
            self.status_msg = "Command must be a JSON object."
            return

        cmd = str(data.get("cmd", "")).lower().strip()
        logger.debug("execute_command: cmd=%s", cmd)
        try:
            if cmd == "set":
                self.set_balls(data.get("balls", {}))
            elif cmd == "shoot":
                target = data.get("target")
                self.aim_and_shoot(None if target is None else _as_planar(target))
            elif cmd == "place":
                self.place_cue_ball(_as_planar(data.get("pos", (0.0, 0.0))))
            elif cmd == "select":
                self.select_group(data.get("group", ""))
            elif cmd == "aim":
                self.set_aim_target(*_as_planar(data.get("pos", self.DEFAULT_AIM)))
            else:
                logger.warning("Unknown command %r", cmd)
                self.status_msg = f"Unknown cmd '{cmd}'. Use set/shoot/place/select/aim."
        except (TypeError, ValueError) as exc:
            logger.warning("Bad %r command: %s", cmd, exc)
            self.status_msg = f"Bad '{cmd}' command: {exc}"

    def set_balls(self, balls_info: dict) -> "PoolController":
        """Move balls between shots.

        ``balls_info`` maps ball numbers (int or str) to
        ``{"pos": [x, z], "vel": [vx, vz], "active": bool}``; missing keys
        leave that property alone. Entries with an unknown ball number or
        a malformed value are skipped with a warning. Ignored while a shot
        is running. Remaining group counts follow the resulting table.

        Returns:
            ``self`` for chaining.
        """
        if self.is_shot_in_progress:
            logger.debug("set_balls ignored: shot running")
            return self
        if not isinstance(balls_info, dict):
            logger.warning("set_balls: expected a mapping, got %s", type(balls_info).__name__)
            return self

        for key, bd in balls_info.items():
            try:
                number = int(key)
            except (TypeError, ValueError):
                number = -1
            if not 0 <= number < len(self.balls):
                logger.warning("set_balls: no ball %r", key)
                continue
            if not isinstance(bd, dict):
                logger.warning("set_balls: ball %d entry must be an object, got %r", number, bd)
                continue

            b = self.balls[number]
            if bd.get("active", True) is False:
                if b.active:
                    b.deactivate()
                continue
            try:
                pos = bd.get("pos")
                pos = None if pos is None else _as_planar(pos)
                vel = _as_planar(bd.get("vel", (0.0, 0.0)))
            except (TypeError, ValueError) as exc:
                logger.warning("set_balls: ball %d skipped: %s", number, exc)
                continue

            if pos is not None:
                b.set_planar(*pos)
                b.active = True
            elif not b.active:
                continue
            b.velocity = np.array([vel[0], 0.0, vel[1]])

        self.outcome.remaining = count_remaining(self.balls)
        return self

    # ──────────────────────────────────────────────────────────────────────────
    # Headless simulation
    # ──────────────────────────────────────────────────────────────────────────

    def simulate_shot(self, target=None, *, dt: float | None = None,
                      max_frames: int | None = None) -> dict:
        """Play one shot on copies of the balls and report what would happen.

        Non-destructive: controller balls, match state and accumulators are
        untouched.

        Args:
            target:     Aim point (x, z). Defaults to the stored aim point.
            dt:         Frame time. Defaults to ``DEFAULT_DT``.
            max_frames: Frame cap. Defaults to ``MAX_SHOT_FRAMES``.

        Returns:
            ``dict`` with keys:

            pocketed (list[int])
                Ball numbers in the order they dropped.
            scratch (bool)
                True if the cue ball was pocketed.
            cushion_hits (int)
                Rail contacts by any ball.
            foul (bool)
                Whether the rules would call this shot a foul.
            next_player (str)
                Who would shoot next.
            frames (int)
                Frames stepped until every ball stopped.
            balls (dict)
                ``{number: {"pos": [x, z], "active": bool}}`` final layout.
        """
        cue = self.cue_ball
        if not cue.active:
            raise ValueError("simulate_shot: cue ball is not on the table")

        dt = dt or self.DEFAULT_DT
        max_frames = max_frames or self.MAX_SHOT_FRAMES
        balls = [_copy_ball(b) for b in self.balls]
        velocity = self._sim_engine.aim_velocity(balls[CUE_BALL],
                                                 self.aim_target if target is None else target)
        if velocity is not None:
            balls[CUE_BALL].velocity = velocity

        outcome = ShotOutcome(remaining=dict(self.outcome.remaining))
        frames = 0
        while frames < max_frames:
            self._sim_engine.update(balls, dt)
            for ev in self._sim_engine.events:
                outcome.record_event(ev)
            frames += 1
            if not any_moving(balls):
                break

        next_state = self.rules.finalize_shot(outcome, self.match)
        return {
            "pocketed": list(outcome.pocketed_numbers),
            "scratch": outcome.scratch,
            "cushion_hits": outcome.cushion_hits,
            "foul": self.rules.is_foul(outcome, self.match),
            "next_player": next_state.player.value,
            "frames": frames,
            "balls": {
                b.number: {
                    "pos": [round(float(b.position[0]), 6), round(float(b.position[2]), 6)],
                    "active": b.active,
                } for b in balls
            },
        }
