"""
8-Ball Pool Physics Engine
Frame integration, ball/cushion collision, pocket capture
"""

import math
import random
import numpy as np
from dataclasses import dataclass, field
from typing import List, Optional

# ──────────────────────────────────────────────
# Constants (table units)
# ──────────────────────────────────────────────
BALL_RADIUS: float = 0.21
BALL_COUNT: int = 16

# Table inner playing surface (half extents)
TABLE_HALF_WIDTH: float = 4.5   # x
TABLE_HALF_DEPTH: float = 3.0   # z

CUSHION_THICKNESS: float = 0.12
POCKET_RADIUS: float = 0.3
CONTACT_EPS: float = 1e-9     # float slack for the rail contact test

# Where pocketed balls are parked
OUT_OF_PLAY = (-999.0, -999.0, -999.0)

CUE_BALL: int = 0
EIGHT_BALL: int = 8

# ── Runtime-editable behavior constants ───────────────────────────────────────
# Read by name every call, so server.py can mutate them live via:
#   import physics as _phys;  _phys.DECREASE_RATE = 0.998
DECREASE_RATE: float = 0.9982       # per-frame velocity decay at the reference frame rate
TIME_SCALE: float = 3.3             # perceived speed multiplier
STOP_THRESHOLD: float = 0.01        # |vx| and |vz| at or below this -> stopped
SHOT_POWER_SCALE: float = 1.0       # launch speed per unit of aim distance

# Rack layout: slot 0 is the cue ball, slots 1..15 form the triangle
RACK_POSITIONS = [
    (-2.5, 0.0),
    (1.0, 0.0),
    (1.36, -0.21), (1.36, 0.21),
    (1.72, -0.42), (1.72, 0.0), (1.72, 0.42),
    (2.08, -0.63), (2.08, -0.21), (2.08, 0.21), (2.08, 0.63),
    (2.44, -0.84), (2.44, -0.42), (2.44, 0.0), (2.44, 0.42), (2.44, 0.84),
]
CUE_SLOT: int = 0
EIGHT_SLOT: int = 5   # centre of the third row


class RackError(RuntimeError):
    """Raised when a rack cannot be built from the available slots."""


@dataclass
class Ball:
    """Pool ball on the table plane. y stays at table height + radius."""
    number: int
    position: np.ndarray = field(default_factory=lambda: np.array([0.0, BALL_RADIUS, 0.0]))
    velocity: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 0.0]))
    active: bool = True
    radius: float = BALL_RADIUS

    def __post_init__(self):
        self.position = np.array(self.position, dtype=float)
        self.velocity = np.array(self.velocity, dtype=float)

    @property
    def speed(self) -> float:
        return math.hypot(self.velocity[0], self.velocity[2])

    def is_moving(self) -> bool:
        """Active and with any nonzero planar velocity."""
        return self.active and (self.velocity[0] ** 2 + self.velocity[2] ** 2) != 0.0

    def set_planar(self, x: float, z: float) -> None:
        self.position = np.array([x, self.radius, z], dtype=float)

    def deactivate(self) -> None:
        self.active = False
        self.position = np.array(OUT_OF_PLAY, dtype=float)
        self.velocity[:] = 0.0


@dataclass(frozen=True)
class Cushion:
    """Axis-aligned rail segment. width spans x, depth spans z."""
    x: float
    z: float
    width: float
    depth: float

    @property
    def is_horizontal(self) -> bool:
        # Long axis along x: the rail sits on the z axis line x == 0
        return self.x == 0.0

    def touches(self, ball: Ball) -> bool:
        return (abs(self.x - ball.position[0]) <= self.width / 2 + ball.radius + CONTACT_EPS and
                abs(self.z - ball.position[2]) <= self.depth / 2 + ball.radius + CONTACT_EPS)


@dataclass(frozen=True)
class Pocket:
    x: float
    z: float
    radius: float = POCKET_RADIUS

    def contains(self, ball: Ball) -> bool:
        dx = ball.position[0] - self.x
        dz = ball.position[2] - self.z
        return dx * dx + dz * dz <= self.radius * self.radius


def make_cushions(half_width: float = TABLE_HALF_WIDTH,
                  half_depth: float = TABLE_HALF_DEPTH,
                  thickness: float = CUSHION_THICKNESS) -> List[Cushion]:
    """Four rails just outside the playing surface: far, near, right, left."""
    off = thickness / 2
    return [
        Cushion(0.0,  half_depth + off, 2 * half_width, thickness),
        Cushion(0.0, -half_depth - off, 2 * half_width, thickness),
        Cushion( half_width + off, 0.0, thickness, 2 * (half_depth + thickness)),
        Cushion(-half_width - off, 0.0, thickness, 2 * (half_depth + thickness)),
    ]


def make_pockets(half_width: float = TABLE_HALF_WIDTH,
                 half_depth: float = TABLE_HALF_DEPTH,
                 radius: float = POCKET_RADIUS) -> List[Pocket]:
    """Four corners plus the two side-rail midpoints."""
    return [
        Pocket(-half_width,  half_depth, radius),
        Pocket(0.0,          half_depth, radius),
        Pocket( half_width,  half_depth, radius),
        Pocket(-half_width, -half_depth, radius),
        Pocket(0.0,         -half_depth, radius),
        Pocket( half_width, -half_depth, radius),
    ]


def rack_balls(rng: Optional[random.Random] = None,
               positions=RACK_POSITIONS) -> List[Ball]:
    """Build the 16 balls for a new match.

    The cue ball and the 8-ball take fixed slots; the other fourteen are
    shuffled into the remaining slots. Raises RackError when ``positions``
    cannot hold every ball.
    """
    rng = rng or random.Random()
    if len(positions) < BALL_COUNT:
        raise RackError(f"rack needs {BALL_COUNT} slots, got {len(positions)}")

    free_slots = [i for i in range(len(positions)) if i not in (CUE_SLOT, EIGHT_SLOT)]
    numbers = [n for n in range(BALL_COUNT) if n not in (CUE_BALL, EIGHT_BALL)]
    if len(free_slots) < len(numbers):
        raise RackError(f"{len(numbers)} object balls but only {len(free_slots)} free slots")
    rng.shuffle(numbers)

    slot_of = {CUE_BALL: CUE_SLOT, EIGHT_BALL: EIGHT_SLOT}
    slot_of.update(zip(numbers, free_slots))

    balls = []
    for n in range(BALL_COUNT):
        x, z = positions[slot_of[n]]
        balls.append(Ball(n, position=[x, BALL_RADIUS, z]))
    return balls


class PhysicsEngine:
    """Frame-stepped pool physics on a fixed rectangular table."""

    def __init__(self, half_width: float = TABLE_HALF_WIDTH,
                 half_depth: float = TABLE_HALF_DEPTH):
        self.half_width = half_width
        self.half_depth = half_depth
        self.cushions = make_cushions(half_width, half_depth)
        self.pockets = make_pockets(half_width, half_depth)
        self.events: list = []

    # ──────────────────────────────────────────
    # Cue strike
    # ──────────────────────────────────────────
    @staticmethod
    def aim_velocity(cue: Ball, target) -> Optional[np.ndarray]:
        """Launch velocity toward ``target`` (x, z), proportional to distance.

        The angle is measured from +x toward +z. Returns None when the
        target sits on the cue ball centre.
        """
        dx = float(target[0]) - cue.position[0]
        dz = float(target[1]) - cue.position[2]
        distance = math.hypot(dx, dz)
        if distance < 1e-9:
            return None
        theta = math.atan2(dz, dx)
        speed = SHOT_POWER_SCALE * distance
        return np.array([speed * math.cos(theta), 0.0, speed * math.sin(theta)])

    def clamp_to_table(self, x: float, z: float, radius: float = BALL_RADIUS):
        x = min(max(x, -self.half_width + radius), self.half_width - radius)
        z = min(max(z, -self.half_depth + radius), self.half_depth - radius)
        return x, z

    # ──────────────────────────────────────────
    # Motion integration
    # ──────────────────────────────────────────
    def integrate(self, ball: Ball, dt: float) -> None:
        """Advance one ball by ``dt``: move, clamp inside the rails, decay."""
        if not ball.active:
            return

        vx, vz = ball.velocity[0], ball.velocity[2]
        if abs(vx) > STOP_THRESHOLD or abs(vz) > STOP_THRESHOLD:
            x = ball.position[0] + TIME_SCALE * dt * vx
            z = ball.position[2] + TIME_SCALE * dt * vz
            x, z = self.clamp_to_table(x, z, ball.radius)
            ball.position[0] = x
            ball.position[2] = z
        else:
            ball.velocity[:] = 0.0

        rate = 1.0 - (1.0 - DECREASE_RATE) * dt * 400
        if rate < 0.0:
            rate = 0.0
        ball.velocity[0] *= rate
        ball.velocity[2] *= rate

    # ──────────────────────────────────────────
    # Ball-Ball Collision
    # ──────────────────────────────────────────
    @staticmethod
    def _check_ball_collision(b1: Ball, b2: Ball) -> bool:
        """Overlap test on squared 3D centre distance."""
        if not (b1.active and b2.active):
            return False
        diff = b1.position - b2.position
        reach = b1.radius + b2.radius
        return float(np.dot(diff, diff)) <= reach * reach

    def _resolve_ball_collision(self, b1: Ball, b2: Ball) -> None:
        """
        Equal-mass elastic collision.
        Normal velocity components are exchanged, tangential ones kept,
        then the pair is pushed apart to exactly touching.
        """
        dx = b1.position[0] - b2.position[0]
        dz = b1.position[2] - b2.position[2]
        dist = math.hypot(dx, dz)
        if dist < 1e-9:
            # Coincident centres: no usable normal this frame
            return

        nx, nz = dx / dist, dz / dist
        tx, tz = -nz, nx

        v1n = nx * b1.velocity[0] + nz * b1.velocity[2]
        v1t = tx * b1.velocity[0] + tz * b1.velocity[2]
        v2n = nx * b2.velocity[0] + nz * b2.velocity[2]
        v2t = tx * b2.velocity[0] + tz * b2.velocity[2]

        # Only swap while the pair is closing along the normal
        if v1n - v2n < 0.0:
            b1.velocity[0] = v2n * nx + v1t * tx
            b1.velocity[2] = v2n * nz + v1t * tz
            b2.velocity[0] = v1n * nx + v2t * tx
            b2.velocity[2] = v1n * nz + v2t * tz
            self.events.append({
                "type": "ball_ball", "ball1": b1.number, "ball2": b2.number,
                "speed": float(abs(v1n - v2n)),
            })

        overlap = (b1.radius + b2.radius) - dist
        if overlap > 0:
            cx = overlap / 2 * nx
            cz = overlap / 2 * nz
            b1.position[0] += cx
            b1.position[2] += cz
            b2.position[0] -= cx
            b2.position[2] -= cz
            # Separation must not push a ball past the rail line
            pinned = []
            for b in (b1, b2):
                x, z = self.clamp_to_table(b.position[0], b.position[2], b.radius)
                if x != b.position[0] or z != b.position[2]:
                    pinned.append(b)
                    b.position[0], b.position[2] = x, z
            if len(pinned) == 1:
                free = b2 if pinned[0] is b1 else b1
                self._push_clear(pinned[0], free)
            # Both pinned (wedged in a corner): left overlapping for this frame

    def _push_clear(self, anchor: Ball, free: Ball) -> None:
        """Move ``free`` along the centre line until it just touches ``anchor``."""
        dx = free.position[0] - anchor.position[0]
        dz = free.position[2] - anchor.position[2]
        dist = math.hypot(dx, dz)
        reach = anchor.radius + free.radius
        if dist < 1e-9 or dist >= reach:
            return
        x = anchor.position[0] + dx / dist * reach
        z = anchor.position[2] + dz / dist * reach
        free.position[0], free.position[2] = self.clamp_to_table(x, z, free.radius)

    # ──────────────────────────────────────────
    # Cushion Collision
    # ──────────────────────────────────────────
    def _check_cushion_collisions(self, ball: Ball) -> None:
        """Reflect off any rail the ball touches while heading into it.

        Horizontal rails flip vz, vertical rails flip vx. Position is left
        alone: the integrator clamp already keeps the ball off the rail.
        """
        if not ball.active:
            return
        for idx, cushion in enumerate(self.cushions):
            if not cushion.touches(ball):
                continue
            if cushion.is_horizontal:
                toward = (cushion.z - ball.position[2]) * ball.velocity[2]
                if toward <= 0.0:
                    continue
                impact_speed = abs(ball.velocity[2])
                ball.velocity[2] = -ball.velocity[2]
            else:
                toward = (cushion.x - ball.position[0]) * ball.velocity[0]
                if toward <= 0.0:
                    continue
                impact_speed = abs(ball.velocity[0])
                ball.velocity[0] = -ball.velocity[0]
            self.events.append({"type": "cushion", "ball": ball.number,
                                "cushion": idx, "speed": float(impact_speed)})

    # ──────────────────────────────────────────
    # Pockets
    # ──────────────────────────────────────────
    def _check_pockets(self, ball: Ball) -> None:
        if not ball.active:
            return
        for idx, pocket in enumerate(self.pockets):
            if pocket.contains(ball):
                ball.deactivate()
                self.events.append({"type": "pocket", "ball": ball.number, "pocket": idx})
                break

    # ──────────────────────────────────────────
    # Main Update Loop
    # ──────────────────────────────────────────
    def update(self, balls: List[Ball], dt: float) -> None:
        """Advance one frame. Balls are processed in list (number) order."""
        self.events.clear()

        for ball in balls:
            self.integrate(ball, dt)

        for i in range(len(balls)):
            for j in range(i + 1, len(balls)):
                if self._check_ball_collision(balls[i], balls[j]):
                    self._resolve_ball_collision(balls[i], balls[j])

        for ball in balls:
            self._check_cushion_collisions(ball)

        for ball in balls:
            self._check_pockets(ball)

    def simulate(self, balls: List[Ball], dt: float = 1 / 60,
                 max_frames: int = 20000) -> int:
        """
        Run frames until every ball has stopped or max_frames is reached.

        Returns:
            Number of frames stepped.
        """
        frames = 0
        while frames < max_frames:
            self.update(balls, dt)
            frames += 1
            if not any(b.is_moving() for b in balls):
                break
        return frames
