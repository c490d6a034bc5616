"""
Shot Preset System
Reproducible table layouts for the rule scenarios: break, pot, scratch,
8-ball finish and an open-table double pot. Each preset builds a
PoolController, arranges the balls, fires the cue ball and (optionally)
plays the shot to rest.
"""

from dataclasses import replace

from controller import PoolController
from physics import CUE_BALL, EIGHT_BALL
from rules import Group, GROUP_SIZE

# Left-half parking grid for balls that take no part in a scenario
_PARK_X = (-4.0, -3.4)
_PARK_Z = (-2.4, -1.8, -1.2, -0.6, 0.0, 0.6, 1.2, 1.8, 2.4)
PARKING_SPOTS = [(x, z) for x in _PARK_X for z in _PARK_Z]

# Diagonal line into the top-right corner pocket
_CUE_START = (3.0, 1.5)
_OBJECT_SPOT = (3.6, 2.1)
_CORNER = (4.5, 3.0)


def _park_all(ctrl: PoolController, keep=()) -> None:
    """Move every ball not in ``keep`` to its own parking spot."""
    layout = {}
    spots = iter(PARKING_SPOTS)
    for b in ctrl.balls:
        if b.number in keep or not b.active:
            continue
        x, z = next(spots)
        layout[b.number] = {"pos": [x, z]}
    ctrl.set_balls(layout)


def _finish(ctrl: PoolController, run: bool) -> dict:
    frames = ctrl.run_until_stopped() if run else 0
    return {
        "controller": ctrl,
        "balls": ctrl.balls,
        "frames": frames,
        "result": ctrl.history[-1] if ctrl.history else None,
    }


class ShotPreset:
    """Each preset: arrange balls -> aim_and_shoot -> run -> result dict."""

    @staticmethod
    def scenario_1_break(seed: int = 7, run=True) -> dict:
        """Full rack, cue ball driven straight into the apex ball."""
        ctrl = PoolController(seed=seed)
        ctrl.aim_and_shoot((1.0, 0.0))
        return _finish(ctrl, run)

    @staticmethod
    def scenario_2_pot(seed: int = 7, run=True) -> dict:
        """Open table, non-break: ball 1 potted head-on into the corner."""
        ctrl = PoolController(seed=seed)
        ctrl.match = replace(ctrl.match, is_break=False)
        _park_all(ctrl, keep=(CUE_BALL, 1))
        ctrl.set_balls({CUE_BALL: {"pos": list(_CUE_START)}, 1: {"pos": list(_OBJECT_SPOT)}})
        ctrl.aim_and_shoot(_CORNER)
        return _finish(ctrl, run)

    @staticmethod
    def scenario_3_scratch(seed: int = 7, run=True) -> dict:
        """Cue ball rolled straight into the corner pocket."""
        ctrl = PoolController(seed=seed)
        ctrl.match = replace(ctrl.match, is_break=False)
        _park_all(ctrl, keep=(CUE_BALL,))
        ctrl.set_balls({CUE_BALL: {"pos": list(_OBJECT_SPOT)}})
        ctrl.aim_and_shoot(_CORNER)
        return _finish(ctrl, run)

    @staticmethod
    def scenario_4_eight_ball(seed: int = 7, run=True) -> dict:
        """Player A on solids, all solids gone, 8-ball potted in the corner."""
        ctrl = PoolController(seed=seed)
        ctrl.match = replace(ctrl.match, is_break=False, required_group=Group.SOLIDS)
        ctrl.set_balls({n: {"active": False} for n in range(1, GROUP_SIZE + 1)})
        _park_all(ctrl, keep=(CUE_BALL, EIGHT_BALL))
        ctrl.set_balls({CUE_BALL: {"pos": list(_CUE_START)},
                        EIGHT_BALL: {"pos": list(_OBJECT_SPOT)}})
        ctrl.aim_and_shoot(_CORNER)
        return _finish(ctrl, run)

    @staticmethod
    def scenario_5_double(seed: int = 7, run=True) -> dict:
        """Open table: ball 1 potted in the corner while ball 9 hangs over
        the far side pocket inside its capture radius and drops on the
        first tick, so both groups go down in one shot."""
        ctrl = PoolController(seed=seed)
        ctrl.match = replace(ctrl.match, is_break=False)
        _park_all(ctrl, keep=(CUE_BALL, 1, 9))
        ctrl.set_balls({CUE_BALL: {"pos": list(_CUE_START)},
                        1: {"pos": list(_OBJECT_SPOT)},
                        9: {"pos": [0.0, 2.79]}})
        ctrl.aim_and_shoot(_CORNER)
        return _finish(ctrl, run)
