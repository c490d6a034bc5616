"""
Controller Tests — headless simulation determinism, shot lifecycle and the
command surface.
"""

import sys
import os
import json
import math
from dataclasses import replace

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from controller import PoolController
from physics import BALL_RADIUS, CUE_BALL, EIGHT_BALL, RACK_POSITIONS, EIGHT_SLOT, OUT_OF_PLAY
from rules import MatchState, MatchPhase, Group, Player, any_moving
from shot_presets import ShotPreset, PARKING_SPOTS


# ── Helpers ──────────────────────────────────────────────

def lone_cue(x=-1.0, z=0.0, seed=1):
    """Controller with every object ball off the table."""
    ctrl = PoolController(seed=seed)
    ctrl.set_balls({n: {"active": False} for n in range(1, 16)})
    ctrl.set_balls({CUE_BALL: {"pos": [x, z]}})
    return ctrl


def count_finalize(ctrl):
    """Wrap finalize_shot; each call records whether any ball was moving."""
    calls = []
    original = ctrl.rules.finalize_shot

    def counting(outcome, state):
        calls.append(any_moving(ctrl.balls))
        return original(outcome, state)

    ctrl.rules.finalize_shot = counting
    return calls


class TestDeterminism:
    """Same seed and same command give the same result."""

    def test_seeded_rack(self):
        a = PoolController(seed=11)
        b = PoolController(seed=11)
        assert a.ball_states() == b.ball_states()
        eight = a.ball(EIGHT_BALL)
        assert (eight.position[0], eight.position[2]) == RACK_POSITIONS[EIGHT_SLOT]

    def test_headless_determinism_break(self):
        res1 = PoolController(seed=3).simulate_shot((1.0, 0.0))
        res2 = PoolController(seed=3).simulate_shot((1.0, 0.0))
        assert res1 == res2

    def test_live_play_matches_simulation(self):
        ctrl = PoolController(seed=3)
        predicted = ctrl.simulate_shot((1.0, 0.0))
        ctrl.aim_and_shoot((1.0, 0.0))
        frames = ctrl.run_until_stopped()
        assert frames == predicted["frames"]
        assert ctrl.history[-1]["pocketed"] == sorted(predicted["pocketed"])
        for number, info in predicted["balls"].items():
            if number == CUE_BALL and predicted["scratch"]:
                continue   # live play respots it
            b = ctrl.ball(number)
            assert b.active == info["active"]
            np.testing.assert_allclose([b.position[0], b.position[2]], info["pos"], atol=1e-6)


class TestSimulateShot:

    def test_non_destructive(self):
        ctrl = PoolController(seed=5)
        before = ctrl.ball_states()
        match = ctrl.match
        remaining = dict(ctrl.outcome.remaining)

        result = ctrl.simulate_shot((1.0, 0.0))

        assert result["frames"] > 0
        assert ctrl.ball_states() == before
        assert ctrl.match is match
        assert ctrl.outcome.remaining == remaining
        assert ctrl.history == []
        assert not ctrl.is_shot_in_progress

    def test_straight_roll(self):
        ctrl = lone_cue()
        result = ctrl.simulate_shot((0.0, 0.0))
        assert result["pocketed"] == []
        assert result["cushion_hits"] == 0
        # Break with no rails and nothing down
        assert result["foul"] is True
        assert result["next_player"] == "B"
        assert result["balls"][CUE_BALL]["pos"][0] > 0.0

    def test_cue_off_table_raises(self):
        ctrl = PoolController(seed=5)
        ctrl.set_balls({CUE_BALL: {"active": False}})
        with pytest.raises(ValueError):
            ctrl.simulate_shot((1.0, 0.0))


class TestShotLifecycle:

    def test_finalize_once_per_shot(self):
        ctrl = lone_cue()
        calls = count_finalize(ctrl)

        assert ctrl.aim_and_shoot((0.0, 0.0))
        ctrl.run_until_stopped()
        assert calls == [False]
        assert ctrl.match.player is Player.B
        assert ctrl.match.free_shot

        x = ctrl.cue_ball.position[0]
        assert ctrl.aim_and_shoot((x - 1.0, 0.0))
        ctrl.run_until_stopped()
        for _ in range(30):
            ctrl.advance(PoolController.DEFAULT_DT)

        assert calls == [False, False]
        assert [h["shot"] for h in ctrl.history] == [1, 2]
        assert [h["foul"] for h in ctrl.history] == [True, False]
        assert ctrl.match.player is Player.A

    def test_no_input_while_moving(self):
        ctrl = PoolController(seed=2)
        assert ctrl.aim_and_shoot((1.0, 0.0))
        assert ctrl.is_shot_in_progress
        assert not ctrl.aim_and_shoot((1.0, 0.0))
        before = ctrl.ball(3).position.copy()
        ctrl.set_balls({3: {"pos": [0.0, 0.0]}})
        np.testing.assert_array_equal(ctrl.ball(3).position, before)

    def test_aim_on_cue_centre_rejected(self):
        ctrl = PoolController(seed=2)
        ctrl.pending_events.clear()
        assert not ctrl.aim_and_shoot(RACK_POSITIONS[0])
        assert not ctrl.is_shot_in_progress
        assert ctrl.pending_events == []

    def test_stored_aim_target(self):
        ctrl = lone_cue()
        ctrl.set_aim_target(0.0, 0.0)
        ctrl.move_aim_target(0.0, 1.0)
        assert ctrl.aim_and_shoot()
        assert ctrl.cue_ball.velocity[2] > 0.0

    def test_aim_target_clamped(self):
        ctrl = PoolController(seed=2)
        ctrl.set_aim_target(10.0, -10.0)
        np.testing.assert_allclose(ctrl.aim_target, [4.5 - BALL_RADIUS, -3.0 + BALL_RADIUS])

    def test_shot_events(self):
        ctrl = lone_cue()
        ctrl.pending_events.clear()
        ctrl.aim_and_shoot((0.0, 0.0))
        ctrl.run_until_stopped()
        kinds = [ev["type"] for ev in ctrl.pending_events]
        assert kinds == ["shot_fired", "shot_result", "free_shot"]


class TestBallInHand:

    def test_scratch_respots_and_place(self):
        ctrl = ShotPreset.scenario_3_scratch()["controller"]
        cue = ctrl.cue_ball
        assert cue.active
        assert (cue.position[0], cue.position[2]) == PoolController.CUE_SPOT
        assert ctrl.match.free_shot
        assert ctrl.match.player is Player.B

        # Ball 1 sits on the first parking spot
        assert not ctrl.place_cue_ball(PARKING_SPOTS[0])
        assert ctrl.place_cue_ball((0.5, -0.5))
        assert (cue.position[0], cue.position[2]) == (0.5, -0.5)
        assert not ctrl.match.free_shot
        assert not ctrl.place_cue_ball((1.0, 1.0))

    def test_place_without_foul_rejected(self):
        ctrl = PoolController(seed=2)
        assert not ctrl.place_cue_ball((0.0, 0.0))

    def test_respot_skips_occupied_spot(self):
        ctrl = lone_cue(x=3.6, z=2.1)
        ctrl.set_balls({4: {"pos": list(PoolController.CUE_SPOT)}})
        ctrl.aim_and_shoot((4.5, 3.0))
        ctrl.run_until_stopped()
        cue = ctrl.cue_ball
        assert cue.active
        assert ctrl.history[-1]["foul"]
        gap = math.hypot(cue.position[0] - ctrl.ball(4).position[0],
                         cue.position[2] - ctrl.ball(4).position[2])
        assert gap >= 2 * BALL_RADIUS
        assert cue.position[2] == 0.0


class TestGroupChoice:

    def test_select_group_aliases(self):
        ctrl = PoolController(seed=2)
        ctrl.match = MatchState(is_break=False, phase=MatchPhase.SELECTING_GROUP)
        assert not ctrl.select_group("plaid")
        assert ctrl.select_group("second")
        assert ctrl.match.required_group is Group.STRIPES
        assert ctrl.match.phase is MatchPhase.AWAITING_SHOT

    def test_select_group_not_pending(self):
        ctrl = PoolController(seed=2)
        assert not ctrl.select_group(Group.SOLIDS)
        assert ctrl.match.is_open

    def test_no_shot_while_choice_pending(self):
        ctrl = PoolController(seed=2)
        ctrl.match = replace(ctrl.match, phase=MatchPhase.SELECTING_GROUP)
        assert not ctrl.aim_and_shoot((1.0, 0.0))


class TestCommands:

    def test_bad_json(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command("{bad")
        assert ctrl.status_msg.startswith("JSON error")

    def test_not_an_object(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command("[1, 2]")
        assert ctrl.status_msg == "Command must be a JSON object."

    def test_unknown_cmd(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command('{"cmd": "fly"}')
        assert ctrl.status_msg.startswith("Unknown cmd 'fly'")

    def test_set_command(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command(
            '{"cmd": "set", "balls": {"3": {"pos": [0.5, 0.5]}, "4": {"active": false}}}')
        b3, b4 = ctrl.ball(3), ctrl.ball(4)
        np.testing.assert_array_equal(b3.position, [0.5, BALL_RADIUS, 0.5])
        assert not b4.active
        np.testing.assert_array_equal(b4.position, OUT_OF_PLAY)

    def test_shoot_command(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command('{"cmd": "shoot", "target": [1.0, 0.0]}')
        assert ctrl.cue_ball.is_moving()

    def test_state_json_round_trip(self):
        src = PoolController(seed=4)
        src.set_balls({6: {"active": False}, 2: {"pos": [-1.0, 1.0]}})
        text = src.get_state_json()
        data = json.loads(text)
        assert data["cmd"] == "set"
        assert data["balls"]["6"] == {"active": False}
        assert data["balls"]["0"]["pos"] == [-2.5, 0.0]

        dst = PoolController(seed=9)
        dst.execute_command(text)
        assert dst.ball_states() == src.ball_states()

    def test_new_game_resets(self):
        ctrl = ShotPreset.scenario_2_pot()["controller"]
        assert ctrl.history
        ctrl.pending_events.clear()
        ctrl.new_game(seed=6)
        assert ctrl.history == []
        assert ctrl.shot_count == 0
        assert ctrl.match == MatchState()
        assert all(b.active for b in ctrl.balls)
        kinds = [ev["type"] for ev in ctrl.pending_events]
        assert kinds[0] == "clear_balls"
        assert kinds.count("spawn_ball") == 16

    def test_snapshot(self):
        snap = PoolController(seed=2).snapshot()
        assert len(snap["balls"]) == 16
        assert snap["player"] == "A"
        assert snap["group"] == "open"
        assert snap["is_break"] is True
        assert snap["winner"] is None
        assert snap["remaining"] == {"solids": 7, "stripes": 7}


class TestSetCommandCounts:
    """Layouts loaded with the set command drive the 8-ball win test."""

    def test_counts_follow_set(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command(json.dumps({"cmd": "set", "balls": {
            "1": {"active": False}, "2": {"active": False}, "12": {"active": False}}}))
        assert ctrl.outcome.remaining == {Group.SOLIDS: 5, Group.STRIPES: 6}

        ctrl.set_balls({2: {"pos": [0.0, 1.5]}})
        assert ctrl.outcome.remaining == {Group.SOLIDS: 6, Group.STRIPES: 6}

    def test_group_cleared_by_set_then_legal_eight(self):
        ctrl = PoolController(seed=7)
        ctrl.match = replace(ctrl.match, is_break=False, required_group=Group.SOLIDS)
        layout = {str(n): {"active": False} for n in range(1, 8)}
        ctrl.execute_command(json.dumps({"cmd": "set", "balls": layout}))
        assert ctrl.outcome.remaining[Group.SOLIDS] == 0

        ctrl.set_balls({n: {"pos": list(spot)}
                        for n, spot in zip(range(9, 16), PARKING_SPOTS)})
        ctrl.set_balls({CUE_BALL: {"pos": [3.0, 1.5]}, EIGHT_BALL: {"pos": [3.6, 2.1]}})
        assert ctrl.aim_and_shoot((4.5, 3.0))
        ctrl.run_until_stopped()

        assert not ctrl.ball(EIGHT_BALL).active
        assert ctrl.match.finished
        assert ctrl.match.winner is Player.A
        assert not ctrl.match.last_foul


class TestMalformedCommands:
    """Wrong-shaped commands are reported and ignored, never raised."""

    @pytest.mark.parametrize("text", [
        '{"cmd": "set", "balls": {"1": 5}}',
        '{"cmd": "set", "balls": [1, 2]}',
        '{"cmd": "set", "balls": {"1": {"pos": 5}}}',
        '{"cmd": "set", "balls": {"1": {"pos": ["a", 0]}}}',
        '{"cmd": "set", "balls": {"1": {"pos": [1, 2, 3]}}}',
        '{"cmd": "set", "balls": {"1": {"vel": "fast"}}}',
        '{"cmd": "set", "balls": {"-1": {"pos": [0, 0]}}}',
        '{"cmd": "set", "balls": {"16": {"pos": [0, 0]}}}',
        '{"cmd": "set", "balls": {"cue": {"pos": [0, 0]}}}',
        '{"cmd": "aim", "pos": 5}',
        '{"cmd": "aim", "pos": ["x", "z"]}',
        '{"cmd": "shoot", "target": "ab"}',
        '{"cmd": "shoot", "target": {"x": 1}}',
        '{"cmd": "place", "pos": null}',
    ])
    def test_table_unchanged(self, text):
        ctrl = PoolController(seed=2)
        before = ctrl.ball_states()
        ctrl.execute_command(text)
        assert ctrl.ball_states() == before
        assert not ctrl.is_shot_in_progress
        assert ctrl.outcome.remaining == {Group.SOLIDS: 7, Group.STRIPES: 7}

    def test_bad_shape_reported(self):
        ctrl = PoolController(seed=2)
        ctrl.execute_command('{"cmd": "aim", "pos": 5}')
        assert ctrl.status_msg.startswith("Bad 'aim' command")
        np.testing.assert_array_equal(ctrl.aim_target, PoolController.DEFAULT_AIM)

    def test_good_entries_applied_beside_bad_ones(self):
        ctrl = PoolController(seed=2)
        ctrl.set_balls({"-1": {"pos": [0.0, 0.0]}, "3": {"pos": [0.5, 0.5]}, "4": 7})
        np.testing.assert_array_equal(ctrl.ball(3).position, [0.5, BALL_RADIUS, 0.5])
        np.testing.assert_array_equal(ctrl.ball(15).position[[0, 2]],
                                      PoolController(seed=2).ball(15).position[[0, 2]])

    def test_direct_calls_reject_bad_points(self):
        ctrl = PoolController(seed=2)
        assert not ctrl.aim_and_shoot("ab")
        assert not ctrl.aim_and_shoot((float("nan"), 0.0))
        assert not ctrl.set_aim_target("left", 0.0)
        assert not ctrl.move_aim_target(None, 1.0)
        assert not ctrl.is_shot_in_progress
        ctrl.match = replace(ctrl.match, free_shot=True)
        assert not ctrl.place_cue_ball([1.0])
        assert ctrl.match.free_shot
