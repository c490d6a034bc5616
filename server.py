"""
8-Ball Pool Web Server (FastAPI + WebSocket)

Runs the match loop and streams table state to browser clients over
WebSocket; clients send aim/shoot/place/select commands back.
"""

import argparse
import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from controller import PoolController
from physics import TABLE_HALF_WIDTH, TABLE_HALF_DEPTH, BALL_RADIUS, POCKET_RADIUS
import physics as _phys
from shot_presets import ShotPreset
from logging_config import configure_logging

logger = logging.getLogger(__name__)

# ── Controller ──────────────────────────────────────────────────────────────

ctrl = PoolController()


# ── Lifespan (startup/shutdown) ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    task = asyncio.create_task(game_loop())
    yield
    task.cancel()


app = FastAPI(lifespan=lifespan)

clients: list[WebSocket] = []

# Scenario map (keys 1-5)
SCENARIOS = {
    "1": (ShotPreset.scenario_1_break,      "1: Break"),
    "2": (ShotPreset.scenario_2_pot,        "2: Pot"),
    "3": (ShotPreset.scenario_3_scratch,    "3: Scratch"),
    "4": (ShotPreset.scenario_4_eight_ball, "4: 8-ball"),
    "5": (ShotPreset.scenario_5_double,     "5: Double pot"),
}

# ── Physics params (live-tunable module attributes) ─────────────────────────

PHYSICS_PARAMS = [
    ("DECREASE_RATE",    "Decay",        0.9,   0.9999, 0.0005),
    ("TIME_SCALE",       "Time Scale",   0.5,  10.0,    0.1),
    ("STOP_THRESHOLD",   "Stop Speed",   0.001, 0.2,    0.005),
    ("SHOT_POWER_SCALE", "Shot Power",   0.1,   5.0,    0.1),
]

PARAM_DEFAULTS = {attr: getattr(_phys, attr) for attr, *_ in PHYSICS_PARAMS}

# ── Async game loop ─────────────────────────────────────────────────────────

TARGET_FPS = 60
FRAME_DT = 1.0 / TARGET_FPS


async def game_loop():
    """Main game loop running at ~60 fps."""
    last_time = time.perf_counter()

    while True:
        now = time.perf_counter()
        dt = now - last_time
        last_time = now

        # Clamp dt to avoid spiral-of-death
        if dt > 0.05:
            dt = 0.05

        try:
            ctrl.advance(dt)
        except Exception:
            logger.exception("Game loop tick failed")

        if clients:
            frame_msg = _build_frame_message()
            dead: list[WebSocket] = []
            for ws in clients:
                try:
                    await ws.send_text(frame_msg)
                except Exception as exc:
                    logger.debug("Dropping client: %s", exc)
                    dead.append(ws)
            for ws in dead:
                if ws in clients:
                    clients.remove(ws)

        elapsed = time.perf_counter() - now
        sleep_time = FRAME_DT - elapsed
        if sleep_time > 0:
            await asyncio.sleep(sleep_time)
        else:
            await asyncio.sleep(0)


def _build_frame_message() -> str:
    """Serialize current state into a JSON frame message and drain queues."""
    events = list(ctrl.pending_events)
    ctrl.pending_events.clear()

    sounds = []
    for ev in ctrl.physics_events:
        sounds.append({
            "type": ev.get("type", ""),
            "speed": round(float(ev.get("speed", 0.0)), 3),
        })

    frame = {
        "type": "frame",
        **ctrl.snapshot(),
        "events": events,
        "sounds": sounds,
        "status": ctrl.status_msg,
        "info": ctrl.info_msg,
    }
    return json.dumps(frame, separators=(',', ':'))


def _init_message() -> str:
    return json.dumps({
        "type": "init",
        "half_width": TABLE_HALF_WIDTH,
        "half_depth": TABLE_HALF_DEPTH,
        "ball_radius": BALL_RADIUS,
        "cushions": [[c.x, c.z, c.width, c.depth] for c in ctrl.engine.cushions],
        "pockets": [[p.x, p.z, p.radius] for p in ctrl.engine.pockets],
        "pocket_radius": POCKET_RADIUS,
    })


# ── Physics params helpers ──────────────────────────────────────────────────

def _get_params_data() -> list:
    """Return all physics params with current values."""
    result = []
    for attr, label, mn, mx, step in PHYSICS_PARAMS:
        result.append({
            "attr": attr, "label": label,
            "value": round(getattr(_phys, attr), 6),
            "min": mn, "max": mx, "step": step,
        })
    return result


def _adjust_param(idx: int, direction: int, fine: bool = False) -> float | None:
    if not 0 <= idx < len(PHYSICS_PARAMS):
        return None
    attr, label, mn, mx, step = PHYSICS_PARAMS[idx]
    s = step / 10.0 if fine else step
    new_val = max(mn, min(mx, getattr(_phys, attr) + direction * s))
    setattr(_phys, attr, new_val)
    logger.info("Param %s -> %s", attr, new_val)
    return new_val


def _reset_params() -> None:
    for attr, dflt in PARAM_DEFAULTS.items():
        setattr(_phys, attr, dflt)


# ── Client message dispatch ─────────────────────────────────────────────────

def _handle_message(msg: dict) -> dict | None:
    """Apply one client command. Returns a reply message or None."""
    global ctrl
    cmd = msg.get("cmd", "")

    if cmd == "aim":
        ctrl.set_aim_target(float(msg.get("x", 0.0)), float(msg.get("z", 0.0)))
    elif cmd == "aim_move":
        ctrl.move_aim_target(float(msg.get("dx", 0.0)), float(msg.get("dz", 0.0)))
    elif cmd == "shoot":
        if "x" in msg and "z" in msg:
            ctrl.aim_and_shoot((float(msg["x"]), float(msg["z"])))
        else:
            ctrl.aim_and_shoot()
    elif cmd == "place":
        ctrl.place_cue_ball((float(msg.get("x", 0.0)), float(msg.get("z", 0.0))))
    elif cmd == "select_group":
        ctrl.select_group(msg.get("group", ""))
    elif cmd == "new_game":
        seed = msg.get("seed")
        ctrl.new_game(int(seed) if seed is not None else None)
    elif cmd == "scenario":
        entry = SCENARIOS.get(str(msg.get("key", "")))
        if entry is not None and not ctrl.is_shot_in_progress:
            fn, label = entry
            ctrl = fn(run=False)["controller"]
            ctrl.info_msg = f"Scenario {label}"
    elif cmd == "execute":
        ctrl.execute_command(msg.get("text", ""))
    elif cmd == "get_state":
        return {"type": "state_json", "data": ctrl.get_state_json()}
    elif cmd == "get_params":
        return {"type": "params", "data": _get_params_data()}
    elif cmd == "adjust_param":
        idx = int(msg.get("index", 0))
        new_val = _adjust_param(idx, int(msg.get("direction", 0)), bool(msg.get("fine", False)))
        if new_val is not None:
            return {"type": "param_update", "index": idx, "value": round(new_val, 6)}
    elif cmd == "reset_params":
        _reset_params()
        return {"type": "params", "data": _get_params_data()}
    else:
        logger.debug("Unknown client cmd %r", cmd)
    return None


def _dispatch_message(msg: dict) -> dict | None:
    """_handle_message, with malformed command fields logged and dropped."""
    try:
        return _handle_message(msg)
    except (TypeError, ValueError, KeyError) as exc:
        logger.warning("Bad client message %r: %s", msg.get("cmd"), exc)
        return None


# ── HTTP / WebSocket endpoints ──────────────────────────────────────────────

@app.get("/state")
async def state():
    return ctrl.snapshot()


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    clients.append(ws)
    await ws.send_text(_init_message())

    try:
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON client message")
                continue
            if not isinstance(msg, dict):
                continue
            reply = _dispatch_message(msg)
            if reply is not None:
                await ws.send_text(json.dumps(reply))
    except WebSocketDisconnect:
        pass
    finally:
        if ws in clients:
            clients.remove(ws)


# ── Run with uvicorn ────────────────────────────────────────────────────────

def main(argv=None):
    global ctrl
    parser = argparse.ArgumentParser(description="Serve an 8-ball pool match over WebSocket")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--seed", type=int, default=None, help="rack shuffle seed")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    ctrl = PoolController(seed=args.seed)

    import uvicorn
    uvicorn.run(app, host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
