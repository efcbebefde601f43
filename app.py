import os

ASYNC_MODE = os.environ.get('ASYNC_MODE', 'gevent')
if ASYNC_MODE == 'gevent':
    from gevent import monkey
    monkey.patch_all()

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, join_room, leave_room, emit
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from tictacsquared.logic import MatchEngine, InvalidSnapshot, Mark, Rules, PASS_MOVE
from tictacsquared.ai import Strength, select_move
from tictacsquared.messages import (InvalidMessage, decode_move, decode_room, decode_rules,
                                    move_message, new_room_code, settings_message,
                                    status_message, sync_message)
import json, logging, random, string, time


def _env_bool(name, default):
    raw = os.environ.get(name)
    if raw is None: return default
    return raw.strip().lower() not in ('0', 'false', 'no', 'off', '')


app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'a_secret_key')
# ── Database path ─────────────────────────────────────────────────────────────
# DATABASE_URL points at Postgres in deployment; without it we fall back to
# SQLite in an 'instance' folder next to app.py.
_db_url = os.environ.get('DATABASE_URL', None)
if _db_url and _db_url.startswith('postgres://'):
    # SQLAlchemy 1.4+ requires postgresql:// not postgres://
    _db_url = _db_url.replace('postgres://', 'postgresql://', 1)
if not _db_url:
    _data_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'instance')
    os.makedirs(_data_dir, exist_ok=True)
    _db_url = f'sqlite:///{os.path.join(_data_dir, "db.sqlite3")}'
app.config['SQLALCHEMY_DATABASE_URI'] = _db_url
app.config['MOVE_TIMEOUT']   = int(os.environ.get('MOVE_TIMEOUT', 30))        # seconds per turn, 0 = off
app.config['AI_THINK_DELAY'] = float(os.environ.get('AI_THINK_DELAY', 0.6))   # seconds
app.config['AI_BACKGROUND']  = _env_bool('AI_BACKGROUND', True)
db = SQLAlchemy(app)
migrate = Migrate(app, db)
socketio = SocketIO(app, async_mode=ASYNC_MODE)

rooms = {}

# ── Models ───────────────────────────────────────────────────────────────────
class SavedMatch(db.Model):
    __tablename__ = 'saved_match'
    id            = db.Column(db.Integer, primary_key=True)
    room          = db.Column(db.String(5), unique=True, nullable=False)
    snapshot_json = db.Column(db.Text, nullable=False)
    settings_json = db.Column(db.Text, nullable=True)    # AI seat / strength for the room
    updated_at    = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())

class MatchRecord(db.Model):
    __tablename__ = 'match_record'
    id                = db.Column(db.Integer, primary_key=True)
    game_id           = db.Column(db.String(8), unique=True, nullable=False)
    rules             = db.Column(db.String(10), nullable=False)
    winner            = db.Column(db.String(1), nullable=True)
    is_draw           = db.Column(db.Boolean, default=False, nullable=False)
    move_history_json = db.Column(db.Text, nullable=True)
    timestamp         = db.Column(db.DateTime, server_default=db.func.now())


class MatchStore:
    """Snapshot persistence keyed by room code."""

    def load(self, room):
        row = SavedMatch.query.filter_by(room=room).first()
        if not row: return None
        try:
            return MatchEngine.from_snapshot(json.loads(row.snapshot_json))
        except ValueError as e:
            # covers InvalidSnapshot and undecodable JSON; the caller starts fresh
            app.logger.warning("[db] discarding saved match %s: %s", room, e)
            return None

    def exists(self, room):
        return SavedMatch.query.filter_by(room=room).first() is not None

    def settings(self, room):
        row = SavedMatch.query.filter_by(room=room).first()
        if not row or not row.settings_json: return {}
        try:
            return json.loads(row.settings_json)
        except ValueError:
            return {}

    def save(self, room, engine, settings=None):
        row = SavedMatch.query.filter_by(room=room).first()
        if not row:
            row = SavedMatch(room=room)
            db.session.add(row)
        row.snapshot_json = json.dumps(engine.snapshot())
        if settings is not None:
            row.settings_json = json.dumps(settings)
        db.session.commit()

    def clear(self, room):
        SavedMatch.query.filter_by(room=room).delete()
        db.session.commit()

    def record(self, engine):
        game_id = ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))
        rec = MatchRecord(game_id=game_id, rules=engine.rules.value,
                          winner=engine.winner.value, is_draw=engine.is_draw,
                          move_history_json=json.dumps(engine.move_history))
        db.session.add(rec)
        db.session.commit()
        return game_id

store = MatchStore()

# ── Helpers ───────────────────────────────────────────────────────────────────
def make_room_data(engine=None, is_ai=False, ai_strength=Strength.BALANCED, ai_mark='B'):
    rd = {
        "engine":        engine or MatchEngine(),
        "players":       {},           # sid -> mark
        "seats":         {},           # mark -> sid (or "AI")
        "host":          None,
        "is_ai":         is_ai,
        "ai_strength":   Strength.parse(ai_strength),
        "ai_mark":       ai_mark,
        "move_deadline": None,
        "forfeited":     None,         # mark of the player who forfeited
        "game_id":       None,         # MatchRecord id once finished
    }
    if is_ai: rd["seats"][ai_mark] = "AI"
    return rd

def room_settings(rd):
    return {"isAI": rd["is_ai"], "aiStrength": rd["ai_strength"].value, "aiMark": rd["ai_mark"]}

def full_state(rd):
    s = rd["engine"].snapshot()
    s["moveDeadline"] = rd.get("move_deadline")
    s["moveTimeout"]  = app.config['MOVE_TIMEOUT']
    s["serverNow"]    = time.time()
    s["seats"]        = {m: ("AI" if sid == "AI" else "human") for m, sid in rd["seats"].items()}
    s["forfeited"]    = rd.get("forfeited")
    s["gameId"]       = rd.get("game_id")
    s.update(room_settings(rd))
    return s

def reset_timer(rd):
    timeout = app.config['MOVE_TIMEOUT']
    if rd["engine"].is_over or rd["forfeited"] or len(rd["seats"]) < 2 or not timeout:
        rd["move_deadline"] = None
    else:
        rd["move_deadline"] = time.time() + timeout

def _ai_should_move(rd):
    g = rd["engine"]
    return (rd["is_ai"] and not g.is_over and not rd["forfeited"]
            and g.current_player.value == rd["ai_mark"] and len(rd["seats"]) == 2)

def _after_turn(room, rd):
    g = rd["engine"]
    if g.is_over:
        rd["move_deadline"] = None
        if not rd["game_id"]:
            rd["game_id"] = store.record(g)
            store.clear(room)
    else:
        reset_timer(rd)
        store.save(room, g, room_settings(rd))
    socketio.emit("state", full_state(rd), to=room)

def _think(snapshot, strength):
    """Run the search where it can't stall the event loop."""
    if ASYNC_MODE == 'gevent':
        # a greenlet never yields inside the search; a hub thread keeps other rooms going
        from gevent import get_hub
        return get_hub().threadpool.apply(select_move, (snapshot, strength))
    return select_move(snapshot, strength)

def _play_ai_turn(room):
    with app.app_context():
        socketio.sleep(app.config['AI_THINK_DELAY'])
        rd = rooms.get(room)
        if not rd or not _ai_should_move(rd): return
        g = rd["engine"]
        player = g.current_player
        plies = len(g.move_history)
        move = _think(g.snapshot(), rd["ai_strength"])
        # the match may have moved on (timeout, reset, forfeit) while we were thinking
        if rooms.get(room) is not rd or len(g.move_history) != plies or not _ai_should_move(rd): return
        if move is None or not g.apply_move(*move): return
        socketio.emit("move", move_message(move.board, move.cell, player), to=room)
        _after_turn(room, rd)

def _schedule_ai(room):
    if app.config['AI_BACKGROUND']:
        socketio.start_background_task(_play_ai_turn, room)
    else:
        _play_ai_turn(room)

def _room_for(data):
    """(room, room data) for a payload, or (None, None) after telling the sender why."""
    try:
        room = decode_room(data)
    except InvalidMessage as e:
        app.logger.warning("rejected payload %r: %s", data, e)
        emit("error", {"error": str(e)}); return None, None
    rd = rooms.get(room)
    if not rd:
        emit("invalid"); return None, None
    return room, rd

# ── HTTP ──────────────────────────────────────────────────────────────────────
@app.route("/api/match/<room>")
def match_snapshot(room):
    room = room.upper()
    if room in rooms:
        return jsonify(full_state(rooms[room]))
    engine = store.load(room)
    if engine is None:
        return jsonify({"error": "no such match"}), 404
    return jsonify(engine.snapshot())

@app.route("/api/replay/<game_id>")
def match_replay(game_id):
    rec = MatchRecord.query.filter_by(game_id=game_id).first_or_404()
    history = json.loads(rec.move_history_json) if rec.move_history_json else []
    first = history[0]["player"] if history else Mark.A.value
    try:
        final = MatchEngine.replay(history, rec.rules, first).snapshot()
    except InvalidSnapshot as e:
        app.logger.warning("[db] replay %s is corrupt: %s", game_id, e)
        final = None
    return jsonify({"gameId": rec.game_id, "rules": rec.rules, "winner": rec.winner,
                    "isDraw": rec.is_draw, "history": history, "final": final})

# ── SocketIO Events ───────────────────────────────────────────────────────────
@socketio.on("create")
def create(data=None):
    data = data or {}
    try:
        rules    = decode_rules(data, Rules.STANDARD)
        strength = Strength.parse(data.get('strength', Strength.BALANCED.value))
    except ValueError as e:
        emit("error", {"error": str(e)}); return
    room = new_room_code()
    while room in rooms: room = new_room_code()
    is_ai = bool(data.get('ai'))
    rooms[room] = make_room_data(MatchEngine(rules), is_ai=is_ai, ai_strength=strength,
                                 ai_mark='A' if data.get('aiFirst') else 'B')
    emit("created", {"room": room})

@socketio.on("join")
def join(data):
    try:
        room = decode_room(data)
    except InvalidMessage:
        emit("invalid"); return
    rd = rooms.get(room)
    if rd is None:
        engine = store.load(room)
        if engine is None:
            if not store.exists(room):
                emit("invalid"); return
            engine = MatchEngine()
        saved = store.settings(room)
        rd = rooms[room] = make_room_data(engine, is_ai=saved.get("isAI", False),
                                          ai_strength=saved.get("aiStrength", "balanced"),
                                          ai_mark=saved.get("aiMark", "B"))
    sid = request.sid
    seats = rd["seats"]
    mark = rd["players"].get(sid)
    if mark is None:
        free = [m for m in ('A', 'B') if m not in seats]
        if not free:
            emit("status", status_message("game-full")); return
        mark = free[0]
        seats[mark] = sid
        rd["players"][sid] = mark
        if rd["host"] is None: rd["host"] = sid
    join_room(room)
    emit("assign", mark)
    emit("status", status_message("connected"), to=room)
    if len(seats) == 2:
        reset_timer(rd)
        emit("status", status_message("game-start"), to=room)
    emit("state", full_state(rd), to=room)
    if _ai_should_move(rd): _schedule_ai(room)

@socketio.on("move")
def move(data):
    room, rd = _room_for(data)
    if not rd: return
    try:
        mv = decode_move(data)
    except InvalidMessage as e:
        emit("error", {"error": str(e)}); return
    g = rd["engine"]
    mark = rd["players"].get(request.sid)
    deadline = rd.get("move_deadline")
    if (mv == PASS_MOVE or rd["forfeited"] or mark != g.current_player.value
            or (deadline and time.time() > deadline + 2) or not g.check_valid_move(*mv)):
        emit("invalidMove", {"board": mv.board, "cell": mv.cell}); return
    player = g.current_player
    g.apply_move(*mv)
    emit("move", move_message(mv.board, mv.cell, player), to=room)
    _after_turn(room, rd)
    if _ai_should_move(rd): _schedule_ai(room)

@socketio.on("settings")
def settings(data):
    room, rd = _room_for(data)
    if not rd: return
    if request.sid != rd["host"]: return
    try:
        rules = decode_rules(data)
    except InvalidMessage as e:
        emit("error", {"error": str(e)}); return
    if rules is None: return
    rd["engine"].set_rules(rules)
    emit("settings", settings_message(rules), to=room)
    _after_turn(room, rd)

@socketio.on("sync")
def sync(data):
    room, rd = _room_for(data)
    if not rd: return
    emit("sync", sync_message(full_state(rd)))

@socketio.on("timeout")
def timeout(data):
    room, rd = _room_for(data)
    if not rd: return
    g = rd["engine"]
    deadline = rd.get("move_deadline")
    if g.is_over or rd["forfeited"] or not deadline: return
    if time.time() >= deadline - 1:
        g.pass_turn()
        _after_turn(room, rd)
        if _ai_should_move(rd): _schedule_ai(room)

@socketio.on("reset")
def reset(data):
    room, rd = _room_for(data)
    if not rd or request.sid not in rd["players"]: return
    try:
        rules = decode_rules(data)
    except InvalidMessage as e:
        emit("error", {"error": str(e)}); return
    rd["engine"].reset(rules)
    rd["forfeited"] = None
    rd["game_id"] = None
    _after_turn(room, rd)
    if _ai_should_move(rd): _schedule_ai(room)

@socketio.on("forfeit")
def forfeit(data):
    room, rd = _room_for(data)
    if not rd: return
    mark = rd["players"].get(request.sid)
    if not mark or rd["engine"].is_over or rd["forfeited"]: return
    rd["forfeited"] = mark
    rd["move_deadline"] = None
    store.clear(room)
    emit("status", status_message("forfeit"), to=room)
    emit("state", full_state(rd), to=room)

@socketio.on('disconnect')
def disconnect(*args):
    sid = request.sid
    for room, rd in list(rooms.items()):
        mark = rd["players"].pop(sid, None)
        if mark is None: continue
        rd["seats"].pop(mark, None)
        if rd["host"] == sid:
            rd["host"] = next(iter(rd["players"]), None)
        rd["move_deadline"] = None
        leave_room(room)
        if not rd["players"]:
            # the snapshot stays in the store; the next join restores it
            del rooms[room]
        else:
            emit("status", status_message("disconnected"), to=room)
        return


def _ensure_db():
    """Create any missing tables. Runs on every startup so no manual upgrade is required."""
    with app.app_context():
        db.create_all()

_ensure_db()

if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    socketio.run(app, debug=True)
