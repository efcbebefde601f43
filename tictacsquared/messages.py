"""Messages exchanged between the match server and its clients.

Everything here is a plain dict so it can go straight through Socket.IO / JSON.
Inbound payloads come from untrusted clients; the ``decode_*`` helpers turn them
into engine types or raise ``InvalidMessage``.
"""
import random
import string

from .logic import InvalidSnapshot, Mark, Move, Rules, PASS_MOVE

ROOM_CODE_LENGTH = 5
ROOM_CODE_CHARS  = string.ascii_uppercase + string.digits

STATUSES = ("connected", "disconnected", "game-start", "forfeit", "game-full")


class InvalidMessage(ValueError):
    pass


def new_room_code(rng=random):
    return ''.join(rng.choice(ROOM_CODE_CHARS) for _ in range(ROOM_CODE_LENGTH))


# ── Outbound ──────────────────────────────────────────────────────────────────
def move_message(board, cell, player):
    return {"type": "move", "board": board, "cell": cell, "player": Mark.parse(player).value}

def settings_message(rules):
    return {"type": "settings", "rules": Rules.parse(rules).value}

def sync_message(snapshot):
    return {"type": "sync", "snapshot": snapshot}

def status_message(status):
    if status not in STATUSES:
        raise ValueError(f"unknown status {status!r}")
    return {"type": "status", "status": status}


# ── Inbound ───────────────────────────────────────────────────────────────────
def _field(data, *names):
    if not isinstance(data, dict):
        raise InvalidMessage("payload must be an object")
    for name in names:
        if name in data: return data[name]
    raise InvalidMessage(f"missing field {names[0]!r}")

def decode_room(data):
    room = _field(data, "room")
    if not isinstance(room, str):
        raise InvalidMessage("room must be a string")
    room = room.strip().upper()
    if len(room) != ROOM_CODE_LENGTH or any(ch not in ROOM_CODE_CHARS for ch in room):
        raise InvalidMessage(f"bad room code {room!r}")
    return room

def decode_move(data):
    b = _field(data, "board", "boardIndex")
    c = _field(data, "cell", "cellIndex")
    for v in (b, c):
        if not isinstance(v, int) or isinstance(v, bool):
            raise InvalidMessage("board and cell must be integers")
    move = Move(b, c)
    if move != PASS_MOVE and not (0 <= b < 9 and 0 <= c < 9):
        raise InvalidMessage(f"move {tuple(move)} out of range")
    return move

def decode_rules(data, default=None):
    if not isinstance(data, dict):
        raise InvalidMessage("payload must be an object")
    raw = data.get("rules", data.get("gameRules"))
    if raw is None:
        return default
    try:
        return Rules.parse(raw)
    except InvalidSnapshot as e:
        raise InvalidMessage(str(e)) from None
