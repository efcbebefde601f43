"""Shared fixtures. The server reads its configuration at import, so set it up first."""
import os

os.environ.setdefault("ASYNC_MODE", "threading")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AI_BACKGROUND", "0")
os.environ.setdefault("AI_THINK_DELAY", "0")

import pytest

from tictacsquared.logic import MatchEngine, MetaBoard, Mark, Rules, SubBoard


def build_engine(boards, player="A", active=None, rules=Rules.STANDARD):
    """Engine from nine 9-char strings ('.', 'A', 'B'), one per sub-board."""
    engine = MatchEngine(rules)
    engine.boards = [SubBoard([Mark.NONE if ch == "." else Mark(ch) for ch in row]) for row in boards]
    engine.meta = MetaBoard([sb.outcome() for sb in engine.boards])
    engine.winner = engine.meta.winner()
    engine.is_draw = engine.winner is Mark.NONE and engine.meta.all_decided()
    engine.current_player = Mark(player)
    engine.active_board = active
    return engine


@pytest.fixture
def build():
    return build_engine


@pytest.fixture
def server():
    import app as server
    server.rooms.clear()
    with server.app.app_context():
        server.db.drop_all()
        server.db.create_all()
    return server


@pytest.fixture
def connect(server):
    clients = []

    def _connect():
        c = server.socketio.test_client(server.app)
        clients.append(c)
        return c

    yield _connect
    for c in clients:
        if c.is_connected():
            c.disconnect()
