"""Rules engine for Ultimate Tic Tac Toe (nine 3x3 boards inside a 3x3 meta-board)."""
import logging
from collections import namedtuple
from enum import Enum

logger = logging.getLogger(__name__)

WIN_LINES = [
    (0,1,2),(3,4,5),(6,7,8),
    (0,3,6),(1,4,7),(2,5,8),
    (0,4,8),(2,4,6)
]

SNAPSHOT_VERSION = 1
PASS_INDEX = -1


class InvalidState(RuntimeError):
    """A board was asked to do something its invariants forbid."""


class InvalidSnapshot(ValueError):
    """A persisted or received snapshot is malformed or inconsistent."""


# ── Enumerations ──────────────────────────────────────────────────────────────
class Mark(Enum):
    NONE = None
    A = "A"
    B = "B"

    @property
    def other(self):
        if self is Mark.A: return Mark.B
        if self is Mark.B: return Mark.A
        return Mark.NONE

    @classmethod
    def parse(cls, value):
        if isinstance(value, Mark): return value
        if value is not None and not isinstance(value, str):
            raise InvalidSnapshot(f"unknown mark {value!r}")
        value = _LEGACY_MARKS.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise InvalidSnapshot(f"unknown mark {value!r}") from None

_LEGACY_MARKS = {"X": "A", "O": "B"}


class Outcome(Enum):
    UNDECIDED = None
    WON_A = "A"
    WON_B = "B"
    DRAWN = "D"

    @property
    def decided(self):
        return self is not Outcome.UNDECIDED

    @property
    def mark(self):
        """The mark that owns this board for line purposes (NONE for drawn/undecided)."""
        if self is Outcome.WON_A: return Mark.A
        if self is Outcome.WON_B: return Mark.B
        return Mark.NONE

    @classmethod
    def won_by(cls, mark):
        return cls.WON_A if mark is Mark.A else cls.WON_B

    @classmethod
    def parse(cls, value):
        if isinstance(value, Outcome): return value
        if value is not None and not isinstance(value, str):
            raise InvalidSnapshot(f"unknown board outcome {value!r}")
        value = _LEGACY_MARKS.get(value, value)
        try:
            return cls(value)
        except ValueError:
            raise InvalidSnapshot(f"unknown board outcome {value!r}") from None


class Rules(Enum):
    STANDARD = "standard"
    FREE_PLAY = "free-play"

    @classmethod
    def parse(cls, value):
        if isinstance(value, Rules): return value
        if not isinstance(value, str):
            raise InvalidSnapshot(f"unknown rules {value!r}")
        try:
            return cls(value)
        except ValueError:
            raise InvalidSnapshot(f"unknown rules {value!r}") from None


class MatchState(Enum):
    IN_PROGRESS = "in-progress"
    WON = "won"
    DRAWN = "drawn"


Move = namedtuple("Move", "board cell")
LastMove = namedtuple("LastMove", "board cell player")

PASS_MOVE = Move(PASS_INDEX, PASS_INDEX)


def line_winner(marks):
    """First mark holding one of the 8 lines of a 3x3 grid, else Mark.NONE."""
    for a, b, c in WIN_LINES:
        if marks[a] is not Mark.NONE and marks[a] is marks[b] is marks[c]:
            return marks[a]
    return Mark.NONE


def _is_index(value):
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value < 9


# ── Boards ────────────────────────────────────────────────────────────────────
class SubBoard:
    __slots__ = ("cells",)

    def __init__(self, cells=None):
        self.cells = list(cells) if cells is not None else [Mark.NONE]*9

    def set_cell(self, cell, mark):
        if not _is_index(cell):
            raise InvalidState(f"cell index {cell!r} out of range")
        if mark is Mark.NONE:
            raise InvalidState("cannot clear a cell")
        if self.cells[cell] is not Mark.NONE:
            raise InvalidState(f"cell {cell} already holds {self.cells[cell].value}")
        self.cells[cell] = mark

    def winner(self):
        return line_winner(self.cells)

    def is_full(self):
        return all(c is not Mark.NONE for c in self.cells)

    def outcome(self):
        w = self.winner()
        if w is not Mark.NONE: return Outcome.won_by(w)
        return Outcome.DRAWN if self.is_full() else Outcome.UNDECIDED

    def empty_cells(self):
        return [i for i, c in enumerate(self.cells) if c is Mark.NONE]


class MetaBoard:
    """The 3x3 grid of sub-board outcomes, scored with the same lines as a sub-board."""
    __slots__ = ("outcomes",)

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes) if outcomes is not None else [Outcome.UNDECIDED]*9

    def winner(self):
        return line_winner([o.mark for o in self.outcomes])

    def all_decided(self):
        return all(o.decided for o in self.outcomes)

    def is_decided(self, board):
        return self.outcomes[board].decided


# ── Match engine ──────────────────────────────────────────────────────────────
class MatchEngine:
    def __init__(self, rules=Rules.STANDARD, initial_player=Mark.A):
        self.rules = Rules.parse(rules)
        self.reset(initial_player=initial_player)

    def reset(self, rules=None, initial_player=Mark.A):
        if rules is not None:
            self.rules = Rules.parse(rules)
        initial_player = Mark.parse(initial_player)
        if initial_player is Mark.NONE:
            raise ValueError("initial player must be A or B")
        self.boards = [SubBoard() for _ in range(9)]
        self.meta = MetaBoard()
        self.current_player = initial_player
        self.active_board = None          # None means any undecided board
        self.winner = Mark.NONE
        self.is_draw = False
        self.last_move = None
        self.move_history = []            # [{board, cell, player}, ...]

    @property
    def state(self):
        if self.winner is not Mark.NONE: return MatchState.WON
        if self.is_draw: return MatchState.DRAWN
        return MatchState.IN_PROGRESS

    @property
    def is_over(self):
        return self.state is not MatchState.IN_PROGRESS

    def _target_board(self):
        """Board the current player is held to, or None when any board is open."""
        if self.rules is not Rules.STANDARD or self.active_board is None:
            return None
        if self.meta.is_decided(self.active_board):
            return None
        return self.active_board

    def check_valid_move(self, b, c):
        if (b, c) == PASS_MOVE: return not self.is_over
        if not (_is_index(b) and _is_index(c)): return False
        if self.is_over: return False
        target = self._target_board()
        if target is not None and b != target: return False
        if self.meta.is_decided(b): return False
        return self.boards[b].cells[c] is Mark.NONE

    def apply_move(self, b, c):
        """Play the current player's mark at (b, c). Returns False, changing nothing, if illegal."""
        if (b, c) == PASS_MOVE: return self.pass_turn()
        if not self.check_valid_move(b, c): return False
        player = self.current_player
        self.boards[b].set_cell(c, player)
        self.last_move = LastMove(b, c, player)
        self.move_history.append({"board": b, "cell": c, "player": player.value})
        self.meta.outcomes[b] = self.boards[b].outcome()
        self.winner = self.meta.winner()
        if self.winner is Mark.NONE:
            self.is_draw = self.meta.all_decided()
        self.active_board = self._route_after(c)
        self.current_player = player.other
        logger.debug("move %s at board %d cell %d -> %s", player.value, b, c, self.state.value)
        return True

    def pass_turn(self):
        """Skip the current player's turn without touching any board (turn-timer expiry)."""
        if self.is_over: return False
        self.move_history.append({"board": None, "cell": None, "player": self.current_player.value})
        logger.debug("%s passed", self.current_player.value)
        self.current_player = self.current_player.other
        self.active_board = None
        return True

    def _route_after(self, cell):
        if self.rules is not Rules.STANDARD: return None
        return None if self.meta.is_decided(cell) else cell

    def set_rules(self, rules):
        self.rules = Rules.parse(rules)
        self.active_board = self._rederive_routing()

    def _rederive_routing(self):
        """Board the opponent's last real move sends the current player to, if any.

        A pass (or an empty history whose ``last_move`` isn't the opponent's) leaves
        every board open.
        """
        if self.rules is Rules.FREE_PLAY: return None
        if self.move_history and self.move_history[-1]["board"] is None: return None
        lm = self.last_move
        if lm is None or lm.player is not self.current_player.other: return None
        return self._route_after(lm.cell)

    def legal_moves(self):
        if self.is_over: return []
        target = self._target_board()
        boards = range(9) if target is None else [target]
        return [Move(b, c) for b in boards if not self.meta.is_decided(b)
                for c in self.boards[b].empty_cells()]

    # ── Snapshots ─────────────────────────────────────────────────────────────
    def snapshot(self):
        lm = self.last_move
        return {
            "version":       SNAPSHOT_VERSION,
            "boards":        [[m.value for m in sb.cells] for sb in self.boards],
            "outcomes":      [o.value for o in self.meta.outcomes],
            "currentPlayer": self.current_player.value,
            "activeBoard":   self.active_board,
            "rules":         self.rules.value,
            "winner":        self.winner.value,
            "isDraw":        self.is_draw,
            "lastMove":      None if lm is None else {"board": lm.board, "cell": lm.cell,
                                                      "player": lm.player.value},
            "moveHistory":   [dict(m) for m in self.move_history],
        }

    @classmethod
    def from_snapshot(cls, data):
        if not isinstance(data, dict):
            raise InvalidSnapshot("snapshot must be a mapping")
        try:
            return cls._load(data)
        except InvalidSnapshot:
            raise
        except (KeyError, TypeError, IndexError, AttributeError) as e:
            raise InvalidSnapshot(f"malformed snapshot: {e!r}") from e

    @classmethod
    def _load(cls, data):
        legacy = "version" not in data
        engine = cls(Rules.parse(data.get("rules", Rules.STANDARD.value)))
        engine.boards = [SubBoard(_parse_cells(raw)) for raw in _nine(data["boards"], "boards")]

        derived = [sb.outcome() for sb in engine.boards]
        stored = data.get("outcomes", data.get("boardWinners"))
        if stored is not None:
            for i, raw in enumerate(_nine(stored, "outcomes")):
                o = Outcome.parse(raw)
                # pre-versioned saves left drawn boards as null
                if o is derived[i] or (legacy and o is Outcome.UNDECIDED and derived[i] is Outcome.DRAWN):
                    continue
                raise InvalidSnapshot(f"board {i} outcome {o.value!r} disagrees with its cells")
        engine.meta = MetaBoard(derived)

        engine.current_player = Mark.parse(data["currentPlayer"])
        if engine.current_player is Mark.NONE:
            raise InvalidSnapshot("currentPlayer must be A or B")

        active = data.get("activeBoard")
        if active is not None and not _is_index(active):
            raise InvalidSnapshot(f"activeBoard {active!r} out of range")
        engine.active_board = None if engine.rules is Rules.FREE_PLAY else active

        engine.winner = engine.meta.winner()
        if Mark.parse(data.get("winner")) is not engine.winner:
            raise InvalidSnapshot("winner disagrees with board outcomes")
        engine.is_draw = engine.winner is Mark.NONE and engine.meta.all_decided()
        if bool(data.get("isDraw", False)) != engine.is_draw:
            raise InvalidSnapshot("isDraw disagrees with board outcomes")

        engine.last_move = _parse_last_move(data.get("lastMove"), engine.boards)
        engine.move_history = [_parse_history_entry(e) for e in data.get("moveHistory") or []]
        logger.debug("restored snapshot (version %s)", data.get("version", "legacy"))
        return engine

    @classmethod
    def replay(cls, history, rules=Rules.STANDARD, initial_player=Mark.A):
        """Rebuild a match by re-applying a move log (as stored in ``moveHistory``)."""
        engine = cls(rules, initial_player)
        for i, entry in enumerate(history):
            if not isinstance(entry, dict):
                raise InvalidSnapshot(f"history entry {i} is not a mapping")
            entry = _parse_history_entry(entry)
            if Mark.parse(entry["player"]) is not engine.current_player:
                raise InvalidSnapshot(f"history entry {i} played out of turn")
            b, c = entry["board"], entry["cell"]
            ok = engine.pass_turn() if b is None else engine.apply_move(b, c)
            if not ok:
                raise InvalidSnapshot(f"history entry {i} is not a legal move")
        return engine


def create_match(rules=None, initial_snapshot=None):
    """New engine, or one restored from ``initial_snapshot``; ``rules`` overrides the saved rules."""
    if initial_snapshot is None:
        return MatchEngine(rules if rules is not None else Rules.STANDARD)
    engine = MatchEngine.from_snapshot(initial_snapshot)
    if rules is not None and Rules.parse(rules) is not engine.rules:
        engine.set_rules(rules)
    return engine


# ── Snapshot parsing helpers ──────────────────────────────────────────────────
def _nine(seq, name):
    if not isinstance(seq, (list, tuple)) or len(seq) != 9:
        raise InvalidSnapshot(f"{name} must hold 9 entries")
    return seq

def _parse_cells(raw):
    # pre-versioned saves stored each board as 3 rows of 3
    if isinstance(raw, (list, tuple)) and len(raw) == 3 and all(isinstance(r, (list, tuple)) for r in raw):
        raw = [cell for row in raw for cell in _three(row)]
    return [Mark.parse(v) for v in _nine(raw, "board cells")]

def _three(row):
    if len(row) != 3:
        raise InvalidSnapshot("board rows must hold 3 cells")
    return row

def _parse_last_move(raw, boards):
    if raw is None: return None
    b = raw.get("board", raw.get("boardIndex"))
    c = raw.get("cell", raw.get("cellIndex"))
    player = Mark.parse(raw["player"])
    if not (_is_index(b) and _is_index(c)) or player is Mark.NONE:
        raise InvalidSnapshot(f"lastMove {raw!r} is malformed")
    if boards[b].cells[c] is not player:
        raise InvalidSnapshot("lastMove does not match the board")
    return LastMove(b, c, player)

def _parse_history_entry(raw):
    b, c = raw.get("board"), raw.get("cell")
    player = Mark.parse(raw["player"])
    is_pass = b is None and c is None
    if player is Mark.NONE or not (is_pass or (_is_index(b) and _is_index(c))):
        raise InvalidSnapshot(f"history entry {raw!r} is malformed")
    return {"board": b, "cell": c, "player": player.value}
