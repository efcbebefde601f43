"""Move search for Ultimate Tic Tac Toe — weak / balanced / strong strengths.

STRENGTH TIERS (first branch that fires and finds a move wins)
──────────────────────────────────────────────────────────────
weak      20% win a sub-board → 15% block a sub-board → random.
balanced  75% win a sub-board → 65% block a sub-board → 50% positional
          → 25% minimax (depth 2) → random. Every roll is independent, so a
          roll that fires but finds nothing still falls through to the next.
strong    win the match → stop the opponent winning the match → win a
          sub-board (center, corners, edges) → block a sub-board → minimax with
          alpha-beta (depth 4) → positional → random.

The search never touches the caller's engine: it runs on a private copy with
an undo log (push / pop) instead of copying the whole position per node.
"""
import logging
import math
import random
from enum import Enum

from .logic import WIN_LINES, MatchEngine, Mark, Move, Outcome, Rules

logger = logging.getLogger(__name__)


class Strength(Enum):
    WEAK = "weak"
    BALANCED = "balanced"
    STRONG = "strong"

    @classmethod
    def parse(cls, value):
        if isinstance(value, Strength): return value
        if not isinstance(value, str):
            raise ValueError(f"unknown strength {value!r}")
        try:
            return cls(_STRENGTH_ALIASES.get(value, value))
        except ValueError:
            raise ValueError(f"unknown strength {value!r}") from None

_STRENGTH_ALIASES = {
    "easy": "weak",
    "moderate": "balanced", "medium": "balanced",
    "expert": "strong", "hard": "strong",
}

BALANCED_DEPTH = 2
STRONG_DEPTH = 4


# ── Board geometry ────────────────────────────────────────────────────────────
_CENTER_BOARD  = 4
_CORNER_BOARDS = (0, 2, 6, 8)
_EDGE_BOARDS   = (1, 3, 5, 7)

# Center first, then corners, then edges. Used for boards and for cells.
_PRIORITY = (_CENTER_BOARD,) + _CORNER_BOARDS + _EDGE_BOARDS

# How much each sub-board counts in the evaluation: center > corners > edges
_BOARD_WEIGHT = [2.0, 1.0, 2.0, 1.0, 3.0, 1.0, 2.0, 1.0, 2.0]


# ── Sim state ─────────────────────────────────────────────────────────────────
def _completes_line(cells, c, mark):
    """Would ``mark`` at empty cell ``c`` make three in a row?"""
    for line in WIN_LINES:
        if c in line and all(cells[i] is mark for i in line if i != c):
            return True
    return False

def _board_outcome(cells):
    for a, b, c in WIN_LINES:
        if cells[a] is not Mark.NONE and cells[a] is cells[b] is cells[c]:
            return Outcome.won_by(cells[a])
    return Outcome.DRAWN if Mark.NONE not in cells else Outcome.UNDECIDED

def _meta_winner(outcomes):
    owners = [o.mark for o in outcomes]
    for a, b, c in WIN_LINES:
        if owners[a] is not Mark.NONE and owners[a] is owners[b] is owners[c]:
            return owners[a]
    return Mark.NONE

class _SimState:
    __slots__ = ('boards', 'outcomes', 'player', 'active', 'rules', 'winner', '_undo')

    def __init__(self, engine):
        self.boards   = [list(sb.cells) for sb in engine.boards]
        self.outcomes = list(engine.meta.outcomes)
        self.player   = engine.current_player
        self.active   = engine.active_board
        self.rules    = engine.rules
        self.winner   = engine.winner
        self._undo    = []

    def valid_moves(self):
        if self.winner is not Mark.NONE: return []
        if (self.rules is Rules.STANDARD and self.active is not None
                and not self.outcomes[self.active].decided):
            boards = [self.active]
        else:
            boards = range(9)
        return [Move(b, c) for b in boards if not self.outcomes[b].decided
                for c in range(9) if self.boards[b][c] is Mark.NONE]

    def push(self, b, c):
        self._undo.append((b, c, self.outcomes[b], self.active, self.winner))
        cells = self.boards[b]
        cells[c] = self.player
        self.outcomes[b] = _board_outcome(cells)
        if self.outcomes[b].decided:
            self.winner = _meta_winner(self.outcomes)
        if self.rules is Rules.STANDARD and not self.outcomes[c].decided:
            self.active = c
        else:
            self.active = None
        self.player = self.player.other

    def pop(self):
        b, c, outcome, active, winner = self._undo.pop()
        self.boards[b][c] = Mark.NONE
        self.outcomes[b] = outcome
        self.active = active
        self.winner = winner
        self.player = self.player.other


# ── Heuristic evaluation ──────────────────────────────────────────────────────
_BOARD_SCORE_CACHE = {}

def _mini_lines(cells, me, opp):
    """Line control inside one undecided sub-board, before weighting."""
    key = (tuple(cells), me)
    score = _BOARD_SCORE_CACHE.get(key)
    if score is not None: return score
    score = 0
    for line in WIN_LINES:
        mine   = sum(1 for i in line if cells[i] is me)
        theirs = sum(1 for i in line if cells[i] is opp)
        if mine == 2 and theirs == 0:   score += 10
        elif theirs == 2 and mine == 0: score -= 12
        elif mine == 1 and theirs == 0: score += 3
        elif theirs == 1 and mine == 0: score -= 2
    _BOARD_SCORE_CACHE[key] = score
    return score

_META_SCORE_CACHE = {}

def _meta_lines(outcomes, me):
    """(score, decided) for the meta-board lines; decided means someone holds a full line."""
    key = (tuple(outcomes), me)
    hit = _META_SCORE_CACHE.get(key)
    if hit is not None: return hit
    opp = me.other
    owners = [o.mark for o in outcomes]
    score, decided = 0, False
    for line in WIN_LINES:
        mine   = sum(1 for i in line if owners[i] is me)
        theirs = sum(1 for i in line if owners[i] is opp)
        centre = _CENTER_BOARD in line
        if mine == 3:
            score, decided = 10000, True; break
        if theirs == 3:
            score, decided = -10000, True; break
        if mine == 2 and theirs == 0:
            score += 600 if centre else 500
        elif theirs == 2 and mine == 0:
            score -= 900 if centre else 700
        elif mine == 1 and theirs == 0:
            score += 75 if centre else 50
        elif theirs == 1 and mine == 0:
            score -= 60 if centre else 40
    _META_SCORE_CACHE[key] = (score, decided)
    return score, decided

def _evaluate(state, me):
    """Static score of ``state`` for ``me``. ±10000 means the match is decided."""
    opp = me.other
    score, decided = _meta_lines(state.outcomes, me)
    if decided: return score
    owners = [o.mark for o in state.outcomes]

    # ── Sub-boards by position ───────────────────────────────────────────────
    for i in range(9):
        weight = _BOARD_WEIGHT[i]
        if state.outcomes[i].decided:
            if owners[i] is me:    score += 100 * weight
            elif owners[i] is opp: score -= 100 * weight
            continue
        cells = state.boards[i]
        score += _mini_lines(cells, me, opp) * weight
        if cells[4] is me:    score += 5 * weight
        elif cells[4] is opp: score -= 5 * weight

    # center cell of the center board
    hub = state.boards[_CENTER_BOARD][4]
    if hub is me:    score += 15
    elif hub is opp: score -= 15
    return score


# ── Move ordering ─────────────────────────────────────────────────────────────
_CELL_RANK = [1, 0, 1, 0, 2, 0, 1, 0, 1]

def _threat_cells(cells, mark):
    """Empty cells where ``mark`` would complete a line."""
    found = set()
    if cells.count(mark) < 2: return found
    for line in WIN_LINES:
        trio = [cells[i] for i in line]
        if trio.count(mark) == 2 and Mark.NONE in trio:
            found.add(line[trio.index(Mark.NONE)])
    return found

def _ordered(state, moves):
    """Likely-best moves first for the side to move. Equal keys keep enumeration order."""
    me, opp = state.player, state.player.other
    wins, blocks = {}, {}
    for b, _ in moves:
        if b not in wins:
            wins[b]   = _threat_cells(state.boards[b], me)
            blocks[b] = _threat_cells(state.boards[b], opp)
    routed = state.rules is Rules.STANDARD

    def priority(m):
        b, c = m
        weight = _BOARD_WEIGHT[b]
        score = weight * 10 + _CELL_RANK[c]
        won = c in wins[b]
        if won:            score += 1000 * weight
        if c in blocks[b]: score += 500 * weight
        # handing the opponent a free choice of board
        if routed and (state.outcomes[c].decided or (won and c == b)): score -= 300
        return score

    return sorted(moves, key=priority, reverse=True)


# ── Alpha-Beta ────────────────────────────────────────────────────────────────
def _alphabeta(state, depth, alpha, beta, maximizing, me):
    if depth == 0: return _evaluate(state, me)
    moves = state.valid_moves()
    if not moves: return _evaluate(state, me)
    moves = _ordered(state, moves)

    if maximizing:
        best_val = -math.inf
        for b, c in moves:
            state.push(b, c)
            val = _alphabeta(state, depth-1, alpha, beta, False, me)
            state.pop()
            best_val = max(best_val, val)
            alpha = max(alpha, val)
            if beta <= alpha: break
        return best_val
    else:
        best_val = math.inf
        for b, c in moves:
            state.push(b, c)
            val = _alphabeta(state, depth-1, alpha, beta, True, me)
            state.pop()
            best_val = min(best_val, val)
            beta = min(beta, val)
            if beta <= alpha: break
        return best_val

def _minimax_move(state, moves, depth):
    """Best root move; on equal scores the earliest move in ``moves`` wins.

    The root keeps ``moves`` in the given order so ties stay predictable; only inner
    nodes are reordered, which changes how much is pruned but never the result.
    """
    me = state.player
    best_val, best_move = -math.inf, None
    for b, c in moves:
        state.push(b, c)
        val = _alphabeta(state, depth-1, best_val, math.inf, False, me)
        state.pop()
        if val > best_val: best_val, best_move = val, Move(b, c)
    return best_move


# ── Tactical scans ────────────────────────────────────────────────────────────
def _sub_board_win(state, moves):
    me = state.player
    for b, c in moves:
        if _completes_line(state.boards[b], c, me): return Move(b, c)
    return None

def _sub_board_block(state, moves):
    """An empty cell where the opponent would complete a line, in a board we may play."""
    opp = state.player.other
    seen = []
    for b, _ in moves:
        if b in seen: continue
        seen.append(b)
        cells = state.boards[b]
        for c in range(9):
            if cells[c] is Mark.NONE and _completes_line(cells, c, opp): return Move(b, c)
    return None

def _positional(state, moves):
    by_board = {}
    for m in moves:
        by_board.setdefault(m.board, set()).add(m.cell)
    centre = by_board.get(_CENTER_BOARD, ())
    for c in _PRIORITY:
        if c in centre: return Move(_CENTER_BOARD, c)
    for c in _PRIORITY:
        for b in _CORNER_BOARDS:
            if c in by_board.get(b, ()): return Move(b, c)
    for b in _EDGE_BOARDS:
        for c in _PRIORITY:
            if c in by_board.get(b, ()): return Move(b, c)
    return None

def _prioritised_sub_board_win(state, moves):
    me = state.player
    for board in _PRIORITY:
        for b, c in moves:
            if b == board and _completes_line(state.boards[b], c, me): return Move(b, c)
    return None

def _match_win(state, moves):
    me = state.player
    owners = [o.mark for o in state.outcomes]
    for b, c in moves:
        if state.outcomes[b].decided or not _completes_line(state.boards[b], c, me): continue
        owners[b] = me
        won = any(b in line and all(owners[i] is me for i in line) for line in WIN_LINES)
        owners[b] = Mark.NONE
        if won: return Move(b, c)
    return None

def _match_block(state, moves):
    """A move inside a board the opponent needs for a meta line that leaves them no win there.

    Winning that board ourselves closes it for good, so it always counts.
    """
    me, opp = state.player, state.player.other
    owners = [o.mark for o in state.outcomes]
    critical = set()
    for line in WIN_LINES:
        if sum(1 for i in line if owners[i] is opp) != 2: continue
        open_boards = [i for i in line if state.outcomes[i] is Outcome.UNDECIDED]
        if len(open_boards) == 1: critical.add(open_boards[0])
    if not critical: return None
    for b, c in moves:
        if b not in critical: continue
        if _completes_line(state.boards[b], c, me): return Move(b, c)
        cells = list(state.boards[b])
        cells[c] = me
        if not any(cells[i] is Mark.NONE and _completes_line(cells, i, opp) for i in range(9)):
            return Move(b, c)
    return None


# ── Strength tiers ────────────────────────────────────────────────────────────
def _weak_move(state, moves, rng):
    if rng.random() < 0.20:
        m = _sub_board_win(state, moves)
        if m: return m, "win board"
    if rng.random() < 0.15:
        m = _sub_board_block(state, moves)
        if m: return m, "block board"
    return rng.choice(moves), "random"

def _balanced_move(state, moves, rng):
    if rng.random() < 0.75:
        m = _sub_board_win(state, moves)
        if m: return m, "win board"
    if rng.random() < 0.65:
        m = _sub_board_block(state, moves)
        if m: return m, "block board"
    if rng.random() < 0.50:
        m = _positional(state, moves)
        if m: return m, "positional"
    if rng.random() < 0.25:
        m = _minimax_move(state, moves, BALANCED_DEPTH)
        if m: return m, "minimax"
    return rng.choice(moves), "random"

def _strong_move(state, moves, rng):
    cascade = (
        ("win match",   _match_win),
        ("block match", _match_block),
        ("win board",   _prioritised_sub_board_win),
        ("block board", _sub_board_block),
        ("minimax",     lambda s, mv: _minimax_move(s, mv, STRONG_DEPTH)),
        ("positional",  _positional),
    )
    for label, finder in cascade:
        m = finder(state, moves)
        if m: return m, label
    return rng.choice(moves), "random"

_TIERS = {
    Strength.WEAK:     _weak_move,
    Strength.BALANCED: _balanced_move,
    Strength.STRONG:   _strong_move,
}


# ── Public API ────────────────────────────────────────────────────────────────
def select_move(snapshot, strength=Strength.BALANCED, rng=None):
    """Pick a move for the player to move in ``snapshot``.

    ``snapshot`` is a dict from ``MatchEngine.snapshot()`` (or an engine, which is
    read but never modified). ``rng`` only needs ``random()`` and ``choice()``;
    it defaults to the ``random`` module. Returns a ``Move`` or None when the
    match is over.
    """
    engine = snapshot if isinstance(snapshot, MatchEngine) else MatchEngine.from_snapshot(snapshot)
    strength = Strength.parse(strength)
    state = _SimState(engine)
    moves = engine.legal_moves()
    if not moves: return None
    move, label = _TIERS[strength](state, moves, rng or random)
    logger.debug("%s picked %s via %s (%s)", engine.current_player.value, tuple(move), label, strength.value)
    return move
