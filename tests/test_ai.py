import copy
import random
import time

import pytest

from tictacsquared import ai
from tictacsquared.ai import (Strength, _SimState, _evaluate, _match_block, _minimax_move, _positional,
                              select_move)
from tictacsquared.logic import InvalidSnapshot, MatchEngine, Mark, Move, Outcome, Rules

E = "." * 9
WON_A = "AAA......"
WON_B = "BBB......"


class ScriptedRng:
    """Stands in for ``random``: fixed rolls, and choice() always takes the first option."""

    def __init__(self, *rolls):
        self.rolls = list(rolls)

    def random(self):
        return self.rolls.pop(0)

    def choice(self, seq):
        return seq[0]


def test_strength_aliases():
    assert Strength.parse("easy") is Strength.WEAK
    assert Strength.parse("moderate") is Strength.BALANCED
    assert Strength.parse("medium") is Strength.BALANCED
    assert Strength.parse("expert") is Strength.STRONG
    assert Strength.parse("strong") is Strength.STRONG
    with pytest.raises(ValueError):
        Strength.parse("godlike")


@pytest.mark.parametrize("strength", list(Strength))
def test_no_move_once_match_is_over(build, strength):
    g = build([WON_A, WON_A, WON_A, E, E, E, E, E, E], player="B")
    assert g.is_over
    assert select_move(g.snapshot(), strength) is None


def test_malformed_snapshot_raises():
    with pytest.raises(InvalidSnapshot):
        select_move({"boards": []}, Strength.WEAK)


@pytest.mark.parametrize("strength", list(Strength))
@pytest.mark.parametrize("seed", range(4))
def test_moves_are_legal_and_input_untouched(strength, seed):
    rng = random.Random(seed)
    g = MatchEngine()
    for _ in range(12 + seed):
        g.apply_move(*rng.choice(g.legal_moves()))
    snap = g.snapshot()
    before = copy.deepcopy(snap)
    move = select_move(snap, strength, rng=random.Random(seed))
    assert snap == before
    assert isinstance(move, Move)
    assert g.check_valid_move(*move)


def test_engine_argument_is_not_modified():
    g = MatchEngine()
    g.apply_move(0, 4)
    before = g.snapshot()
    select_move(g, Strength.STRONG)
    assert g.snapshot() == before


# =============================================================================
# Strong
# =============================================================================

def test_strong_blocks_sub_board_threat(build):
    g = build([E, E, E, "BB.A.....", E, E, E, E, E], player="A", active=3)
    assert select_move(g.snapshot(), Strength.STRONG) == Move(3, 2)


def test_strong_prefers_match_win_over_block(build):
    g = build([WON_A, WON_A, "AA.BB....", "BB.A.....", E, E, E, E, E], player="A")
    assert select_move(g.snapshot(), Strength.STRONG) == Move(2, 2)


def test_strong_stops_opponent_from_taking_the_match(build):
    # B owns boards 0 and 1; inside board 2 B threatens 2-4-6, only cell 6 kills it
    g = build([WON_B, WON_B, "..B.B....", E, E, E, E, E, E], player="A", active=2)
    assert select_move(g.snapshot(), Strength.STRONG) == Move(2, 6)


def test_strong_wins_center_board_before_others(build):
    g = build(["AA.......", E, E, E, "A.A......", E, E, E, E], player="A")
    assert select_move(g.snapshot(), Strength.STRONG) == Move(4, 1)


def test_strong_falls_back_to_minimax():
    g = MatchEngine()
    g.apply_move(0, 4)
    expected = _minimax_move(_SimState(g), g.legal_moves(), 4)
    assert expected is not None
    assert select_move(g.snapshot(), "strong") == expected
    assert select_move(g.snapshot(), "strong") == expected


# =============================================================================
# Weak / balanced cascades
# =============================================================================

def test_weak_win_roll(build):
    g = build(["AA.......", E, E, E, E, E, E, E, E], player="A", active=0)
    assert select_move(g.snapshot(), Strength.WEAK, rng=ScriptedRng(0.1)) == Move(0, 2)


def test_weak_block_roll_after_failed_win_roll(build):
    g = build(["BB.......", E, E, E, E, E, E, E, E], player="A", active=0)
    # win roll fires but finds nothing, block roll fires
    assert select_move(g.snapshot(), Strength.WEAK, rng=ScriptedRng(0.1, 0.1)) == Move(0, 2)


def test_weak_random_when_rolls_miss(build):
    g = build(["BB.......", E, E, E, E, E, E, E, E], player="A", active=0)
    assert select_move(g.snapshot(), Strength.WEAK, rng=ScriptedRng(0.9, 0.9)) == Move(0, 2)
    g = build(["..BB.....", E, E, E, E, E, E, E, E], player="A", active=0)
    assert select_move(g.snapshot(), Strength.WEAK, rng=ScriptedRng(0.9, 0.9)) == Move(0, 0)


def test_balanced_positional_roll():
    g = MatchEngine(Rules.FREE_PLAY)
    assert select_move(g.snapshot(), Strength.BALANCED, rng=ScriptedRng(0.9, 0.9, 0.1)) == Move(4, 4)


def test_balanced_rolls_are_independent(build):
    g = build([E, "A........", E, E, E, E, E, E, E], player="B", active=1)
    # win and block rolls fire but find nothing, positional misses, minimax fires
    rng = ScriptedRng(0.1, 0.1, 0.9, 0.1)
    expected = _minimax_move(_SimState(g), g.legal_moves(), 2)
    assert select_move(g.snapshot(), Strength.BALANCED, rng=rng) == expected
    assert rng.rolls == []


def test_balanced_random_when_every_roll_misses():
    g = MatchEngine()
    rng = ScriptedRng(0.99, 0.99, 0.99, 0.99)
    assert select_move(g.snapshot(), Strength.BALANCED, rng=rng) == Move(0, 0)


# =============================================================================
# Positional heuristic
# =============================================================================

def _moves(*pairs):
    return [Move(b, c) for b, c in pairs]


def test_positional_order():
    state = _SimState(MatchEngine())
    assert _positional(state, _moves((0, 4), (4, 1), (4, 8))) == Move(4, 8)
    assert _positional(state, _moves((1, 4), (2, 0), (6, 4))) == Move(6, 4)
    assert _positional(state, _moves((5, 1), (3, 2), (7, 4))) == Move(3, 2)
    assert _positional(state, _moves((7, 4), (5, 1))) == Move(5, 1)
    assert _positional(state, []) is None


# =============================================================================
# Evaluation and search
# =============================================================================

def test_evaluate_empty_board_is_neutral():
    state = _SimState(MatchEngine())
    assert _evaluate(state, Mark.A) == 0
    assert _evaluate(state, Mark.B) == 0


def test_evaluate_center_board_ownership(build):
    g = build([E, E, E, E, "...AAA...", E, E, E, E], player="B")
    state = _SimState(g)
    # 4 meta lines through the center at 1-of-3, the board itself, the center cell
    assert _evaluate(state, Mark.A) == 4 * 75 + 100 * 3.0 + 15
    assert _evaluate(state, Mark.B) == -(4 * 60) - 100 * 3.0 - 15


def test_evaluate_inside_undecided_board(build):
    g = build(["....A....", E, E, E, E, E, E, E, E], player="B")
    state = _SimState(g)
    assert _evaluate(state, Mark.A) == 4 * 3 * 2.0 + 5 * 2.0
    assert _evaluate(state, Mark.B) == -(4 * 2) * 2.0 - 5 * 2.0


def test_evaluate_drawn_board_counts_for_nobody(build):
    g = build(["ABABABBAB", E, E, E, E, E, E, E, E], player="A")
    assert g.meta.outcomes[0] is Outcome.DRAWN
    assert _evaluate(_SimState(g), Mark.A) == 0


def test_evaluate_won_match(build):
    g = build([WON_A, WON_A, WON_A, E, E, E, E, E, E], player="B")
    assert _evaluate(_SimState(g), Mark.A) == 10000
    assert _evaluate(_SimState(g), Mark.B) == -10000


def test_minimax_ties_go_to_first_move(build):
    # both (2,2) and (2,6) win the match outright
    g = build([WON_A, WON_A, "AA.A.....", E, E, E, E, E, E], player="A", active=2)
    state = _SimState(g)
    assert _minimax_move(state, g.legal_moves(), 2) == Move(2, 2)


def test_search_leaves_state_as_found():
    g = MatchEngine()
    g.apply_move(0, 4)
    state = _SimState(g)
    boards = [list(b) for b in state.boards]
    outcomes = list(state.outcomes)
    _minimax_move(state, g.legal_moves(), 4)
    assert state.boards == boards
    assert state.outcomes == outcomes
    assert state.player is Mark.B
    assert state.active == 4


def test_strong_blocks_by_winning_the_critical_board(build):
    # B needs board 2 for the top row; taking it ourselves shuts that line for good
    g = build([WON_B, WON_B, "AA.BB....", E, E, E, E, E, E], player="A", active=2)
    assert _match_block(_SimState(g), g.legal_moves()) == Move(2, 2)
    assert select_move(g.snapshot(), Strength.STRONG) == Move(2, 2)


@pytest.mark.parametrize("seed", range(3))
def test_move_ordering_never_changes_the_choice(monkeypatch, seed):
    rng = random.Random(seed)
    free = seed % 2 == 1
    g = MatchEngine(Rules.FREE_PLAY if free else Rules.STANDARD)
    for _ in range(10):
        g.apply_move(*rng.choice(g.legal_moves()))
    depth = 2 if free else 3
    ordered = _minimax_move(_SimState(g), g.legal_moves(), depth)
    monkeypatch.setattr(ai, "_ordered", lambda state, moves: moves)
    assert _minimax_move(_SimState(g), g.legal_moves(), depth) == ordered


def test_strong_search_on_open_board_is_bounded():
    g = MatchEngine(Rules.FREE_PLAY)
    started = time.perf_counter()
    move = select_move(g.snapshot(), Strength.STRONG)
    assert time.perf_counter() - started < 20
    assert g.check_valid_move(*move)
