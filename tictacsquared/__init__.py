from .logic import (
    InvalidSnapshot, InvalidState, LastMove, MatchEngine, MatchState, Mark, Move, Outcome,
    PASS_MOVE, Rules, create_match,
)
from .ai import Strength, select_move

__all__ = [
    "InvalidSnapshot", "InvalidState", "LastMove", "MatchEngine", "MatchState", "Mark", "Move",
    "Outcome", "PASS_MOVE", "Rules", "create_match", "Strength", "select_move",
]
