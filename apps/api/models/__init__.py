"""Models package."""

from .user import User
from .credit_transaction import CreditTransaction
from .game_version import GameVersion
from .studio_session import StudioSession
from .ledger_reconciliation import LedgerReconciliation
from .game import Game
from .leaderboard_entry import LeaderboardEntry
from .saved_game import PlayHistory, SavedGame
