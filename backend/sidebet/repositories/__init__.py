"""Repository abstractions for database interactions."""

from .bet_repository import BetRepository
from .dispute_repository import DisputeRepository
from .ledger_repository import LedgerRepository
from .notification_repository import NotificationRepository
from .squares_repository import GRID_SIZE, SquaresRepository
from .user_repository import UserRepository

__all__ = [
    "BetRepository",
    "DisputeRepository",
    "LedgerRepository",
    "NotificationRepository",
    "SquaresRepository",
    "UserRepository",
    "GRID_SIZE",
]
