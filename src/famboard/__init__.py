"""FamBoard: household chores, points and rewards with realtime sync."""

from .admin import AuditLog
from .boards import ChoreBoard, CollectionBoard, FamilyMembers, GroceryList, NoteBoard, RedemptionBoard, RewardCatalog
from .cache import CollectionCache, Mutation, MutationKind
from .client import AsyncStoreClient, TableRemote
from .coordinator import MutationCoordinator
from .exceptions import (
    ChannelDroppedError,
    FamBoardError,
    ForbiddenError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    TransientIOError,
    ValidationError,
)
from .games import GameScores
from .ledger import Ledger
from .models import (
    Caller,
    ChangeEvent,
    ChangeType,
    DashboardSummary,
    ProfileStats,
    RedemptionStatus,
    RedemptionView,
    Role,
)
from .ops import HealthMonitor, StructuredLogger
from .realtime import RealtimeHub, Subscription
from .reconciler import RealtimeReconciler
from .security import AuthManager
from .service import FamBoard
from .store import TableStore

__all__ = [
    "AsyncStoreClient",
    "AuditLog",
    "AuthManager",
    "Caller",
    "ChangeEvent",
    "ChangeType",
    "ChannelDroppedError",
    "ChoreBoard",
    "CollectionBoard",
    "CollectionCache",
    "DashboardSummary",
    "FamBoard",
    "FamBoardError",
    "FamilyMembers",
    "ForbiddenError",
    "GameScores",
    "GroceryList",
    "HealthMonitor",
    "InsufficientBalanceError",
    "InvalidStateError",
    "Ledger",
    "Mutation",
    "MutationCoordinator",
    "MutationKind",
    "NoteBoard",
    "NotFoundError",
    "ProfileStats",
    "RealtimeHub",
    "RealtimeReconciler",
    "RedemptionBoard",
    "RedemptionStatus",
    "RedemptionView",
    "RewardCatalog",
    "Role",
    "StructuredLogger",
    "Subscription",
    "TableRemote",
    "TableStore",
    "TransientIOError",
    "ValidationError",
]
