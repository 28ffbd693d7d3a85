"""
Records shared by the ledger, the settlement engines and the notifier.
All timestamps are epoch seconds.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Direction(str, Enum):
    UP = 'UP'
    DOWN = 'DOWN'


class BattleStatus(str, Enum):
    OPEN = 'open'           # created, waiting for a joiner
    JOINED = 'joined'       # snapshot taken, waiting for end_time
    RESOLVED = 'resolved'   # winner paid
    DRAW = 'draw'           # exact tie, nobody paid
    REFUNDED = 'refunded'   # settlement failed, both stakes returned


TERMINAL_BATTLE_STATUSES = (BattleStatus.RESOLVED, BattleStatus.DRAW, BattleStatus.REFUNDED)


@dataclass
class Prediction:
    id: str
    user_id: str
    token_id: str
    token_name: str
    timeframe: str
    direction: Direction
    points_wagered: int
    price_at_start: float
    expires_at: float
    created_at: float
    price_at_end: Optional[float] = None
    is_resolved: bool = False
    is_won: Optional[bool] = None
    channel_ref: Optional[str] = None


@dataclass
class Battle:
    id: str
    channel_ref: str
    creator_id: str
    creator_token: str
    timeframe: str
    points: int
    start_time: float
    end_time: float
    joined: bool = False
    joiner_id: Optional[str] = None
    joiner_token: Optional[str] = None
    creator_token_price: Optional[float] = None
    joiner_token_price: Optional[float] = None
    joined_at: Optional[float] = None
    status: BattleStatus = BattleStatus.OPEN
    winner_id: Optional[str] = None
    creator_end_price: Optional[float] = None
    joiner_end_price: Optional[float] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BATTLE_STATUSES


@dataclass
class BattleOutcome:
    battle_id: str
    channel_ref: str
    status: BattleStatus
    creator_id: str
    joiner_id: str
    points: int
    winner_id: Optional[str] = None
    loser_id: Optional[str] = None
    payout: int = 0
    creator_performance: Optional[float] = None
    joiner_performance: Optional[float] = None
    error: Optional[str] = None


class QuickRewardClaim(str, Enum):
    CLAIMED = 'claimed'
    ALREADY_CLAIMED = 'already_claimed'
    FULL = 'full'
    EXPIRED = 'expired'
    NOT_FOUND = 'not_found'


@dataclass
class QuickReward:
    """First-come giveaway: the first max_winners members to click get points each."""
    id: str
    channel_ref: str
    points: int
    max_winners: int
    created_by: str
    created_at: float
    expires_at: float
