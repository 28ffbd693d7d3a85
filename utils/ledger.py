"""
Ledger - durable users, predictions and battles backed by SQLite.

Every balance change is a single atomic UPDATE (points = points + ?) and every
state transition is a compare-and-set UPDATE whose rowcount says whether this
caller won. Credits that belong to a transition are written in the same
transaction as the transition, so a record can never be settled without its
payout or paid twice.
"""
import aiosqlite
import logging
import time
from typing import Optional, List, Tuple

from utils.errors import InsufficientPoints
from utils.models import Prediction, Battle, BattleStatus, Direction, QuickReward, QuickRewardClaim

logger = logging.getLogger('TokenArena.Ledger')

DB_TIMEOUT = 10.0


class Ledger:
    """Point balances plus prediction and battle records."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self):
        return aiosqlite.connect(self.db_path, timeout=DB_TIMEOUT)

    async def init(self):
        """Create the ledger tables if they don't exist."""
        async with self._connect() as db:
            await db.execute('''
                CREATE TABLE IF NOT EXISTS users (
                    user_id TEXT PRIMARY KEY,
                    username TEXT,
                    points INTEGER NOT NULL DEFAULT 0,
                    last_daily_claim REAL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS predictions (
                    prediction_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    token_id TEXT NOT NULL,
                    token_name TEXT NOT NULL,
                    timeframe TEXT NOT NULL,
                    direction TEXT NOT NULL,
                    points_wagered INTEGER NOT NULL,
                    price_at_start REAL NOT NULL,
                    price_at_end REAL,
                    expires_at REAL NOT NULL,
                    is_resolved INTEGER NOT NULL DEFAULT 0,
                    is_won INTEGER,
                    channel_ref TEXT,
                    created_at REAL NOT NULL,
                    FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS battles (
                    battle_id TEXT PRIMARY KEY,
                    channel_ref TEXT NOT NULL,
                    creator_id TEXT NOT NULL,
                    creator_token TEXT NOT NULL,
                    timeframe TEXT NOT NULL,
                    points INTEGER NOT NULL,
                    start_time REAL NOT NULL,
                    end_time REAL NOT NULL,
                    joined INTEGER NOT NULL DEFAULT 0,
                    joiner_id TEXT,
                    joiner_token TEXT,
                    creator_token_price REAL,
                    joiner_token_price REAL,
                    joined_at REAL,
                    status TEXT NOT NULL DEFAULT 'open',
                    winner_id TEXT,
                    creator_end_price REAL,
                    joiner_end_price REAL
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS quick_rewards (
                    reward_id TEXT PRIMARY KEY,
                    channel_ref TEXT NOT NULL,
                    points INTEGER NOT NULL,
                    max_winners INTEGER NOT NULL,
                    created_by TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    expires_at REAL NOT NULL
                )
            ''')
            await db.execute('''
                CREATE TABLE IF NOT EXISTS quick_reward_claims (
                    reward_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    claimed_at REAL NOT NULL,
                    PRIMARY KEY (reward_id, user_id),
                    FOREIGN KEY (reward_id) REFERENCES quick_rewards(reward_id)
                )
            ''')
            await db.commit()
        logger.info("Ledger tables ready")

    # ==================== BALANCES ====================

    @staticmethod
    async def _credit(db, user_id: str, amount: int):
        await db.execute('''
            INSERT INTO users (user_id, points) VALUES (?, ?)
            ON CONFLICT(user_id) DO UPDATE SET points = points + excluded.points
        ''', (user_id, amount))

    @staticmethod
    async def _balance(db, user_id: str) -> int:
        cursor = await db.execute('SELECT points FROM users WHERE user_id = ?', (user_id,))
        row = await cursor.fetchone()
        return row[0] if row else 0

    @classmethod
    async def _debit(cls, db, user_id: str, amount: int):
        """Conditional debit inside the caller's transaction."""
        cursor = await db.execute('''
            UPDATE users SET points = points - ?
            WHERE user_id = ? AND points >= ?
        ''', (amount, user_id, amount))
        if cursor.rowcount == 0:
            available = await cls._balance(db, user_id)
            await db.rollback()
            raise InsufficientPoints(amount, available)

    async def ensure_user(self, user_id: str, username: Optional[str] = None) -> int:
        """Get or create a user, keeping the username current. Returns the balance."""
        async with self._connect() as db:
            await db.execute('''
                INSERT INTO users (user_id, username) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET username = COALESCE(excluded.username, users.username)
            ''', (user_id, username))
            await db.commit()
            return await self._balance(db, user_id)

    async def get_balance(self, user_id: str) -> int:
        async with self._connect() as db:
            return await self._balance(db, user_id)

    async def increment_balance(self, user_id: str, delta: int) -> int:
        """Atomically add delta (may be negative) and return the committed balance."""
        async with self._connect() as db:
            await self._credit(db, user_id, delta)
            balance = await self._balance(db, user_id)
            await db.commit()
        logger.info(f"Balance of {user_id} changed by {delta:+d} -> {balance}")
        return balance

    async def debit(self, user_id: str, amount: int) -> int:
        """Take amount from the user, failing with InsufficientPoints instead of going negative."""
        async with self._connect() as db:
            await self._debit(db, user_id, amount)
            balance = await self._balance(db, user_id)
            await db.commit()
        logger.info(f"Debited {amount} from {user_id} -> {balance}")
        return balance

    async def claim_daily(self, user_id: str, amount: int, cooldown: float,
                          now: Optional[float] = None) -> Tuple[bool, int, float]:
        """
        Credit the daily reward if the cooldown has elapsed.

        Returns (claimed, balance, next_claim_at).
        """
        now = time.time() if now is None else now
        async with self._connect() as db:
            await db.execute(
                'INSERT OR IGNORE INTO users (user_id) VALUES (?)', (user_id,)
            )
            cursor = await db.execute('''
                UPDATE users SET points = points + ?, last_daily_claim = ?
                WHERE user_id = ?
                AND (last_daily_claim IS NULL OR last_daily_claim <= ?)
            ''', (amount, now, user_id, now - cooldown))
            claimed = cursor.rowcount == 1
            cursor = await db.execute(
                'SELECT points, last_daily_claim FROM users WHERE user_id = ?', (user_id,)
            )
            points, last_claim = await cursor.fetchone()
            await db.commit()
        return claimed, points, (last_claim or now) + cooldown

    # ==================== PREDICTIONS ====================

    @staticmethod
    def _row_to_prediction(row) -> Prediction:
        return Prediction(
            id=row['prediction_id'],
            user_id=row['user_id'],
            token_id=row['token_id'],
            token_name=row['token_name'],
            timeframe=row['timeframe'],
            direction=Direction(row['direction']),
            points_wagered=row['points_wagered'],
            price_at_start=row['price_at_start'],
            price_at_end=row['price_at_end'],
            expires_at=row['expires_at'],
            is_resolved=bool(row['is_resolved']),
            is_won=None if row['is_won'] is None else bool(row['is_won']),
            channel_ref=row['channel_ref'],
            created_at=row['created_at'],
        )

    async def place_prediction(self, prediction: Prediction):
        """Debit the wager and store the prediction in one transaction."""
        async with self._connect() as db:
            await self._debit(db, prediction.user_id, prediction.points_wagered)
            await db.execute('''
                INSERT INTO predictions (prediction_id, user_id, token_id, token_name, timeframe,
                                         direction, points_wagered, price_at_start, expires_at,
                                         channel_ref, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (prediction.id, prediction.user_id, prediction.token_id, prediction.token_name,
                  prediction.timeframe, prediction.direction.value, prediction.points_wagered,
                  prediction.price_at_start, prediction.expires_at, prediction.channel_ref,
                  prediction.created_at))
            await db.commit()

    async def get_prediction(self, prediction_id: str) -> Optional[Prediction]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                'SELECT * FROM predictions WHERE prediction_id = ?', (prediction_id,)
            )
            row = await cursor.fetchone()
        return self._row_to_prediction(row) if row else None

    async def list_predictions(self, user_id: str, limit: int = 10) -> List[Prediction]:
        """A user's predictions, newest first."""
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('''
                SELECT * FROM predictions WHERE user_id = ?
                ORDER BY created_at DESC LIMIT ?
            ''', (user_id, limit))
            rows = await cursor.fetchall()
        return [self._row_to_prediction(row) for row in rows]

    async def resolve_prediction(self, prediction_id: str, price_at_end: float,
                                 is_won: bool, payout: int) -> bool:
        """
        Mark a pending prediction resolved and credit the payout.
        Returns False, touching nothing, when it was already resolved.
        """
        async with self._connect() as db:
            cursor = await db.execute('''
                UPDATE predictions SET is_resolved = 1, price_at_end = ?, is_won = ?
                WHERE prediction_id = ? AND is_resolved = 0
            ''', (price_at_end, int(is_won), prediction_id))
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            if payout:
                cursor = await db.execute(
                    'SELECT user_id FROM predictions WHERE prediction_id = ?', (prediction_id,)
                )
                (user_id,) = await cursor.fetchone()
                await self._credit(db, user_id, payout)
            await db.commit()
        return True

    async def void_prediction(self, prediction_id: str) -> bool:
        """Remove a pending prediction that never got scheduled, refunding its wager."""
        async with self._connect() as db:
            cursor = await db.execute('''
                SELECT user_id, points_wagered FROM predictions
                WHERE prediction_id = ? AND is_resolved = 0
            ''', (prediction_id,))
            row = await cursor.fetchone()
            if not row:
                return False
            cursor = await db.execute(
                'DELETE FROM predictions WHERE prediction_id = ? AND is_resolved = 0', (prediction_id,)
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await self._credit(db, row[0], row[1])
            await db.commit()
        logger.warning(f"Voided prediction {prediction_id}, refunded {row[1]} to {row[0]}")
        return True

    # ==================== BATTLES ====================

    @staticmethod
    def _row_to_battle(row) -> Battle:
        return Battle(
            id=row['battle_id'],
            channel_ref=row['channel_ref'],
            creator_id=row['creator_id'],
            creator_token=row['creator_token'],
            timeframe=row['timeframe'],
            points=row['points'],
            start_time=row['start_time'],
            end_time=row['end_time'],
            joined=bool(row['joined']),
            joiner_id=row['joiner_id'],
            joiner_token=row['joiner_token'],
            creator_token_price=row['creator_token_price'],
            joiner_token_price=row['joiner_token_price'],
            joined_at=row['joined_at'],
            status=BattleStatus(row['status']),
            winner_id=row['winner_id'],
            creator_end_price=row['creator_end_price'],
            joiner_end_price=row['joiner_end_price'],
        )

    async def place_battle(self, battle: Battle):
        """Debit the creator's stake and store the unjoined battle in one transaction."""
        async with self._connect() as db:
            await self._debit(db, battle.creator_id, battle.points)
            await db.execute('''
                INSERT INTO battles (battle_id, channel_ref, creator_id, creator_token,
                                     timeframe, points, start_time, end_time, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (battle.id, battle.channel_ref, battle.creator_id, battle.creator_token,
                  battle.timeframe, battle.points, battle.start_time, battle.end_time,
                  BattleStatus.OPEN.value))
            await db.commit()

    async def get_battle(self, battle_id: str) -> Optional[Battle]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('SELECT * FROM battles WHERE battle_id = ?', (battle_id,))
            row = await cursor.fetchone()
        return self._row_to_battle(row) if row else None

    async def mark_battle_joined(self, battle_id: str, joiner_id: str, joiner_token: str,
                                 creator_token_price: float, joiner_token_price: float,
                                 joined_at: float) -> bool:
        """Compare-and-set joined 0 -> 1 with the price snapshot. Only one caller can win."""
        async with self._connect() as db:
            cursor = await db.execute('''
                UPDATE battles
                SET joined = 1, joiner_id = ?, joiner_token = ?,
                    creator_token_price = ?, joiner_token_price = ?,
                    joined_at = ?, status = ?
                WHERE battle_id = ? AND joined = 0 AND status = ?
            ''', (joiner_id, joiner_token, creator_token_price, joiner_token_price, joined_at,
                  BattleStatus.JOINED.value, battle_id, BattleStatus.OPEN.value))
            won = cursor.rowcount == 1
            await db.commit()
        return won

    async def settle_battle(self, battle_id: str, status: BattleStatus, winner_id: Optional[str],
                            payout: int, creator_end_price: float, joiner_end_price: float) -> bool:
        """Move a joined battle to resolved/draw and pay the winner in one transaction."""
        async with self._connect() as db:
            cursor = await db.execute('''
                UPDATE battles
                SET status = ?, winner_id = ?, creator_end_price = ?, joiner_end_price = ?
                WHERE battle_id = ? AND status = ?
            ''', (status.value, winner_id, creator_end_price, joiner_end_price,
                  battle_id, BattleStatus.JOINED.value))
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            if winner_id and payout:
                await self._credit(db, winner_id, payout)
            await db.commit()
        return True

    async def refund_battle(self, battle_id: str) -> bool:
        """Move a joined battle to refunded and return both stakes."""
        async with self._connect() as db:
            cursor = await db.execute(
                'SELECT creator_id, joiner_id, points FROM battles WHERE battle_id = ?', (battle_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return False
            creator_id, joiner_id, points = row
            cursor = await db.execute('''
                UPDATE battles SET status = ? WHERE battle_id = ? AND status = ?
            ''', (BattleStatus.REFUNDED.value, battle_id, BattleStatus.JOINED.value))
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await self._credit(db, creator_id, points)
            await self._credit(db, joiner_id, points)
            await db.commit()
        logger.warning(f"Refunded battle {battle_id}: {points} to {creator_id} and {joiner_id}")
        return True

    async def void_battle(self, battle_id: str) -> bool:
        """Delete an unjoined battle and refund the creator. False if it was joined or gone."""
        async with self._connect() as db:
            cursor = await db.execute(
                'SELECT creator_id, points FROM battles WHERE battle_id = ? AND joined = 0', (battle_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return False
            cursor = await db.execute(
                'DELETE FROM battles WHERE battle_id = ? AND joined = 0', (battle_id,)
            )
            if cursor.rowcount == 0:
                await db.rollback()
                return False
            await self._credit(db, row[0], row[1])
            await db.commit()
        logger.info(f"Removed unjoined battle {battle_id}, refunded {row[1]} to {row[0]}")
        return True

    # ==================== QUICK REWARDS ====================

    async def create_quick_reward(self, reward: QuickReward):
        async with self._connect() as db:
            await db.execute('''
                INSERT INTO quick_rewards (reward_id, channel_ref, points, max_winners,
                                           created_by, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (reward.id, reward.channel_ref, reward.points, reward.max_winners,
                  reward.created_by, reward.created_at, reward.expires_at))
            await db.commit()
        logger.info(f"Quick reward {reward.id}: {reward.points} points for {reward.max_winners} winner(s)")

    async def get_quick_reward(self, reward_id: str) -> Optional[QuickReward]:
        async with self._connect() as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute('SELECT * FROM quick_rewards WHERE reward_id = ?', (reward_id,))
            row = await cursor.fetchone()
        if not row:
            return None
        return QuickReward(
            id=row['reward_id'],
            channel_ref=row['channel_ref'],
            points=row['points'],
            max_winners=row['max_winners'],
            created_by=row['created_by'],
            created_at=row['created_at'],
            expires_at=row['expires_at'],
        )

    @staticmethod
    async def _quick_reward_winners(db, reward_id: str) -> int:
        cursor = await db.execute(
            'SELECT COUNT(*) FROM quick_reward_claims WHERE reward_id = ?', (reward_id,)
        )
        return (await cursor.fetchone())[0]

    async def count_quick_reward_winners(self, reward_id: str) -> int:
        async with self._connect() as db:
            return await self._quick_reward_winners(db, reward_id)

    async def claim_quick_reward(self, reward_id: str, user_id: str,
                                 now: Optional[float] = None) -> Tuple[QuickRewardClaim, int]:
        """
        Claim a spot on a quick reward and credit its points.

        The claim row is only inserted while the reward is open and has spots
        left, in a single statement, so concurrent clicks can never produce
        more than max_winners winners. Returns (outcome, spots remaining).
        """
        now = time.time() if now is None else now
        async with self._connect() as db:
            cursor = await db.execute('''
                INSERT OR IGNORE INTO quick_reward_claims (reward_id, user_id, claimed_at)
                SELECT r.reward_id, ?, ? FROM quick_rewards r
                WHERE r.reward_id = ? AND r.expires_at > ?
                AND (SELECT COUNT(*) FROM quick_reward_claims c
                     WHERE c.reward_id = r.reward_id) < r.max_winners
            ''', (user_id, now, reward_id, now))
            claimed = cursor.rowcount == 1

            cursor = await db.execute(
                'SELECT points, max_winners, expires_at FROM quick_rewards WHERE reward_id = ?',
                (reward_id,)
            )
            row = await cursor.fetchone()
            if not row:
                await db.rollback()
                return QuickRewardClaim.NOT_FOUND, 0
            points, max_winners, expires_at = row

            if claimed:
                await self._credit(db, user_id, points)
            remaining = max(max_winners - await self._quick_reward_winners(db, reward_id), 0)

            if claimed:
                outcome = QuickRewardClaim.CLAIMED
            else:
                cursor = await db.execute(
                    'SELECT 1 FROM quick_reward_claims WHERE reward_id = ? AND user_id = ?',
                    (reward_id, user_id)
                )
                if await cursor.fetchone():
                    outcome = QuickRewardClaim.ALREADY_CLAIMED
                elif expires_at <= now:
                    outcome = QuickRewardClaim.EXPIRED
                else:
                    outcome = QuickRewardClaim.FULL
            await db.commit()

        if claimed:
            logger.info(f"{user_id} claimed quick reward {reward_id} ({remaining} spot(s) left)")
        return outcome, remaining
