"""
Errors raised by the settlement core.
User input errors are shown to the caller as-is; PriceUnavailable covers every
way the price feed can fail.
"""
from typing import Optional


class ArenaError(Exception):
    """Base class for all Token Arena errors."""


class UserInputError(ArenaError):
    """A request that can never succeed as submitted. Not retried."""


class InsufficientPoints(UserInputError):
    def __init__(self, required: int, available: Optional[int] = None):
        self.required = required
        self.available = available
        if available is None:
            message = f"You don't have enough points! Required: {required}"
        else:
            message = f"You don't have enough points! Required: {required}, you have: {available}"
        super().__init__(message)


class InsufficientWager(UserInputError):
    def __init__(self, amount: int, minimum: int):
        self.amount = amount
        self.minimum = minimum
        super().__init__(f"Minimum wager is {minimum} points (got {amount})")


class InsufficientStake(InsufficientWager):
    """Battle stake below the minimum."""

    def __init__(self, amount: int, minimum: int):
        self.amount = amount
        self.minimum = minimum
        UserInputError.__init__(self, f"Minimum stake is {minimum} points (got {amount})")


class WagerTooHigh(UserInputError):
    def __init__(self, amount: int, maximum: int, timeframe: str):
        self.amount = amount
        self.maximum = maximum
        self.timeframe = timeframe
        super().__init__(f"Maximum wager for {timeframe} is {maximum} points (got {amount})")


class InvalidTimeframe(UserInputError):
    def __init__(self, timeframe: str, allowed=None):
        self.timeframe = timeframe
        message = f"Invalid timeframe: {timeframe}"
        if allowed:
            message += f" (use one of: {', '.join(allowed)})"
        super().__init__(message)


class BattleNotFound(UserInputError):
    def __init__(self, battle_id: str):
        self.battle_id = battle_id
        super().__init__(f"Battle {battle_id} not found!")


class AlreadyJoined(UserInputError):
    def __init__(self, battle_id: str):
        self.battle_id = battle_id
        super().__init__("This battle already has a participant.")


class SelfJoin(UserInputError):
    def __init__(self, battle_id: str):
        self.battle_id = battle_id
        super().__init__("You cannot join your own battle.")


class SameToken(UserInputError):
    def __init__(self, battle_id: str, token_id: str):
        self.battle_id = battle_id
        self.token_id = token_id
        super().__init__("Pick a different token than the creator's.")


class PredictionNotFound(UserInputError):
    def __init__(self, prediction_id: str):
        self.prediction_id = prediction_id
        super().__init__(f"Prediction {prediction_id} not found!")


class SettlementNotDue(ArenaError):
    """A settlement job ran before its record's end time. Retried by the scheduler."""

    def __init__(self, record_id: str, remaining: float):
        self.record_id = record_id
        self.remaining = remaining
        super().__init__(f"{record_id} is not due for another {remaining:.3f}s")


class PriceUnavailable(ArenaError):
    """The price oracle could not produce a usable price."""

    def __init__(self, token_id: str, reason: str = "no price data"):
        self.token_id = token_id
        self.reason = reason
        super().__init__(f"Price unavailable for token {token_id}: {reason}")
