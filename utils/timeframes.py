"""
Timeframe parsing and per-timeframe policy tables.
"""
import re
from typing import Dict

from utils.errors import InvalidTimeframe

TIMEFRAME_PATTERN = re.compile(r'^(\d+)([mhd])$')
UNIT_SECONDS = {'m': 60, 'h': 60 * 60, 'd': 24 * 60 * 60}

# Single-party predictions
PREDICTION_TIMEFRAMES = ('5m', '1h', '1d')
MAX_WAGER_BY_TIMEFRAME: Dict[str, int] = {
    '5m': 100,
    '1h': 500,
    '1d': 1000,
}

# Battles
BATTLE_TIMEFRAMES = ('5m', '1h', '4h', '1d')

TIMEFRAME_LABELS = {
    '5m': '5 minutes',
    '1h': '1 hour',
    '4h': '4 hours',
    '1d': '1 day',
}


def timeframe_seconds(timeframe: str) -> int:
    """Convert a duration such as '5m', '4h' or '1d' into seconds."""
    match = TIMEFRAME_PATTERN.match(timeframe.strip().lower()) if timeframe else None
    if not match:
        raise InvalidTimeframe(timeframe)
    amount = int(match.group(1))
    if amount <= 0:
        raise InvalidTimeframe(timeframe)
    return amount * UNIT_SECONDS[match.group(2)]


def timeframe_label(timeframe: str) -> str:
    return TIMEFRAME_LABELS.get(timeframe, timeframe)
