"""Tests for timeframe parsing and the token catalogue."""

import pytest

from utils.errors import InvalidTimeframe
from utils.timeframes import BATTLE_TIMEFRAMES, PREDICTION_TIMEFRAMES, timeframe_label, timeframe_seconds
from utils.tokens import TOKENS, available_tokens, token_name

from conftest import SOL


class TestTimeframes:
    @pytest.mark.parametrize("timeframe,seconds", [
        ("5m", 300),
        ("1h", 3600),
        ("4h", 14400),
        ("1d", 86400),
        ("90m", 5400),
    ])
    def test_seconds(self, timeframe, seconds):
        assert timeframe_seconds(timeframe) == seconds

    @pytest.mark.parametrize("timeframe", ["", "5", "h", "0m", "1w", "-5m", "1.5h", None])
    def test_invalid(self, timeframe):
        with pytest.raises(InvalidTimeframe):
            timeframe_seconds(timeframe)

    def test_every_offered_timeframe_parses(self):
        for timeframe in set(PREDICTION_TIMEFRAMES) | set(BATTLE_TIMEFRAMES):
            assert timeframe_seconds(timeframe) > 0

    def test_labels(self):
        assert timeframe_label("4h") == "4 hours"
        assert timeframe_label("3m") == "3m"


class TestTokens:
    def test_known_token_name(self):
        assert token_name(SOL) == "Solana"

    def test_unknown_address_shortened(self):
        assert token_name("ABCDEFGHIJKLMNOPQRSTUVWXYZ") == "ABCD...WXYZ"
        assert token_name("SHORT") == "SHORT"

    def test_available_tokens_excludes_creator_token(self):
        choices = available_tokens(exclude=SOL)
        assert len(choices) == len(TOKENS) - 1
        assert SOL not in [c['value'] for c in choices]
