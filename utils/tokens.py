"""
Token catalogue - the tokens users can predict on or battle with.
Keyed by Solana contract address, which is also what the price oracle takes.
"""
from typing import List, Dict

TOKENS: Dict[str, str] = {
    'So11111111111111111111111111111111111111112': 'Solana',
    '7vfCXTUXx5WJV5JADk17DUJ4ksgau7utNKj4b963voxs': 'Ethereum',
    '9BB6NFEcjBCtnNLFko2FqVQBq8HHM13kCyYcdQbgpump': 'Fartcoin',
    '3NZ9JMVBmGAqocybic2c7LQCJScmgsAZ6vQqTDzcqmJh': 'Bitcoin',
}


def token_name(token_id: str) -> str:
    """Display name for a token, falling back to a shortened address."""
    name = TOKENS.get(token_id)
    if name:
        return name
    if len(token_id) > 12:
        return f"{token_id[:4]}...{token_id[-4:]}"
    return token_id


def available_tokens(exclude: str = None) -> List[Dict[str, str]]:
    """Tokens as name/value pairs for choice menus."""
    return [
        {'name': name, 'value': address}
        for address, name in TOKENS.items()
        if address != exclude
    ]
