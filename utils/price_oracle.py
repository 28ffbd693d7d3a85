"""
CoinGecko price oracle
Fetches the current USD price of a Solana token by contract address.
"""
import aiohttp
import logging
import os
from typing import Optional

from utils.errors import PriceUnavailable

logger = logging.getLogger('TokenArena.PriceOracle')

COINGECKO_API_BASE = os.environ.get('COINGECKO_API_BASE', 'https://api.coingecko.com/api/v3')
REQUEST_TIMEOUT_SECONDS = 10


class CoinGeckoPriceOracle:
    """Price oracle backed by CoinGecko's simple/token_price endpoint."""

    def __init__(self, api_key: Optional[str] = None, network: str = 'solana',
                 base_url: str = COINGECKO_API_BASE):
        self.api_key = api_key
        self.network = network
        self.base_url = base_url.rstrip('/')
        self.session = None

    async def _ensure_session(self):
        """Ensure aiohttp session exists."""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()

    async def close(self):
        """Close the aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()

    def _headers(self) -> dict:
        headers = {'accept': 'application/json'}
        if self.api_key:
            headers['x-cg-demo-api-key'] = self.api_key
        return headers

    async def get_price(self, token_id: str) -> float:
        """Current USD price for token_id. Raises PriceUnavailable on any failure."""
        await self._ensure_session()

        url = f"{self.base_url}/simple/token_price/{self.network}"
        params = {'contract_addresses': token_id, 'vs_currencies': 'usd'}

        try:
            async with self.session.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS),
            ) as response:
                if response.status != 200:
                    logger.error(f"Price request for {token_id} failed: HTTP {response.status}")
                    raise PriceUnavailable(token_id, f"HTTP {response.status}")
                data = await response.json()
        except PriceUnavailable:
            raise
        except Exception as e:
            logger.error(f"Error fetching price for {token_id}: {e}")
            raise PriceUnavailable(token_id, str(e) or type(e).__name__) from e

        return self._parse_price(token_id, data)

    @staticmethod
    def _parse_price(token_id: str, data) -> float:
        # CoinGecko lowercases some addresses in the response
        token_data = None
        if isinstance(data, dict):
            token_data = data.get(token_id) or data.get(token_id.lower())
        if not isinstance(token_data, dict):
            raise PriceUnavailable(token_id, "token missing from response")

        price = token_data.get('usd')
        if not isinstance(price, (int, float)) or isinstance(price, bool) or price <= 0:
            raise PriceUnavailable(token_id, f"invalid price {price!r}")
        return float(price)
