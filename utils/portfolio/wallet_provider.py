"""
Self-custodied wallet provider.

Reads native balances straight from an Ethereum-compatible JSON-RPC node.
Wallets have no credential, no authorization to revoke and no orders; the
external account id is the wallet address, always stored lowercased.
"""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from decouple import config

from .abstract_provider import (
    AbstractAccountProvider, ProviderCredential, ProviderError, ProviderKind,
    UpstreamAccount, UpstreamAuthorization,
)

logger = logging.getLogger(__name__)

WALLET_RPC_URL = config('WALLET_RPC_URL', default='https://cloudflare-eth.com')
WALLET_RPC_TIMEOUT_SECONDS = config('WALLET_RPC_TIMEOUT_SECONDS', default=10.0, cast=float)
WALLET_NETWORK_NAME = config('WALLET_NETWORK_NAME', default='Ethereum')
WALLET_NATIVE_SYMBOL = config('WALLET_NATIVE_SYMBOL', default='ETH')

WEI_PER_ETHER = Decimal(10) ** 18
WALLET_ADDRESS_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')


def normalize_wallet_address(address: Optional[str]) -> str:
    """
    Validate a wallet address and return its canonical lowercase form.

    Raises:
        ProviderError: 400 INVALID_ADDRESS when it is not a 0x-prefixed 20-byte hex string
    """
    candidate = (address or '').strip()
    if not WALLET_ADDRESS_PATTERN.match(candidate):
        raise ProviderError(
            f"Invalid wallet address: {address!r}",
            "wallet",
            "INVALID_ADDRESS",
            status_code=400,
        )
    return candidate.lower()


class WalletProvider(AbstractAccountProvider):
    """JSON-RPC backed wallet adapter."""

    kind = ProviderKind.WALLET
    requires_credential = False

    def __init__(self, rpc_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.provider_name = "wallet"
        self.rpc_url = rpc_url or WALLET_RPC_URL
        self._transport = transport
        self._request_id = 0

    def get_provider_name(self) -> str:
        return self.provider_name

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        async with httpx.AsyncClient(timeout=WALLET_RPC_TIMEOUT_SECONDS, transport=self._transport) as client:
            response = await client.post(self.rpc_url, json=payload)

        if response.status_code >= 400:
            raise ProviderError(
                f"{method} failed with HTTP {response.status_code}",
                self.provider_name,
                status_code=response.status_code,
                retry_after=_retry_after(response),
            )

        body = response.json()
        if body.get('error'):
            error = body['error']
            raise ProviderError(
                f"{method} failed: {error.get('message')}",
                self.provider_name,
                str(error.get('code')),
                status_code=400 if error.get('code') == -32602 else 502,
            )
        return body.get('result')

    async def _native_balance(self, address: str) -> Decimal:
        result = await self._rpc("eth_getBalance", [address.lower(), "latest"])
        return Decimal(int(result, 16)) / WEI_PER_ETHER

    async def get_account_details(self, credential: Optional[ProviderCredential], account_id: str) -> Dict[str, Any]:
        balance = await self._native_balance(account_id)
        return {
            'id': account_id,
            'name': f"{WALLET_NETWORK_NAME} wallet {account_id[:6]}…{account_id[-4:]}",
            'number': account_id[-4:],
            'institution_name': WALLET_NETWORK_NAME,
            'account_type': 'wallet',
            'currency': WALLET_NATIVE_SYMBOL,
            'total_value': float(balance),
            'authorization_id': None,
        }

    async def get_account_balances(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        balance = await self._native_balance(account_id)
        return [{'id': WALLET_NATIVE_SYMBOL, 'currency': WALLET_NATIVE_SYMBOL, 'current': float(balance)}]

    async def get_account_positions(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        balance = await self._native_balance(account_id)
        if balance <= 0:
            return []
        return [{
            'id': WALLET_NATIVE_SYMBOL,
            'symbol': WALLET_NATIVE_SYMBOL,
            'description': f"{WALLET_NETWORK_NAME} native token",
            'security_type': 'crypto',
            'units': float(balance),
            'price': None,
            'market_value': None,
            'currency': WALLET_NATIVE_SYMBOL,
        }]

    async def get_account_orders(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        return []

    async def get_account_activities(self, credential: Optional[ProviderCredential], account_id: str) -> List[Dict[str, Any]]:
        # Plain JSON-RPC has no per-address history; an indexer would be needed
        return []

    async def list_accounts(self, credential: Optional[ProviderCredential]) -> List[UpstreamAccount]:
        return []

    async def list_authorizations(self, credential: Optional[ProviderCredential]) -> List[UpstreamAuthorization]:
        return []

    async def remove_authorization(self, credential: Optional[ProviderCredential], authorization_id: str,
                                   idempotency_key: Optional[str] = None) -> None:
        logger.info(f"Nothing to revoke upstream for wallet {authorization_id}")

    async def delete_user(self, credential: ProviderCredential, idempotency_key: Optional[str] = None) -> None:
        logger.info("Wallets have no upstream user to delete")

    async def register_user(self, user_id: str) -> ProviderCredential:
        raise ProviderError(
            "Wallets are linked by address and need no registration",
            self.provider_name,
            "UNSUPPORTED_OPERATION",
            status_code=400,
        )


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get('Retry-After')
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
