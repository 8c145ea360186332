"""HTTP, chain and model collaborators used by the response generator.

Every call maps its failures to ``None`` (or ``success=False`` for lookups)
and logs a warning; nothing here raises into the message pipeline.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import quote

import aiohttp
from openai import AsyncOpenAI
from web3 import Web3

from .onboarding import IDENTITY_SUFFIX

log = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = 15
BASE_CHAIN_ID = 8453
BASE_USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_DECIMALS = 6
METADATA_VALUE_LIMIT = 450
MAX_PAYMENT_AMOUNT = Decimal("4000")

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    }
]


def parse_amount(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(raw.replace(",", ""))
    except (InvalidOperation, AttributeError):
        return None
    if not value.is_finite() or value <= 0:
        return None
    return value


def _number(value: Any, cast: Callable[[Any], Any]) -> Any:
    """Coerce a backend stat, zero when missing or malformed."""
    if value in (None, ""):
        return cast(0)
    try:
        return cast(value)
    except (TypeError, ValueError):
        log.warning("Ignoring malformed numeric field %r", value)
        return cast(0)


def clean_metadata(metadata: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Drop ``None`` values; stringify and cap the rest."""
    cleaned: Dict[str, str] = {}
    for key, value in (metadata or {}).items():
        if value is None:
            continue
        if isinstance(value, (dict, list)):
            text = json.dumps(value, ensure_ascii=False, default=str)
        else:
            text = str(value)
        if len(text) > METADATA_VALUE_LIMIT:
            log.warning("Truncating payment metadata %s (%d chars)", key, len(text))
            text = text[:METADATA_VALUE_LIMIT]
        cleaned[str(key)] = text
    return cleaned


@dataclass(frozen=True)
class LookupResult:
    success: bool
    address: Optional[str] = None
    proof: Optional[Any] = None
    is_registered: bool = False
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.success and self.is_registered and bool(self.address)


@dataclass(frozen=True)
class PaymentLink:
    url: str
    id: Optional[str] = None


@dataclass(frozen=True)
class Balances:
    eth: Decimal
    usdc: Decimal


@dataclass
class ContentLink:
    title: str
    price: str
    earnings: float = 0.0
    views: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)


class DStealthApi:
    """Client for the dStealth web backend (identity lookup, scans, content links)."""

    def __init__(self, base_url: str, *, token: Optional[str] = None, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            async with aiohttp.ClientSession(timeout=self.timeout, headers=self._headers()) as session:
                async with session.request(method, url, **kwargs) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        log.warning("%s %s failed: %s %s", method, path, resp.status, body[:200])
                        return None
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.warning("%s %s failed: %s", method, path, exc)
            return None
        return data if isinstance(data, dict) else {"data": data}

    async def lookup_fkey(self, claim: str) -> LookupResult:
        username = claim.strip().lower()
        if username.endswith(IDENTITY_SUFFIX):
            username = username[: -len(IDENTITY_SUFFIX)]
        data = await self._request("GET", f"/api/fkey/lookup/{quote(username, safe='')}")
        if data is None:
            return LookupResult(success=False, error="Fkey lookup failed")
        address = data.get("address") or None
        registered = data.get("isRegistered")
        return LookupResult(
            success=bool(data.get("success", True)),
            address=address,
            proof=data.get("proof"),
            is_registered=bool(address) if registered is None else bool(registered),
            error=data.get("error"),
        )

    async def scan(self, address: str) -> Optional[Dict[str, Any]]:
        data = await self._request("GET", f"/api/stealth/scan/{quote(address, safe='')}")
        if data is None or data.get("success") is False:
            return None
        return data

    async def list_links(self, owner: Optional[str]) -> Optional[List[ContentLink]]:
        params = {"owner": owner} if owner else None
        data = await self._request("GET", "/api/proxy402/links", params=params)
        if data is None or data.get("success") is False:
            return None
        links = []
        for item in data.get("links") or []:
            if not isinstance(item, dict):
                continue
            links.append(
                ContentLink(
                    title=str(item.get("title") or "untitled"),
                    price=str(item.get("price") or "0"),
                    earnings=_number(item.get("earnings"), float),
                    views=_number(item.get("views"), int),
                    extra=item,
                )
            )
        return links

    async def create_content(
        self,
        *,
        title: str,
        description: str,
        price: Decimal,
        currency: str,
        owner: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        payload = {
            "title": title,
            "description": description,
            "price": str(price),
            "currency": currency,
        }
        if owner:
            payload["owner"] = owner
        data = await self._request("POST", "/api/x402/generate", json=payload)
        if data is None or data.get("success") is False:
            return None
        return data


class DaimoPayClient:
    """Creates USDC-on-Base payment links through the Daimo Pay API."""

    def __init__(self, api_key: Optional[str], *, api_url: str = "https://pay.daimo.com", timeout: float = HTTP_TIMEOUT_SECONDS):
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    def build_request(self, amount: str, recipient: str, metadata: Optional[Mapping[str, Any]] = None, *, intent: str = "ZK Stealth Payment") -> Dict[str, Any]:
        value = parse_amount(amount)
        if value is None:
            raise ValueError(f"invalid payment amount {amount!r}")
        return {
            "display": {
                "intent": intent,
                "paymentValue": amount,
                "currency": "USD",
            },
            "destination": {
                "destinationAddress": recipient,
                "chainId": BASE_CHAIN_ID,
                "amountUnits": f"{value:.2f}",
                "tokenSymbol": "USDC",
                "tokenAddress": BASE_USDC,
            },
            "metadata": clean_metadata(metadata),
        }

    async def create_link(self, amount: str, recipient: str, metadata: Optional[Mapping[str, Any]] = None) -> Optional[PaymentLink]:
        if not self.api_key:
            log.warning("Daimo API key not configured; cannot create payment link")
            return None
        try:
            body = self.build_request(amount, recipient, metadata)
        except ValueError as exc:
            log.warning("Rejected payment link request: %s", exc)
            return None
        headers = {"Api-Key": self.api_key, "Content-Type": "application/json"}
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.api_url}/api/payment", json=body, headers=headers) as resp:
                    if resp.status >= 400:
                        text = await resp.text()
                        log.warning("Daimo payment link failed: %s %s", resp.status, text[:200])
                        return None
                    data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            log.warning("Daimo payment link failed: %s", exc)
            return None
        url = data.get("url") if isinstance(data, dict) else None
        if not url:
            log.warning("Daimo response carried no url: %s", data)
            return None
        link_id = data.get("id")
        return PaymentLink(url=str(url), id=str(link_id) if link_id is not None else None)


class ChainBalances:
    """ETH and USDC balances on Base, read through web3 in a worker thread."""

    def __init__(self, rpc_url: Optional[str], *, token_address: str = BASE_USDC):
        self.client: Optional[Web3] = None
        self.token_address = token_address
        if rpc_url:
            try:
                self.client = Web3(Web3.HTTPProvider(rpc_url))
            except Exception as exc:
                log.warning("Failed to initialise Web3 provider: %s", exc)
                self.client = None

    @property
    def available(self) -> bool:
        return self.client is not None

    async def get_balances(self, address: str) -> Optional[Balances]:
        client = self.client
        if not client:
            return None

        def _read() -> Balances:
            owner = client.to_checksum_address(address)
            wei = client.eth.get_balance(owner)
            token = client.eth.contract(
                address=client.to_checksum_address(self.token_address), abi=ERC20_BALANCE_ABI
            )
            units = token.functions.balanceOf(owner).call()
            return Balances(
                eth=Decimal(client.from_wei(wei, "ether")),
                usdc=Decimal(units) / (Decimal(10) ** USDC_DECIMALS),
            )

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, _read)
        except Exception as exc:
            log.warning("Failed to fetch balances for %s: %s", address, exc)
            return None


class CompletionClient:
    def __init__(self, api_key: Optional[str], *, model: str = "gpt-4.1-mini", max_tokens: int = 200):
        self.client = AsyncOpenAI(api_key=api_key) if api_key else None
        self.model = model
        self.max_tokens = max_tokens

    @property
    def available(self) -> bool:
        return self.client is not None

    async def complete(self, system_prompt: str, user_text: str) -> Optional[str]:
        if not self.client:
            return None
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_text},
                ],
                max_tokens=self.max_tokens,
                temperature=0.7,
            )
        except Exception as exc:
            log.warning("completion failed: %s", exc)
            return None
        if not response.choices:
            return None
        text = response.choices[0].message.content or ""
        return text.strip() or None
