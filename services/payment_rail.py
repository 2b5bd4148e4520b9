"""
Payment Rail Adapter

Opaque transfer capability used to move held funds. Every call carries an
idempotency key derived from the hold id and the leg being paid, so the rail
deduplicates retries of the same logical transfer.
"""

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import aiohttp

from config import Config
from services.escrow_errors import PaymentRailError

logger = logging.getLogger(__name__)

# (role, party_id) -> destination account on the rail
AccountResolver = Callable[[str, str], str]


def derive_idempotency_key(hold_id: str, leg: str) -> str:
    """Deterministic key for one leg of one hold"""
    payload = json.dumps({"hold_id": hold_id, "leg": leg}, sort_keys=True)
    return f"hold-{hashlib.sha256(payload.encode()).hexdigest()[:32]}"


def default_account_resolver(role: str, party_id: str) -> str:
    return party_id


@dataclass(frozen=True)
class TransferResult:
    """Confirmation returned by the rail"""

    transfer_id: str
    amount: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


class PaymentRail(ABC):
    """Interface every payment rail implementation provides"""

    @abstractmethod
    async def transfer(
        self,
        amount: Decimal,
        destination_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        """Move funds; calling twice with the same key must not move them twice"""

    @abstractmethod
    async def lookup_transfer(self, idempotency_key: str) -> Optional[TransferResult]:
        """Outcome of a previous transfer, or None if the rail never executed it"""


async def call_rail(coro, timeout_seconds: Optional[float] = None, operation: str = "transfer"):
    """
    Await a rail call with a bounded timeout.

    Timeouts and transport failures are converted to PaymentRailError; a
    timed-out transfer is never assumed to have succeeded.
    """
    timeout = timeout_seconds if timeout_seconds is not None else Config.PAYMENT_RAIL_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise PaymentRailError(f"Payment rail {operation} timed out after {timeout}s") from e
    except PaymentRailError:
        raise
    except Exception as e:
        raise PaymentRailError(f"Payment rail {operation} failed: {e}") from e


class HttpPaymentRail(PaymentRail):
    """JSON-over-HTTP payment rail"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.base_url = (base_url or Config.PAYMENT_RAIL_URL).rstrip("/")
        self.api_key = api_key or Config.PAYMENT_RAIL_API_KEY
        self.timeout_seconds = timeout_seconds or Config.PAYMENT_RAIL_TIMEOUT_SECONDS

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    @staticmethod
    def _parse_result(data: Dict[str, Any]) -> TransferResult:
        transfer_id = data.get("transfer_id") or data.get("id")
        if not transfer_id:
            raise PaymentRailError(f"Payment rail response missing transfer id: {data}")
        amount = data.get("amount")
        return TransferResult(
            transfer_id=str(transfer_id),
            amount=Decimal(str(amount)) if amount is not None else None,
            raw=data,
        )

    async def transfer(
        self,
        amount: Decimal,
        destination_account: str,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> TransferResult:
        if not self.base_url:
            raise PaymentRailError("PAYMENT_RAIL_URL is not configured")

        payload = {
            "amount": str(amount),
            "destination": destination_account,
            "metadata": metadata or {},
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.base_url}/transfers",
                json=payload,
                headers=self._headers(idempotency_key),
                timeout=timeout,
            ) as response:
                data = await response.json(content_type=None)
                if response.status not in (200, 201):
                    logger.error(
                        f"❌ PAYMENT_RAIL: transfer {idempotency_key} rejected "
                        f"(HTTP {response.status}): {data}"
                    )
                    raise PaymentRailError(
                        f"Payment rail rejected transfer (HTTP {response.status})"
                    )
                result = self._parse_result(data or {})
                logger.info(
                    f"✅ PAYMENT_RAIL: transfer {result.transfer_id} of {amount} "
                    f"to {destination_account} (key={idempotency_key})"
                )
                return result

    async def lookup_transfer(self, idempotency_key: str) -> Optional[TransferResult]:
        if not self.base_url:
            raise PaymentRailError("PAYMENT_RAIL_URL is not configured")

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession() as session:
            async with session.get(
                f"{self.base_url}/transfers/by-key/{idempotency_key}",
                headers=self._headers(),
                timeout=timeout,
            ) as response:
                if response.status == 404:
                    return None
                data = await response.json(content_type=None)
                if response.status != 200:
                    raise PaymentRailError(
                        f"Payment rail lookup failed (HTTP {response.status})"
                    )
                if (data or {}).get("status", "succeeded") != "succeeded":
                    return None
                return self._parse_result(data)
