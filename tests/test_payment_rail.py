"""
Payment rail adapter tests

Idempotency key derivation, timeout handling and the HTTP adapter against an
in-process aiohttp server.
"""

import asyncio
import re
import pytest
from decimal import Decimal

import pytest_asyncio
from aiohttp import test_utils, web

from services.escrow_errors import PaymentRailError
from services.payment_rail import (
    HttpPaymentRail,
    call_rail,
    default_account_resolver,
    derive_idempotency_key,
)


def base_url(server) -> str:
    return f"http://{server.host}:{server.port}"


class TestIdempotencyKey:
    """Test key derivation"""

    def test_deterministic(self):
        """Test the same hold and leg always give the same key"""
        assert derive_idempotency_key("hold_1", "payout") == derive_idempotency_key("hold_1", "payout")

    def test_distinct_per_leg_and_hold(self):
        """Test payout and refund legs, and different holds, never share a key"""
        keys = {
            derive_idempotency_key("hold_1", "payout"),
            derive_idempotency_key("hold_1", "refund"),
            derive_idempotency_key("hold_2", "payout"),
        }
        assert len(keys) == 3

    def test_format(self):
        """Test keys are short, prefixed hex strings"""
        assert re.fullmatch(r"hold-[0-9a-f]{32}", derive_idempotency_key("hold_1", "payout"))

    def test_default_resolver_is_identity(self):
        """Test party ids are used as rail accounts by default"""
        assert default_account_resolver("contractor", "contractor-1") == "contractor-1"


class TestCallRail:
    """Test the bounded-timeout wrapper"""

    @pytest.mark.asyncio
    async def test_passes_result_through(self):
        """Test a prompt call returns its value"""
        async def ok():
            return "done"

        assert await call_rail(ok(), timeout_seconds=1) == "done"

    @pytest.mark.asyncio
    async def test_timeout_becomes_rail_error(self):
        """Test a slow call raises PaymentRailError"""
        with pytest.raises(PaymentRailError) as exc_info:
            await call_rail(asyncio.sleep(1), timeout_seconds=0.01)
        assert exc_info.value.is_retryable is True

    @pytest.mark.asyncio
    async def test_other_exceptions_wrapped(self):
        """Test transport errors are converted"""
        async def broken():
            raise OSError("connection refused")

        with pytest.raises(PaymentRailError) as exc_info:
            await call_rail(broken(), timeout_seconds=1, operation="lookup")
        assert "lookup" in str(exc_info.value)


class TestHttpPaymentRail:
    """Test the HTTP adapter"""

    @pytest.fixture
    def rail_state(self):
        return {"transfers": {}, "headers": []}

    @pytest_asyncio.fixture
    async def rail_server(self, rail_state):
        async def create_transfer(request):
            rail_state["headers"].append(dict(request.headers))
            key = request.headers["Idempotency-Key"]
            body = await request.json()
            if body["destination"] == "frozen-account":
                return web.json_response({"error": "account frozen"}, status=422)
            record = rail_state["transfers"].setdefault(
                key, {"id": f"tr_{len(rail_state['transfers']) + 1}", "amount": body["amount"]}
            )
            return web.json_response(record, status=201)

        async def lookup_transfer(request):
            record = rail_state["transfers"].get(request.match_info["key"])
            if record is None:
                return web.json_response({"error": "not found"}, status=404)
            return web.json_response({**record, "status": "succeeded"})

        app = web.Application()
        app.router.add_post("/transfers", create_transfer)
        app.router.add_get("/transfers/by-key/{key}", lookup_transfer)
        server = test_utils.TestServer(app)
        await server.start_server()
        yield server
        await server.close()

    @pytest.mark.asyncio
    async def test_transfer_and_lookup(self, rail_server, rail_state):
        """Test a transfer is keyed, deduplicated and found by lookup"""
        rail = HttpPaymentRail(base_url(rail_server), api_key="secret", timeout_seconds=5)

        first = await rail.transfer(Decimal("499.00"), "contractor-1", "hold-abc")
        again = await rail.transfer(Decimal("499.00"), "contractor-1", "hold-abc")
        found = await rail.lookup_transfer("hold-abc")

        assert first.transfer_id == again.transfer_id == found.transfer_id
        assert first.amount == Decimal("499.00")
        assert len(rail_state["transfers"]) == 1
        assert rail_state["headers"][0]["Authorization"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_lookup_unknown_key(self, rail_server):
        """Test a 404 lookup means the transfer never executed"""
        rail = HttpPaymentRail(base_url(rail_server), api_key="secret")

        assert await rail.lookup_transfer("hold-never") is None

    @pytest.mark.asyncio
    async def test_rejected_transfer_raises(self, rail_server):
        """Test a non-2xx response raises PaymentRailError"""
        rail = HttpPaymentRail(base_url(rail_server), api_key="secret")

        with pytest.raises(PaymentRailError):
            await rail.transfer(Decimal("10.00"), "frozen-account", "hold-frozen")

    @pytest.mark.asyncio
    async def test_unconfigured_rail_raises(self):
        """Test a rail without a URL refuses to transfer"""
        rail = HttpPaymentRail(base_url="", api_key="secret")
        rail.base_url = ""

        with pytest.raises(PaymentRailError):
            await rail.transfer(Decimal("10.00"), "contractor-1", "hold-x")
        with pytest.raises(PaymentRailError):
            await rail.lookup_transfer("hold-x")
