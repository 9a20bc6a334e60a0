# ledger/services/oracle_service.py
from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from infra.http_client import HttpError, JsonRpcError
from ledger.config import OracleSettings
from ledger.enums import ContractStatus
from ledger.errors import OracleUnavailable
from ledger.models import ContractDetails

WEI = Decimal(10) ** 18


def _eth(x: Any) -> Decimal:
    """Wei (int / decimal string / hex string) to ETH."""
    if x is None or x == "":
        return Decimal("0")
    try:
        if isinstance(x, str) and x.startswith("0x"):
            return Decimal(int(x, 16)) / WEI
        return Decimal(str(x)) / WEI
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _int_or_none(x: Any) -> Optional[int]:
    if x is None or x == "":
        return None
    try:
        v = int(x, 16) if isinstance(x, str) and x.startswith("0x") else int(x)
    except (TypeError, ValueError):
        return None
    return v or None


def _section(result: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    sec = result.get(name)
    return sec if isinstance(sec, Mapping) else result


def parse_contract_details(contract_id: int, result: Any) -> ContractDetails:
    """
    Normalize a getContractDetails result. Accepts the grouped shape
    ({basic, time, delivery, status}) as well as a flat object.
    """
    if not isinstance(result, Mapping):
        raise OracleUnavailable("malformed oracle response", contract_id=contract_id, reason="not an object")

    basic = _section(result, "basic")
    time_ = _section(result, "time")
    status_sec = result.get("status")
    if isinstance(status_sec, Mapping):
        raw_code = status_sec.get("status")
        state = status_sec
    else:
        raw_code = status_sec
        state = result
    if raw_code is None:
        raise OracleUnavailable("malformed oracle response", contract_id=contract_id, reason="missing status")

    return ContractDetails(
        contract_id=int(contract_id),
        status=ContractStatus.from_code(raw_code),
        farmer_wallet=basic.get("farmerWallet"),
        buyer_wallet=basic.get("buyerWallet"),
        amount=_eth(basic.get("amount")),
        advance_amount=_eth(basic.get("advanceAmount")),
        remaining_amount=_eth(basic.get("remainingAmount")),
        escrow_balance=_eth(state.get("escrowBalance")),
        start_date=_int_or_none(time_.get("startDate")),
        end_date=_int_or_none(time_.get("endDate")),
        confirmation_deadline=_int_or_none(time_.get("confirmationDeadline")),
        farmer_confirmed_delivery=bool(state.get("farmerConfirmedDelivery", False)),
        buyer_confirmed_receipt=bool(state.get("buyerConfirmedReceipt", False)),
        is_buyer_initiated=bool(state.get("isBuyerInitiated", False)),
        raw=dict(result),
    )


class OracleService:
    """
    Read-only client of the authoritative ledger.

    One call, no retries: any transport or RPC failure surfaces as
    OracleUnavailable and the caller decides when to try again. Unknown
    status codes surface as UnknownStatusCode.
    """

    def __init__(self, http_client, settings: OracleSettings, logger: Optional[logging.Logger] = None) -> None:
        self._http = http_client
        self._settings = settings
        self.log = logger or getattr(http_client, "log", logging.getLogger("OracleService"))
        self.calls = 0
        self.failures = 0

    def _params(self, contract_id: int) -> list:
        if self._settings.contract_address:
            return [self._settings.contract_address, int(contract_id)]
        return [int(contract_id)]

    async def get_details(self, contract_id: int) -> ContractDetails:
        self.calls += 1
        try:
            result = await self._http.call(
                self._settings.method,
                self._params(contract_id),
                timeout_ms=self._settings.timeout_ms,
                retry=False,
            )
        except (HttpError, JsonRpcError) as e:
            self.failures += 1
            raise OracleUnavailable(str(e), contract_id=contract_id) from e
        return parse_contract_details(contract_id, result)

    async def get_status(self, contract_id: int) -> ContractStatus:
        return (await self.get_details(contract_id)).status
