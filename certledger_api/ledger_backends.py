"""
Ledger client backends for the CertLedger service.

``HttpLedgerClient`` talks JSON to a ledger gateway that fronts the smart
contract:

    POST /estimate              {"payload": {...}}                  -> {"cost": int}
    POST /anchors               {"payload": {...}, "cost_limit": n} -> {"tx_id", "block_number", "cost_used"}
    GET  /anchors/{fixed_id}                                        -> receipt, or 404
    GET  /transactions/{tx_id}                                      -> {"status": ...}

A request that gets no answer in time raises LedgerTimeout, which the
anchoring protocol treats as "status unknown".
"""

import logging
from typing import Any, Dict, Optional

import requests

from certledger.ledger import (
    CostEstimationError,
    LedgerClient,
    LedgerError,
    LedgerPayload,
    LedgerReceipt,
    LedgerSubmissionError,
    LedgerTimeout,
    SimulatedLedgerClient,
)

from . import config

logger = logging.getLogger(__name__)

TX_STATUSES = ("CONFIRMED", "PENDING", "NOT_FOUND")


def _receipt(data: Dict[str, Any]) -> LedgerReceipt:
    try:
        return LedgerReceipt(
            tx_id=str(data["tx_id"]),
            block_number=int(data["block_number"]),
            cost_used=int(data["cost_used"]) if data.get("cost_used") is not None else None,
        )
    except (KeyError, TypeError, ValueError) as e:
        raise LedgerError(f"malformed ledger receipt: {e}") from e


class HttpLedgerClient(LedgerClient):
    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.Timeout as e:
            raise LedgerTimeout(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise LedgerError(f"{method} {path} failed: {e}") from e

    def estimate_cost(self, payload: LedgerPayload) -> int:
        try:
            r = self._request("POST", "/estimate", json={"payload": payload.to_dict()})
            r.raise_for_status()
            return int(r.json()["cost"])
        except LedgerTimeout as e:
            raise CostEstimationError(str(e)) from e
        except (requests.HTTPError, KeyError, TypeError, ValueError) as e:
            raise CostEstimationError(f"cost estimation failed: {e}") from e

    def submit(self, payload: LedgerPayload, cost_limit: int) -> LedgerReceipt:
        r = self._request("POST", "/anchors", json={"payload": payload.to_dict(), "cost_limit": cost_limit})
        if r.status_code >= 400:
            raise LedgerSubmissionError(f"ledger rejected {payload.fixed_width_id}: HTTP {r.status_code} {r.text[:200]}")
        try:
            return _receipt(r.json())
        except ValueError as e:
            raise LedgerError(f"malformed ledger response: {e}") from e

    def find_anchor(self, fixed_width_id: str) -> Optional[LedgerReceipt]:
        r = self._request("GET", f"/anchors/{fixed_width_id}")
        if r.status_code == 404:
            return None
        if r.status_code >= 400:
            raise LedgerError(f"anchor lookup failed: HTTP {r.status_code}")
        try:
            return _receipt(r.json())
        except ValueError as e:
            raise LedgerError(f"malformed ledger response: {e}") from e

    def transaction_status(self, tx_id: str) -> str:
        r = self._request("GET", f"/transactions/{tx_id}")
        if r.status_code == 404:
            return "NOT_FOUND"
        if r.status_code >= 400:
            raise LedgerError(f"transaction lookup failed: HTTP {r.status_code}")
        try:
            status = str(r.json().get("status", "")).upper()
        except ValueError as e:
            raise LedgerError(f"malformed ledger response: {e}") from e
        if status not in TX_STATUSES:
            raise LedgerError(f"unknown transaction status {status!r}")
        return status


def get_ledger_client() -> LedgerClient:
    if config.LEDGER_BACKEND == "http":
        if not config.LEDGER_URL:
            raise ValueError("LEDGER_URL required for http ledger backend")
        logger.info("using ledger gateway at %s", config.LEDGER_URL)
        return HttpLedgerClient(config.LEDGER_URL, timeout=config.LEDGER_TIMEOUT_SECONDS)
    logger.warning("using simulated ledger; anchors are not persisted")
    return SimulatedLedgerClient()
