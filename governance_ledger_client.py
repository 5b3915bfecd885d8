"""
Governance Ledger Client
========================
Thin `requests` client for governance_ledger_service.

Rejections come back as the same exceptions the in-process ledger raises
(NotAStakeholderError, DuplicateVoteError, ...), so callers can swap a local
GovernanceLedger for a remote one without changing their error handling.
"""

import os
from urllib.parse import quote
from typing import Any, Dict, List, Optional

import requests

from governance_ledger import ERRORS, ProposalSnapshot

BASE_URL = os.getenv("LEDGER_BASE_URL", "http://localhost:8000")
REQUEST_TIMEOUT = float(os.getenv("LEDGER_REQUEST_TIMEOUT", "10"))


class LedgerClientError(RuntimeError):
    """Transport failures and error responses that don't map onto the ledger taxonomy."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LedgerClient:
    def __init__(self, base_url: str = BASE_URL, registrar_key: Optional[str] = None,
                 timeout: float = REQUEST_TIMEOUT, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.registrar_key = registrar_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _req(self, method: str, path: str, auth: bool = False, **kwargs) -> Dict[str, Any]:
        headers = kwargs.pop("headers", {})
        headers.setdefault("Content-Type", "application/json")
        if auth and self.registrar_key:
            headers["Authorization"] = f"Bearer {self.registrar_key}"

        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise LedgerClientError(f"{method} {url} failed: {e}") from e

        if not resp.ok:
            self._raise_for(resp, method, url)
        return resp.json()

    @staticmethod
    def _raise_for(resp: requests.Response, method: str, url: str) -> None:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        error_cls = ERRORS.get(body.get("error", "")) if isinstance(body, dict) else None
        if error_cls is not None:
            raise error_cls(**body.get("context", {}))
        raise LedgerClientError(
            f"HTTP {resp.status_code} {method} {url}: {resp.text[:500]}",
            status_code=resp.status_code,
        )

    # --- registry ---
    def register(self, identity: str, share: int) -> Dict[str, Any]:
        return self._req("POST", "/stakeholders", auth=True,
                         json={"identity": identity, "share": share})

    def is_stakeholder(self, identity: str) -> bool:
        try:
            self._req("GET", f"/stakeholders/{quote(identity, safe='')}")
        except LedgerClientError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    def stakeholders(self) -> Dict[str, Any]:
        return self._req("GET", "/stakeholders")

    def count(self) -> int:
        return self.stakeholders()["count"]

    def total_share(self) -> int:
        return self.stakeholders()["total_shares"]

    # --- proposals ---
    def create_proposal(self, proposer: str, description: str) -> int:
        body = self._req("POST", "/proposals",
                         json={"proposer": proposer, "description": description})
        return body["proposal_id"]

    def get_proposal(self, proposal_id: int) -> ProposalSnapshot:
        body = self._req("GET", f"/proposals/{proposal_id}")
        return ProposalSnapshot(**body["proposal"])

    def list_proposals(self) -> List[Dict[str, Any]]:
        return self._req("GET", "/proposals")["proposals"]

    def consensus_status(self, proposal_id: int) -> Dict[str, Any]:
        return self._req("GET", f"/proposals/{proposal_id}/consensus")

    # --- voting ---
    def cast_vote(self, voter: str, proposal_id: int) -> ProposalSnapshot:
        body = self._req("POST", f"/proposals/{proposal_id}/votes", json={"voter": voter})
        return ProposalSnapshot(**body["proposal"])

    # --- notifications ---
    def events(self, after: int = 0, limit: int = 50) -> Dict[str, Any]:
        return self._req("GET", "/events", params={"after": after, "limit": limit})
