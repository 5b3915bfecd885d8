"""
Tests for governance_ledger_client.py

The client's requests.Session is mounted on an adapter that forwards every
call into the FastAPI TestClient, so no server process is needed.

Run with:  pytest tests/test_ledger_client.py -v
"""

import os
from urllib.parse import urlsplit

import pytest
import requests
from requests.adapters import BaseAdapter
from requests.structures import CaseInsensitiveDict
from fastapi.testclient import TestClient

os.environ["LEDGER_RATE_LIMIT_ENABLED"] = "0"
os.environ.pop("LEDGER_STATE_FILE", None)
os.environ.pop("LEDGER_REGISTRAR_KEY", None)

import governance_ledger_service as service
from governance_ledger import (
    GovernanceLedger, ProposalSnapshot,
    DuplicateStakeholderError, NotAStakeholderError, DuplicateVoteError,
    AlreadyPassedError, UnknownProposalError,
)
from governance_ledger_client import LedgerClient, LedgerClientError

BASE = "http://ledger.test"


class TestClientAdapter(BaseAdapter):
    __test__ = False

    def __init__(self, test_client: TestClient):
        super().__init__()
        self.test_client = test_client

    def send(self, request, **kwargs):
        parts = urlsplit(request.url)
        path = parts.path + (f"?{parts.query}" if parts.query else "")
        headers = {k: v for k, v in request.headers.items() if k.lower() != "content-length"}
        resp = self.test_client.request(request.method, path, content=request.body, headers=headers)
        out = requests.Response()
        out.status_code = resp.status_code
        out._content = resp.content
        out.headers = CaseInsensitiveDict(resp.headers)
        out.url = request.url
        out.request = request
        return out

    def close(self):
        pass


class FailingAdapter(BaseAdapter):
    def send(self, request, **kwargs):
        raise requests.ConnectionError("connection refused")

    def close(self):
        pass


def _client(registrar_key=None) -> LedgerClient:
    session = requests.Session()
    session.mount(BASE, TestClientAdapter(TestClient(service.app)))
    return LedgerClient(BASE, registrar_key=registrar_key, session=session)


@pytest.fixture()
def remote():
    service.attach_ledger(service.app, GovernanceLedger())
    return _client()


@pytest.fixture()
def three_holders(remote):
    remote.register("0xA", 6000)
    remote.register("0xB", 2000)
    remote.register("0xC", 2000)
    return remote


# ==========================================
# Happy path
# ==========================================

class TestClientFlow:
    def test_registry_accessors(self, three_holders):
        assert three_holders.count() == 3
        assert three_holders.total_share() == 10_000
        assert three_holders.is_stakeholder("0xB")
        assert not three_holders.is_stakeholder("0xZ")

    def test_proposal_lifecycle(self, three_holders):
        pid = three_holders.create_proposal("0xA", "Solar panels")
        assert pid == 1
        assert not three_holders.cast_vote("0xA", pid).passed
        snap = three_holders.cast_vote("0xC", pid)
        assert snap == ProposalSnapshot("Solar panels", 2, 8000, True, False)
        assert three_holders.get_proposal(pid).passed
        assert three_holders.consensus_status(pid)["consensus_reached"] is True

    @pytest.mark.parametrize("identity", ["did:web/alice", "acct?x=1", "key#2"])
    def test_identity_with_url_characters(self, remote, identity):
        remote.register(identity, 5)
        assert remote.is_stakeholder(identity)
        assert not remote.is_stakeholder(identity + "/other")

    def test_unknown_proposal_reads_default(self, remote):
        assert remote.get_proposal(77) == ProposalSnapshot()

    def test_list_proposals_and_events(self, three_holders):
        pid = three_holders.create_proposal("0xB", "Bike shed")
        three_holders.cast_vote("0xB", pid)
        assert [p["id"] for p in three_holders.list_proposals()] == [pid]
        feed = three_holders.events()
        assert [e["event"] for e in feed["events"]] == ["ProposalCreated", "Voted"]
        assert three_holders.events(after=feed["next_cursor"])["events"] == []


# ==========================================
# Error mapping
# ==========================================

class TestClientErrors:
    def test_duplicate_stakeholder(self, three_holders):
        with pytest.raises(DuplicateStakeholderError) as excinfo:
            three_holders.register("0xA", 1)
        assert excinfo.value.identity == "0xA"

    def test_not_a_stakeholder(self, three_holders):
        with pytest.raises(NotAStakeholderError):
            three_holders.create_proposal("0xZ", "x")

    def test_duplicate_vote(self, three_holders):
        pid = three_holders.create_proposal("0xA", "x")
        three_holders.cast_vote("0xB", pid)
        with pytest.raises(DuplicateVoteError) as excinfo:
            three_holders.cast_vote("0xB", pid)
        assert excinfo.value.proposal_id == pid

    def test_already_passed(self, three_holders):
        pid = three_holders.create_proposal("0xA", "x")
        three_holders.cast_vote("0xA", pid)
        three_holders.cast_vote("0xB", pid)
        with pytest.raises(AlreadyPassedError):
            three_holders.cast_vote("0xC", pid)

    def test_unknown_proposal(self, three_holders):
        with pytest.raises(UnknownProposalError):
            three_holders.cast_vote("0xA", 404)

    def test_validation_error_is_client_error(self, remote):
        with pytest.raises(LedgerClientError) as excinfo:
            remote.register("0xA", -1)
        assert excinfo.value.status_code == 422

    def test_registrar_key_sent(self, remote, monkeypatch):
        monkeypatch.setattr(service, "REGISTRAR_KEY", "registrar_secret")
        with pytest.raises(LedgerClientError) as excinfo:
            remote.register("0xA", 1)
        assert excinfo.value.status_code == 401
        assert _client(registrar_key="registrar_secret").register("0xA", 1)["success"]

    def test_transport_failure(self):
        session = requests.Session()
        session.mount(BASE, FailingAdapter())
        client = LedgerClient(BASE, session=session)
        with pytest.raises(LedgerClientError, match="connection refused"):
            client.count()
