import pytest

from conftest import STORE_URL
from errors import VerificationError
from session_utils import create_session_token
from verification_client import VerificationClient


def _client(store_session, user_id=1):
    return VerificationClient(STORE_URL, create_session_token(user_id), session=store_session)


def test_store_errors_carry_code_and_status(store_session, election_id):
    with pytest.raises(VerificationError) as info:
        _client(store_session).verify_vote("NOSUCHTRANSACTION", election_id, 1)

    assert info.value.code == "TransactionNotFound"
    assert info.value.status == 404
    assert info.value.retryable


def test_unreachable_store_is_retryable(store_session, election_id):
    store_session.fail_next = 1

    with pytest.raises(VerificationError) as info:
        _client(store_session).vote_status(election_id)

    assert info.value.code == "StoreUnavailable"
    assert info.value.retryable


def test_active_elections_and_vote_status(store_session, client, election_id):
    client.post("/admin/elections/sync", headers={"X-Admin-Token": "admin-secret"})
    verifier = _client(store_session)

    elections = verifier.active_elections()

    assert [e.id for e in elections] == [election_id]
    assert elections[0].has_candidate(2)
    assert verifier.has_voted(election_id) is False


def test_refresh_loads_store_state_into_the_orchestrator(make_orchestrator, client, election_id):
    client.post("/admin/elections/sync", headers={"X-Admin-Token": "admin-secret"})
    orchestrator = make_orchestrator()
    orchestrator.begin_vote(election_id, 1)

    restarted = make_orchestrator()
    elections = restarted.refresh()

    assert [e.id for e in elections] == [election_id]
    assert restarted.session.has_voted(election_id)
