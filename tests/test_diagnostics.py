"""Tests for roomwatch.access.diagnostics — evidence gathering and classification."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from roomwatch.access.diagnostics import classify_credential_issue, diagnose_credential
from roomwatch.errors import AccessDeniedError, AuthError
from roomwatch.schemas.diagnostics import CredentialEvidence, CredentialIssue
from roomwatch.schemas.messages import Membership, Person, Room

NOW = datetime(2024, 6, 5, 12, 0, tzinfo=UTC)


# --- Classification rules ---


@pytest.mark.parametrize(
    ("evidence", "expected"),
    [
        (
            CredentialEvidence(
                authenticated=True,
                can_list_rooms=True,
                rooms_checked_for_membership=3,
                member_of_rooms=2,
                read_error_status=403,
            ),
            CredentialIssue.POLICY_RESTRICTED,
        ),
        (
            CredentialEvidence(authenticated=True, can_list_rooms=True, rooms_checked_for_membership=3),
            CredentialIssue.NOT_A_MEMBER,
        ),
        (CredentialEvidence(authenticated=False), CredentialIssue.INVALID_CREDENTIAL),
        (CredentialEvidence(authenticated=True, can_list_rooms=False), CredentialIssue.INVALID_CREDENTIAL),
        (
            CredentialEvidence(authenticated=True, can_list_rooms=True, read_error_status=403),
            CredentialIssue.MISSING_SCOPE,
        ),
        (
            CredentialEvidence(authenticated=True, can_list_rooms=True, read_error_status=500),
            CredentialIssue.UNKNOWN,
        ),
    ],
)
def test_classification_rules(evidence, expected):
    assert classify_credential_issue(evidence) == expected


def test_readable_credential_has_no_issue():
    evidence = CredentialEvidence(authenticated=True, can_list_rooms=True, can_read_messages=True)
    assert classify_credential_issue(evidence) is None


def test_classification_is_deterministic():
    evidence = CredentialEvidence(authenticated=True, can_list_rooms=True, member_of_rooms=1)
    assert classify_credential_issue(evidence) == classify_credential_issue(evidence)


# --- Evidence gathering ---


def _make_client(*, read_error=None, member: bool = True) -> MagicMock:
    client = MagicMock()
    client.get_me = AsyncMock(return_value=Person(id="me", display_name="Bot", emails=["bot@example.com"]))
    client.list_rooms = AsyncMock(
        return_value=[Room(id=f"r{i}", title=f"Room {i}", last_activity=NOW) for i in range(5)]
    )
    person = "me" if member else "someone"
    client.list_memberships = AsyncMock(
        side_effect=lambda room_id: [Membership(id=f"m-{room_id}", room_id=room_id, person_id=person)]
    )
    if read_error is not None:
        client.list_messages = AsyncMock(side_effect=read_error)
    else:
        client.list_messages = AsyncMock(return_value=[])
    return client


async def test_diagnose_readable_credential():
    client = _make_client()
    diagnosis = await diagnose_credential(client)

    assert diagnosis.issue is None
    assert diagnosis.permissions.can_read_messages
    assert diagnosis.evidence.member_of_rooms == 3
    assert "spark:messages_read" in diagnosis.inferred_scopes
    assert client.list_messages.await_count == 1


async def test_diagnose_policy_restricted_member():
    client = _make_client(read_error=AccessDeniedError("forbidden", status_code=403))
    diagnosis = await diagnose_credential(client)

    assert diagnosis.issue == CredentialIssue.POLICY_RESTRICTED
    assert diagnosis.evidence.read_attempts == 3
    assert diagnosis.evidence.read_error_status == 403


async def test_diagnose_not_a_member():
    client = _make_client(read_error=AccessDeniedError("forbidden", status_code=403), member=False)
    diagnosis = await diagnose_credential(client)
    assert diagnosis.issue == CredentialIssue.NOT_A_MEMBER


async def test_diagnose_invalid_credential():
    client = _make_client()
    client.get_me = AsyncMock(side_effect=AuthError("bad token", status_code=401))
    client.list_rooms = AsyncMock(side_effect=AuthError("bad token", status_code=401))
    diagnosis = await diagnose_credential(client)

    assert diagnosis.issue == CredentialIssue.INVALID_CREDENTIAL
    assert diagnosis.user is None
    client.list_messages.assert_not_awaited()
