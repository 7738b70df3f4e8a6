"""Credential diagnosis: why can (or can't) this credential read messages?

``diagnose_credential`` gathers evidence with a handful of read-only probes;
``classify_credential_issue`` turns that evidence into a single
CredentialIssue by ordered rules, first match wins.
"""

import logging

from roomwatch.errors import ChatServiceError
from roomwatch.integrations.chat_api import ChatApiClient
from roomwatch.schemas.diagnostics import (
    CredentialDiagnosis,
    CredentialEvidence,
    CredentialIssue,
    CredentialPermissions,
)
from roomwatch.schemas.messages import Person

logger = logging.getLogger(__name__)

# Rooms sampled for the membership and read probes.
PROBE_ROOMS = 3


def classify_credential_issue(evidence: CredentialEvidence) -> CredentialIssue | None:
    """Map probe evidence to the most likely blocking issue.

    Returns None when messages are readable. Deterministic for a given
    evidence record.
    """
    if evidence.can_read_messages:
        return None
    if evidence.can_list_rooms and evidence.member_of_rooms > 0:
        return CredentialIssue.POLICY_RESTRICTED
    if (
        evidence.can_list_rooms
        and evidence.rooms_checked_for_membership > 0
        and evidence.member_of_rooms == 0
    ):
        return CredentialIssue.NOT_A_MEMBER
    if not evidence.authenticated or not evidence.can_list_rooms:
        return CredentialIssue.INVALID_CREDENTIAL
    if evidence.read_error_status == 403:
        return CredentialIssue.MISSING_SCOPE
    return CredentialIssue.UNKNOWN


def _is_member(person: Person | None, memberships) -> bool:
    if person is None:
        return False
    email = (person.primary_email or "").lower()
    return any(
        m.person_id == person.id or (email and m.person_email.lower() == email)
        for m in memberships
    )


async def diagnose_credential(client: ChatApiClient) -> CredentialDiagnosis:
    """Probe identity, room listing, membership and message reads."""
    evidence = CredentialEvidence()
    permissions = CredentialPermissions()
    scopes: list[str] = []
    notes: list[str] = []

    user: Person | None = None
    try:
        user = await client.get_me()
        evidence.authenticated = True
        scopes.append("spark:people_read")
        notes.append(f"Credential authenticates as {user.display_name or user.id}")
    except ChatServiceError as exc:
        notes.append(f"Credential fails authentication: {exc}")

    rooms = []
    try:
        rooms = await client.list_rooms()
        evidence.can_list_rooms = True
        evidence.rooms_listed = len(rooms)
        permissions.can_list_rooms = True
        scopes.append("spark:rooms_read")
        notes.append(f"Can list {len(rooms)} room(s)")
    except ChatServiceError as exc:
        notes.append(f"Cannot list rooms: {exc}")

    sample = rooms[:PROBE_ROOMS]
    for room in sample:
        try:
            memberships = await client.list_memberships(room.id)
        except ChatServiceError as exc:
            notes.append(f"Cannot check membership for {room.display_title}: {exc}")
            continue
        evidence.rooms_checked_for_membership += 1
        if _is_member(user, memberships):
            evidence.member_of_rooms += 1
        else:
            notes.append(f"Not a member of {room.display_title}")
    if evidence.rooms_checked_for_membership:
        permissions.can_read_memberships = True
        scopes.append("spark:memberships_read")

    for room in sample:
        evidence.read_attempts += 1
        try:
            await client.list_messages(room.id, max_messages=1)
        except ChatServiceError as exc:
            evidence.read_error_status = exc.status_code
            notes.append(f"Cannot read messages in {room.display_title}: {exc}")
            continue
        evidence.can_read_messages = True
        permissions.can_read_messages = True
        scopes.append("spark:messages_read")
        break

    issue = classify_credential_issue(evidence)
    if issue is not None:
        logger.info("Credential diagnosis: %s", issue.value)
    return CredentialDiagnosis(
        user=user,
        evidence=evidence,
        permissions=permissions,
        issue=issue,
        inferred_scopes=scopes,
        notes=notes,
    )
