"""Schemas for credential diagnostics."""

from enum import StrEnum

from pydantic import BaseModel, Field

from roomwatch.schemas.messages import Person


class CredentialIssue(StrEnum):
    """Most likely reason a credential cannot read messages."""

    POLICY_RESTRICTED = "policy_restricted"
    NOT_A_MEMBER = "not_a_member"
    MISSING_SCOPE = "missing_scope"
    INVALID_CREDENTIAL = "invalid_credential"
    UNKNOWN = "unknown"


class CredentialEvidence(BaseModel):
    """Raw probe evidence the classification is derived from."""

    authenticated: bool = False
    can_list_rooms: bool = False
    rooms_listed: int = 0
    rooms_checked_for_membership: int = 0
    member_of_rooms: int = 0
    can_read_messages: bool = False
    read_attempts: int = 0
    read_error_status: int | None = None


class CredentialPermissions(BaseModel):
    """Capabilities inferred from the probes."""

    can_list_rooms: bool = False
    can_read_messages: bool = False
    can_read_memberships: bool = False


class CredentialDiagnosis(BaseModel):
    """Result of diagnose_credential()."""

    user: Person | None = None
    evidence: CredentialEvidence
    permissions: CredentialPermissions
    issue: CredentialIssue | None = None  # None when messages are readable
    inferred_scopes: list[str] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
