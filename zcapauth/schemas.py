"""
Request body models for the zcapauth HTTP API.
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Policies
# =============================================================================


class RefreshConstraints(BaseModel):
    """Constraints on refreshing a delegate's capabilities (milliseconds)."""

    model_config = ConfigDict(extra="forbid")

    maxTtlBeforeRefresh: Optional[int] = Field(default=None, ge=0)
    maxDelegationTtl: Optional[int] = Field(default=None, ge=0)


class RefreshSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    constraints: Optional[RefreshConstraints] = None


class PolicyModel(BaseModel):
    """A refresh policy as sent by clients."""

    model_config = ConfigDict(extra="forbid")

    sequence: int = Field(ge=0)
    controller: str = Field(min_length=1)
    delegate: str = Field(min_length=1)
    refresh: Union[Literal[False], RefreshSettings]

    def to_policy_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class CreatePolicyBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    policy: PolicyModel

    @field_validator("policy")
    @classmethod
    def new_policy_starts_at_zero(cls, policy: PolicyModel) -> PolicyModel:
        if policy.sequence != 0:
            raise ValueError("a new policy must have sequence 0")
        return policy


class UpdatePolicyBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    policy: PolicyModel


# =============================================================================
# Refreshable capabilities
# =============================================================================


class DelegationProof(BaseModel):
    """Delegation proof of a capability delegated directly from a root."""

    model_config = ConfigDict(extra="allow")

    type: str
    verificationMethod: str
    created: str
    proofPurpose: Literal["capabilityDelegation"]
    capabilityChain: List[str] = Field(min_length=1, max_length=1)
    proofValue: str


class RefreshableZcap(BaseModel):
    """
    A capability submitted for refresh.

    Only validates shape: the raw JSON is what gets verified and re-signed.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    context: Union[str, List[str]] = Field(alias="@context")
    id: str
    controller: str
    parentCapability: str
    invocationTarget: str
    allowedAction: Optional[Union[str, List[str]]] = None
    expires: str
    proof: DelegationProof
