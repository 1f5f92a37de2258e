"""
Capability delegation chains.

ChainVerifier walks a capability's ``capabilityChain`` from the root to the
capability itself and checks every delegation link: signature, authority of
the delegator over the parent, attenuation of target and actions, and expiry.
``delegate_capability`` is the signing side of the same proofs.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Union

from zcapauth.capability import (
    CAPABILITY_DELEGATION,
    DELEGATED_ZCAP_CONTEXT,
    Capability,
    compute_capability_chain,
    format_timestamp,
    get_capability_chain,
    get_chain_ids,
    get_controllers,
    get_invocation_target,
    is_action_subset,
    is_root_capability,
    is_target_within,
    new_capability_id,
    now_ms,
    parse_timestamp,
)
from zcapauth.documents import DocumentResolver
from zcapauth.errors import DataError, NotAllowedError, ValidationError, ZcapError
from zcapauth.keys import SignerInterface
from zcapauth.suites import SignatureSuite

logger = logging.getLogger(__name__)


@dataclass
class ChainDetails:
    """
    A verified capability chain.

    Attributes:
        capability: The capability whose chain was verified.
        capability_chain: Dereferenced chain, root first, ``capability`` last.
        delegator: Controller of the key that signed ``capability``'s proof
            (None when ``capability`` is itself a root capability).
    """

    capability: Capability
    capability_chain: List[Capability]
    delegator: Optional[str] = None


@dataclass
class RefreshableDelegation:
    """Result of verifying a capability submitted for refresh."""

    delegator: str
    capability_chain: List[Capability]
    chain_controllers: List[str] = field(default_factory=list)
    capability: Capability = field(default_factory=dict)


InspectChainFn = Callable[[ChainDetails], Union[None, Awaitable[None]]]


class ChainVerifier:
    """
    Verifies capability delegation proofs.

    Example:
        >>> verifier = ChainVerifier(resolver, Ed25519Suite())
        >>> result = await verifier.verify_refreshable_delegation(zcap, profile_id)
        >>> result.delegator == profile_id
        True
    """

    def __init__(
        self,
        resolver: DocumentResolver,
        suite: SignatureSuite,
        max_chain_length: int = 10,
        max_clock_skew: int = 300,
        max_delegation_ttl: Optional[int] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """
        Args:
            resolver: Base document resolver (root capabilities are added per call).
            suite: Signature suite used to verify delegation proofs.
            max_chain_length: Maximum ``capabilityChain`` length.
            max_clock_skew: Tolerated clock skew in seconds.
            max_delegation_ttl: Maximum ``expires - created`` of a delegation, in ms.
            clock: Current time in epoch ms; injectable for tests.
        """
        self._resolver = resolver
        self._suite = suite
        self.max_chain_length = max_chain_length
        self.max_clock_skew = max_clock_skew
        self.max_delegation_ttl = max_delegation_ttl
        self._clock = clock or now_ms

    async def verify_delegation(
        self,
        capability: Capability,
        *,
        expected_root_capability: Union[str, Sequence[str]],
        resolver: Optional[DocumentResolver] = None,
        allow_target_attenuation: bool = True,
        date: Optional[int] = None,
        inspect_capability_chain: Optional[InspectChainFn] = None,
    ) -> ChainDetails:
        """
        Verify the delegation proof of ``capability`` and every ancestor.

        Args:
            capability: A delegated capability with an embedded proof.
            expected_root_capability: Root capability id(s) the chain must start from.
            resolver: Resolver to use instead of the base resolver.
            allow_target_attenuation: Allow each link to narrow its target.
            date: Verification instant in epoch ms (default: now).
            inspect_capability_chain: Hook called with the verified chain.

        Raises:
            DataError: If the chain is malformed or any proof fails.
            NotAllowedError: If a delegator had no authority over its parent.
        """
        resolver = resolver or self._resolver
        date = self._clock() if date is None else date

        chain = get_capability_chain(capability)
        if not chain:
            raise DataError("Capability has no capability chain.")
        if len(chain) > self.max_chain_length:
            raise DataError(
                f"Capability chain length {len(chain)} exceeds maximum "
                f"of {self.max_chain_length}.",
                details={"maxChainLength": self.max_chain_length},
            )

        expected = (
            [expected_root_capability]
            if isinstance(expected_root_capability, str)
            else list(expected_root_capability)
        )
        if chain[0] not in expected:
            raise DataError(
                f'Capability chain root "{chain[0]}" is not the expected root capability.'
            )

        dereferenced = await self._dereference(capability, resolver)

        delegator = None
        for parent, child in zip(dereferenced, dereferenced[1:]):
            delegator = await self._verify_link(
                child, parent, resolver=resolver, date=date,
                allow_target_attenuation=allow_target_attenuation,
            )

        details = ChainDetails(
            capability=capability, capability_chain=dereferenced, delegator=delegator
        )
        if inspect_capability_chain is not None:
            result = inspect_capability_chain(details)
            if inspect.isawaitable(result):
                await result
        return details

    async def verify_refreshable_delegation(
        self, capability: Capability, profile_id: str
    ) -> RefreshableDelegation:
        """
        Verify that ``capability`` was delegated directly by ``profile_id``.

        The proof is evaluated just before the capability expires, so a
        capability that has already expired can still be refreshed.

        Raises:
            ValidationError: If the capability is not directly delegated from a root.
            DataError: If the delegation proof does not verify.
            NotAllowedError: If the delegator is not ``profile_id``.
        """
        if len(get_capability_chain(capability)) != 1:
            raise ValidationError(
                "A refreshable capability must be delegated directly from a root capability."
            )

        chain_controllers: List[str] = []

        def collect_controllers(details: ChainDetails) -> None:
            for link in details.capability_chain:
                chain_controllers.extend(get_controllers(link))

        resolver = self._resolver.with_root_controller(lambda root_id, target: profile_id)
        try:
            expires = parse_timestamp(capability.get("expires"))
            details = await self.verify_delegation(
                capability,
                expected_root_capability=capability.get("parentCapability"),
                resolver=resolver,
                allow_target_attenuation=True,
                date=expires - 1,
                inspect_capability_chain=collect_controllers,
            )
        except (ZcapError, ValueError, TypeError, KeyError) as e:
            logger.debug(f"Refreshable capability delegation invalid: {e!r}")
            raise DataError("The provided capability delegation is invalid.", cause=e)

        # Unreachable while the root controller is bound to profile_id above;
        # a foreign delegator already fails verification with DataError.
        if details.delegator != profile_id:
            raise NotAllowedError(
                f'The given capability was not delegated by "{profile_id}".', public=True
            )

        return RefreshableDelegation(
            delegator=details.delegator,
            capability_chain=details.capability_chain,
            chain_controllers=chain_controllers,
            capability=capability,
        )

    async def _dereference(
        self, capability: Capability, resolver: DocumentResolver
    ) -> List[Capability]:
        """Return ``[root, ..., parent, capability]``."""
        chain = get_capability_chain(capability)
        root_id = chain[0]
        if not isinstance(root_id, str):
            raise DataError("The first capability chain entry must be a root capability id.")

        if len(chain) == 1:
            root = await resolver.load(root_id)
            if root.get("id") != root_id or not is_root_capability(root):
                raise DataError(f'"{root_id}" did not resolve to a root capability.')
            return [root, capability]

        *ancestor_ids, parent = chain
        if not all(isinstance(entry, str) for entry in ancestor_ids):
            raise DataError("Only the last capability chain entry may be embedded.")
        if not isinstance(parent, dict):
            raise DataError("The last capability chain entry must be an embedded capability.")
        if get_chain_ids(get_capability_chain(parent)) != ancestor_ids:
            raise DataError("Embedded parent capability chain does not match.")

        return await self._dereference(parent, resolver) + [capability]

    async def _verify_link(
        self,
        child: Capability,
        parent: Capability,
        *,
        resolver: DocumentResolver,
        date: int,
        allow_target_attenuation: bool,
    ) -> str:
        child_id = child.get("id")
        proof = child.get("proof")
        if not isinstance(proof, dict):
            raise DataError(f'Capability "{child_id}" has no proof.')
        if proof.get("proofPurpose") != CAPABILITY_DELEGATION:
            raise DataError(f'Capability "{child_id}" proof purpose is not "{CAPABILITY_DELEGATION}".')
        if not child_id or child_id == parent["id"]:
            raise DataError("Delegated capability must have its own id.")
        if child.get("parentCapability") != parent["id"]:
            raise DataError(f'Capability "{child_id}" parent does not match its chain.')

        # expiry
        if "expires" not in child:
            raise DataError(f'Delegated capability "{child_id}" has no expiration.')
        expires = parse_timestamp(child["expires"])
        if date > expires:
            raise DataError(f'Capability "{child_id}" has expired.')
        if "expires" in parent and expires > parse_timestamp(parent["expires"]):
            raise DataError(f'Capability "{child_id}" expires after its parent.')
        created = parse_timestamp(proof.get("created"))
        if created > date + self.max_clock_skew * 1000:
            raise DataError(f'Delegation proof of "{child_id}" was created in the future.')
        if self.max_delegation_ttl is not None and expires - created > self.max_delegation_ttl:
            raise DataError(
                f'Capability "{child_id}" exceeds the maximum delegation TTL.',
                details={"maxDelegationTtl": self.max_delegation_ttl},
            )

        # attenuation
        target = get_invocation_target(child)
        parent_target = get_invocation_target(parent)
        if target != parent_target and not (
            allow_target_attenuation and is_target_within(target, parent_target)
        ):
            raise DataError(f'Capability "{child_id}" invocation target exceeds its parent\'s.')
        if not is_action_subset(child, parent):
            raise DataError(f'Capability "{child_id}" allowed actions exceed its parent\'s.')

        # authority
        method = await resolver.get_verification_method(
            proof.get("verificationMethod", ""), CAPABILITY_DELEGATION
        )
        delegator = method["controller"]
        if delegator not in get_controllers(parent):
            raise NotAllowedError(
                f'"{delegator}" is not a controller of parent capability "{parent["id"]}".'
            )

        if not self._suite.matches_proof(proof) or not await self._suite.verify(
            child, proof, verification_method=method
        ):
            raise DataError(f'Delegation proof of "{child_id}" does not verify.')

        return delegator


async def delegate_capability(
    parent: Capability,
    *,
    controller: Union[str, List[str]],
    signer: SignerInterface,
    suite: SignatureSuite,
    expires: int,
    invocation_target: Optional[str] = None,
    allowed_action: Optional[Union[str, List[str]]] = None,
    created: Optional[int] = None,
    capability_id: Optional[str] = None,
) -> Capability:
    """
    Delegate ``parent`` to ``controller``.

    Args:
        parent: Root or delegated capability held by ``signer``'s controller.
        controller: The new capability's controller.
        signer: Signer for a verification method of the parent's controller.
        suite: Signature suite producing the delegation proof.
        expires: Expiry in epoch ms.
        invocation_target: Narrower target (defaults to the parent's).
        allowed_action: Allowed action(s) (defaults to the parent's).
        created: Proof creation time in epoch ms (default: now).
        capability_id: Id for the new capability (default: a fresh urn:uuid).

    Returns:
        The signed delegated capability.
    """
    document: Dict[str, Any] = {
        "@context": list(DELEGATED_ZCAP_CONTEXT),
        "id": capability_id or new_capability_id(),
        "controller": controller,
        "parentCapability": parent["id"],
        "invocationTarget": invocation_target or get_invocation_target(parent),
        "expires": format_timestamp(expires),
    }
    if allowed_action is None:
        allowed_action = parent.get("allowedAction")
    if allowed_action is not None:
        document["allowedAction"] = allowed_action

    proof = await suite.sign(
        document,
        signer=signer,
        proof_purpose=CAPABILITY_DELEGATION,
        capability_chain=compute_capability_chain(parent),
        created=format_timestamp(now_ms() if created is None else created),
    )
    return {**document, "proof": proof}
