"""
Authorization capability (zcap) documents.

Capabilities are plain JSON objects handled as ``dict``. This module holds the
constants and the small pure helpers every other component shares: root
capability synthesis, canonicalization, timestamps, and the attenuation rules
that decide whether a delegated capability stays within its parent.
"""

import json
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote, unquote

from zcapauth.errors import ValidationError

ZCAP_CONTEXT_URL = "https://w3id.org/zcap/v1"
DATA_INTEGRITY_CONTEXT_URL = "https://w3id.org/security/data-integrity/v2"
DELEGATED_ZCAP_CONTEXT = [ZCAP_CONTEXT_URL, DATA_INTEGRITY_CONTEXT_URL]
ZCAP_ROOT_PREFIX = "urn:zcap:root:"

CAPABILITY_DELEGATION = "capabilityDelegation"
CAPABILITY_INVOCATION = "capabilityInvocation"

# characters left alone by encodeURIComponent, so ids match other zcap stacks
_URI_COMPONENT_SAFE = "!~*'()"

Capability = Dict[str, Any]


def encode_uri_component(value: str) -> str:
    """Percent-encode a value for use as a single URI component."""
    return quote(value, safe=_URI_COMPONENT_SAFE)


def get_root_capability_id(invocation_target: str) -> str:
    """Return the root capability id for an invocation target."""
    return f"{ZCAP_ROOT_PREFIX}{encode_uri_component(invocation_target)}"


def is_root_capability_id(capability_id: str) -> bool:
    return isinstance(capability_id, str) and capability_id.startswith(ZCAP_ROOT_PREFIX)


def get_root_invocation_target(root_capability_id: str) -> str:
    """Decode the invocation target embedded in a root capability id."""
    if not is_root_capability_id(root_capability_id):
        raise ValidationError(f'"{root_capability_id}" is not a root capability id.')
    return unquote(root_capability_id[len(ZCAP_ROOT_PREFIX):])


def create_root_capability(controller: Union[str, List[str]], invocation_target: str) -> Capability:
    """
    Synthesize a root capability in memory.

    Root capabilities are never persisted or signed: their authority comes
    from the controller named here, so callers must derive ``controller``
    from a trusted source (e.g. the profile id in the request path).
    """
    return {
        "@context": ZCAP_CONTEXT_URL,
        "id": get_root_capability_id(invocation_target),
        "controller": controller,
        "invocationTarget": invocation_target,
    }


def is_root_capability(capability: Capability) -> bool:
    return is_root_capability_id(capability.get("id", "")) and "proof" not in capability


def canonicalize(value: Any) -> str:
    """Deterministic JSON serialization (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# =============================================================================
# Timestamps
# =============================================================================


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def format_timestamp(epoch_ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC timestamp with ms precision."""
    dt = datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{epoch_ms % 1000:03d}Z"


def parse_timestamp(value: str) -> int:
    """
    Parse an ISO-8601 timestamp into epoch milliseconds.

    Raises:
        ValidationError: If the value is not a valid timestamp.
    """
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}", cause=e)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(round(dt.timestamp() * 1000))


# =============================================================================
# Controllers, actions and targets
# =============================================================================


def get_controllers(capability: Capability) -> List[str]:
    """Return a capability's controller(s) as a list."""
    controller = capability.get("controller")
    if controller is None:
        return []
    if isinstance(controller, list):
        return list(controller)
    return [controller]


def get_allowed_actions(capability: Capability) -> Optional[List[str]]:
    """Return allowed actions, or None when the capability does not restrict them."""
    allowed = capability.get("allowedAction")
    if allowed is None:
        return None
    if isinstance(allowed, str):
        return [allowed]
    return list(allowed)


def is_action_allowed(capability: Capability, action: str) -> bool:
    allowed = get_allowed_actions(capability)
    return allowed is None or action in allowed


def is_action_subset(child: Capability, parent: Capability) -> bool:
    """Whether ``child`` restricts its actions at least as much as ``parent``."""
    parent_actions = get_allowed_actions(parent)
    if parent_actions is None:
        return True
    child_actions = get_allowed_actions(child)
    if child_actions is None:
        return False
    return set(child_actions).issubset(parent_actions)


def get_invocation_target(capability: Capability) -> str:
    target = capability.get("invocationTarget")
    if isinstance(target, dict):
        target = target.get("id")
    if not isinstance(target, str) or not target:
        raise ValidationError("Capability is missing a string \"invocationTarget\".")
    return target


def is_target_within(target: str, parent_target: str) -> bool:
    """
    Path-based attenuation: ``target`` equals ``parent_target`` or extends it
    by a path segment or a query string.
    """
    if target == parent_target:
        return True
    if parent_target.endswith("/"):
        return target.startswith(parent_target)
    return target.startswith(parent_target + "/") or target.startswith(parent_target + "?")


# =============================================================================
# Chains
# =============================================================================


def get_capability_chain(capability: Capability) -> List[Union[str, Capability]]:
    proof = capability.get("proof")
    if not isinstance(proof, dict):
        return []
    chain = proof.get("capabilityChain")
    return list(chain) if isinstance(chain, list) else []


def get_chain_ids(chain: List[Union[str, Capability]]) -> List[str]:
    return [entry if isinstance(entry, str) else entry.get("id", "") for entry in chain]


def compute_capability_chain(parent: Capability) -> List[Union[str, Capability]]:
    """
    Compute the ``capabilityChain`` for a capability delegated from ``parent``.

    The root is referenced by id; when the parent is itself delegated, its
    ancestors are referenced by id and the parent is embedded in full.
    """
    if is_root_capability(parent):
        return [parent["id"]]
    parent_chain = get_capability_chain(parent)
    if not parent_chain:
        raise ValidationError("Parent capability has no capability chain.")
    return get_chain_ids(parent_chain) + [parent]


def new_capability_id() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


def strip_proof(capability: Capability) -> Capability:
    """Return a shallow copy of ``capability`` without its proof."""
    return {key: value for key, value in capability.items() if key != "proof"}
