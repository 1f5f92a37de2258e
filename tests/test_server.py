"""
Tests for the zcapauth HTTP API, driven through ZcapClient.
"""

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from conftest import BASE_PATH, BASE_URI, HOST, HOUR, YEAR
from zcapauth import AuthorizationContext, generate_identity
from zcapauth.capability import encode_uri_component, now_ms, parse_timestamp
from zcapauth.client import ZcapClient
from zcapauth.errors import (
    ConstraintError,
    DuplicateError,
    InvalidStateError,
    NotAllowedError,
    NotFoundError,
    ValidationError,
)
from zcapauth.server import create_app


@pytest_asyncio.fixture
async def http(context):
    transport = ASGITransport(app=create_app(context))
    async with httpx.AsyncClient(transport=transport, base_url=BASE_URI) as client:
        yield client


def make_client(identity, http) -> ZcapClient:
    return ZcapClient(
        invocation_signer=identity.signer(), base_uri=BASE_URI, base_path=BASE_PATH, http_client=http
    )


@pytest.fixture
def profile_client(profile, http) -> ZcapClient:
    return make_client(profile, http)


@pytest.fixture
def delegate_client(delegate, http) -> ZcapClient:
    return make_client(delegate, http)


def policy_for(profile, delegate, sequence=0, **constraints):
    return {
        "sequence": sequence,
        "controller": profile.did,
        "delegate": delegate.did,
        "refresh": {"constraints": constraints},
    }


class TestPolicyRoutes:
    """Policy CRUD as the profile."""

    @pytest.mark.asyncio
    async def test_create(self, profile_client, profile, delegate):
        response = await profile_client.request(
            profile_client.policies_url(profile.did),
            method="POST",
            json={"policy": policy_for(profile, delegate, maxTtlBeforeRefresh=1000)},
        )

        assert response.status_code == 201
        assert response.headers["location"] == profile_client.policies_url(profile.did, delegate.did)
        assert response.json()["policy"] == policy_for(profile, delegate, maxTtlBeforeRefresh=1000)

    @pytest.mark.asyncio
    async def test_create_duplicate(self, profile_client, profile, delegate):
        await profile_client.create_policy(profile.did, policy_for(profile, delegate))
        with pytest.raises(DuplicateError) as exc:
            await profile_client.create_policy(profile.did, policy_for(profile, delegate))
        assert exc.value.http_status == 409

    @pytest.mark.asyncio
    async def test_create_for_other_controller(self, profile_client, profile, delegate):
        policy = {**policy_for(profile, delegate), "controller": generate_identity().did}
        with pytest.raises(NotAllowedError):
            await profile_client.create_policy(profile.did, policy)

    @pytest.mark.asyncio
    async def test_create_requires_sequence_zero(self, profile_client, profile, delegate):
        with pytest.raises(ValidationError) as exc:
            await profile_client.create_policy(profile.did, policy_for(profile, delegate, sequence=1))
        assert exc.value.http_status == 400

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_fields(self, profile_client, profile, delegate):
        policy = {**policy_for(profile, delegate), "extra": True}
        with pytest.raises(ValidationError):
            await profile_client.create_policy(profile.did, policy)

    @pytest.mark.asyncio
    async def test_policy_limit(self, resolver, suite, profile, delegate):
        context = AuthorizationContext.create(
            resolver=resolver, suite=suite, host=HOST, base_uri=BASE_URI, base_path=BASE_PATH,
            policy_limit=1,
        )
        transport = ASGITransport(app=create_app(context))
        async with httpx.AsyncClient(transport=transport, base_url=BASE_URI) as http:
            client = make_client(profile, http)
            await client.create_policy(profile.did, policy_for(profile, delegate))

            with pytest.raises(NotAllowedError) as exc:
                await client.create_policy(profile.did, policy_for(profile, generate_identity()))
        assert "Maximum policies" in str(exc.value)

    @pytest.mark.asyncio
    async def test_list_get_update_delete(self, profile_client, profile, delegate):
        other = generate_identity()
        await profile_client.create_policy(profile.did, policy_for(profile, delegate))
        await profile_client.create_policy(profile.did, policy_for(profile, other))

        policies = await profile_client.get_policies(profile.did)
        assert {p["delegate"] for p in policies} == {delegate.did, other.did}

        policy = await profile_client.get_policy(profile.did, delegate.did)
        assert policy["sequence"] == 0

        updated = await profile_client.update_policy(profile.did, {**policy, "refresh": False})
        assert updated["sequence"] == 1
        assert updated["refresh"] is False

        with pytest.raises(InvalidStateError):
            await profile_client.update_policy(profile.did, {**policy, "refresh": False})

        assert await profile_client.delete_policy(profile.did, delegate.did) is True
        assert await profile_client.delete_policy(profile.did, delegate.did) is False
        with pytest.raises(NotFoundError):
            await profile_client.get_policy(profile.did, delegate.did)

    @pytest.mark.asyncio
    async def test_update_must_match_route(self, profile_client, profile, delegate):
        await profile_client.create_policy(profile.did, policy_for(profile, delegate))
        policy = policy_for(profile, delegate)

        with pytest.raises(NotAllowedError):
            await profile_client.write(
                profile_client.policies_url(profile.did, generate_identity().did), {"policy": policy}
            )

    @pytest.mark.asyncio
    async def test_viewable_policy(self, profile_client, profile, delegate):
        await profile_client.create_policy(profile.did, policy_for(profile, delegate, maxTtlBeforeRefresh=5))

        viewable = await profile_client.read(
            f"{profile_client.policies_url(profile.did, delegate.did)}/refresh/policy"
        )

        assert viewable == {"policy": {"refresh": {"constraints": {"maxTtlBeforeRefresh": 5}}}}

    @pytest.mark.asyncio
    async def test_viewable_policy_enabled_without_constraints(self, profile_client, profile, delegate):
        await profile_client.create_policy(profile.did, {**policy_for(profile, delegate), "refresh": {}})

        viewable = await profile_client.read(
            f"{profile_client.policies_url(profile.did, delegate.did)}/refresh/policy"
        )

        assert viewable == {"policy": {"refresh": {}}}


class TestAuthorization:
    """Every route requires a valid invocation of the profile's root."""

    @pytest.mark.asyncio
    async def test_unsigned_request(self, http, profile_client, profile):
        response = await http.get(profile_client.policies_url(profile.did))

        assert response.status_code == 403
        body = response.json()
        assert body["name"] == "NotAllowedError"
        assert body["message"] == "Authorization error."
        assert body["cause"]["message"] == "Missing HTTP signature."

    @pytest.mark.asyncio
    async def test_other_identity(self, delegate_client, profile):
        with pytest.raises(NotAllowedError):
            await delegate_client.get_policies(profile.did)

    @pytest.mark.asyncio
    async def test_root_of_other_profile(self, profile_client, profile):
        other_root = f"urn:zcap:root:{encode_uri_component(profile_client.profile_url(generate_identity().did))}"
        with pytest.raises(NotAllowedError):
            await profile_client.get_policies(profile.did, capability=other_root)

    @pytest.mark.asyncio
    async def test_delegated_read(self, profile_client, delegate_client, profile, delegate, root_capability):
        await profile_client.create_policy(profile.did, policy_for(profile, delegate))
        zcap = await profile_client.delegate(
            controller=delegate.did,
            expires=now_ms() + HOUR,
            capability=root_capability,
            invocation_target=profile_client.policies_url(profile.did),
            allowed_action="read",
        )

        policies = await delegate_client.get_policies(profile.did, capability=zcap)
        assert [p["delegate"] for p in policies] == [delegate.did]

        with pytest.raises(NotAllowedError):
            await delegate_client.delete_policy(profile.did, delegate.did, capability=zcap)


class TestRefreshRoute:
    """Refreshing capabilities as a delegate."""

    async def _delegate(self, profile_client, profile, delegate, expires):
        return await profile_client.delegate(
            controller=delegate.did,
            expires=expires,
            invocation_target=profile_client.profile_url(profile.did),
        )

    @pytest.mark.asyncio
    async def test_refresh(self, profile_client, delegate_client, profile, delegate, profile_signer):
        await profile_client.create_policy(
            profile.did, policy_for(profile, delegate, maxTtlBeforeRefresh=YEAR)
        )
        zcap = await self._delegate(profile_client, profile, delegate, now_ms() + HOUR)

        before = now_ms()
        refreshed = await delegate_client.refresh(profile.did, zcap)

        assert refreshed["id"] != zcap["id"]
        assert refreshed["controller"] == delegate.did
        assert refreshed["invocationTarget"] == zcap["invocationTarget"]
        assert refreshed["proof"]["capabilityChain"] == zcap["proof"]["capabilityChain"]
        assert parse_timestamp(refreshed["expires"]) >= before + YEAR
        assert profile_signer.calls == 1

        # the refreshed capability works for later requests
        viewable = await delegate_client.get_refresh_policy(profile.did, delegate.did, refreshed)
        assert viewable == {"refresh": {"constraints": {"maxTtlBeforeRefresh": YEAR}}}

        again = await delegate_client.refresh(profile.did, zcap)
        assert again == refreshed
        assert profile_signer.calls == 1

    @pytest.mark.asyncio
    async def test_no_policy(self, profile_client, delegate_client, profile, delegate):
        zcap = await self._delegate(profile_client, profile, delegate, now_ms() + HOUR)

        with pytest.raises(NotAllowedError) as exc:
            await delegate_client.refresh(profile.did, zcap)
        assert "No refresh policy" in str(exc.value)

    @pytest.mark.asyncio
    async def test_too_early(self, profile_client, delegate_client, profile, delegate):
        await profile_client.create_policy(profile.did, policy_for(profile, delegate, maxTtlBeforeRefresh=0))
        zcap = await self._delegate(profile_client, profile, delegate, now_ms() + HOUR)

        with pytest.raises(ConstraintError) as exc:
            await delegate_client.refresh(profile.did, zcap)
        assert exc.value.http_status == 400
        assert "refreshTime" in exc.value.details

    @pytest.mark.asyncio
    async def test_controller_must_be_invoker(self, profile_client, delegate_client, profile, delegate):
        other = generate_identity()
        await profile_client.create_policy(profile.did, policy_for(profile, other, maxTtlBeforeRefresh=YEAR))
        mine = await self._delegate(profile_client, profile, delegate, now_ms() + HOUR)
        theirs = await self._delegate(profile_client, profile, other, now_ms() + HOUR)

        with pytest.raises(NotAllowedError):
            await delegate_client.refresh(profile.did, theirs, invoked=mine)

    @pytest.mark.asyncio
    async def test_invalid_body(self, profile_client, delegate_client, profile, delegate):
        zcap = await self._delegate(profile_client, profile, delegate, now_ms() + HOUR)
        url = f"{delegate_client.policies_url(profile.did, delegate.did)}/refresh"

        with pytest.raises(ValidationError) as exc:
            await delegate_client.write(url, {"controller": delegate.did}, capability=zcap)
        assert exc.value.http_status == 400
