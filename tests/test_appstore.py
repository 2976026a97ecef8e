"""Tests for the App Store Connect API client."""

import json

import jwt
import pytest
import requests
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from conftest import make_credential
from xcode_release.appstore import TOKEN_LIFETIME, DistributionClient
from xcode_release.errors import DistributionApiError, UnauthorizedError
from xcode_release.models import Platform


class FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self.text = self.content.decode("utf-8")

    def json(self):
        return self._payload


class FakeSession:
    """Returns queued responses and records every request"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, headers=None, params=None, json=None, timeout=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture(scope="module")
def signing_key():
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("utf-8")
    return pem, key.public_key()


def _client(signing_key, *responses, clock=None):
    session = FakeSession(*responses)
    client = DistributionClient(
        "KEYID12345", "issuer-uuid", signing_key[0], session=session, clock=clock or Clock()
    )
    return client, session


def _ok(data, **extra):
    return FakeResponse(200, {"data": data, **extra})


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class TestToken:
    def test_claims_and_header(self, signing_key):
        client, session = _client(signing_key, _ok([{"id": "app-1", "attributes": {"bundleId": "com.x"}}]))
        client.get_app_id("com.x")

        token = session.requests[0]["headers"]["Authorization"].split(" ", 1)[1]
        claims = jwt.decode(
            token,
            signing_key[1],
            algorithms=["ES256"],
            audience="appstoreconnect-v1",
            options={"verify_exp": False},
        )
        assert claims["iss"] == "issuer-uuid"
        assert claims["exp"] - claims["iat"] == TOKEN_LIFETIME
        assert jwt.get_unverified_header(token)["kid"] == "KEYID12345"

    def test_token_is_reused_until_near_expiry(self, signing_key):
        clock = Clock()
        responses = [_ok([{"id": "app-1"}]) for _ in range(3)]
        client, session = _client(signing_key, *responses, clock=clock)

        client.get_app_id("com.x")
        clock.now += 60
        client.get_app_id("com.x")
        clock.now += TOKEN_LIFETIME
        client.get_app_id("com.x")

        tokens = [request["headers"]["Authorization"] for request in session.requests]
        assert tokens[0] == tokens[1]
        assert tokens[2] != tokens[1]

    def test_from_credential_reads_key_file(self, tmp_path, signing_key):
        credential = make_credential(tmp_path, api_private_key="")
        credential.api_key_path.write_text(signing_key[0])

        client = DistributionClient.from_credential(credential, session=FakeSession())

        assert client.key_id == "KEYID12345"
        assert client._private_key == signing_key[0]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestErrors:
    def test_unauthorized_is_its_own_kind(self, signing_key):
        payload = {"errors": [{"status": "401", "code": "NOT_AUTHORIZED"}]}
        client, _ = _client(signing_key, FakeResponse(401, payload))

        with pytest.raises(UnauthorizedError) as info:
            client.get_app_id("com.x")
        assert not isinstance(info.value, DistributionApiError)
        assert info.value.errors[0]["code"] == "NOT_AUTHORIZED"

    def test_not_found(self, signing_key):
        payload = {"errors": [{"status": "404", "code": "NOT_FOUND"}]}
        client, _ = _client(signing_key, FakeResponse(404, payload))

        with pytest.raises(DistributionApiError) as info:
            client.get_builds("prv-1")
        assert info.value.status == 404
        assert info.value.errors == payload["errors"]

    def test_transport_failure(self, signing_key):
        client, _ = _client(signing_key, requests.ConnectionError("connection reset"))
        with pytest.raises(DistributionApiError):
            client.get_builds("prv-1")

    def test_empty_error_body(self, signing_key):
        client, _ = _client(signing_key, FakeResponse(500))
        with pytest.raises(DistributionApiError) as info:
            client.delete_certificate("cert-1")
        assert info.value.status == 500


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------

class TestResources:
    def test_get_app_id_prefers_exact_bundle_id(self, signing_key):
        apps = [
            {"id": "app-2", "attributes": {"bundleId": "com.example.myapp.widget"}},
            {"id": "app-1", "attributes": {"bundleId": "com.example.myapp"}},
        ]
        client, session = _client(signing_key, _ok(apps))

        assert client.get_app_id("com.example.myapp") == "app-1"
        assert session.requests[0]["params"] == {"filter[bundleId]": "com.example.myapp"}

    def test_get_app_id_without_apps(self, signing_key):
        client, _ = _client(signing_key, _ok([]))
        with pytest.raises(DistributionApiError):
            client.get_app_id("com.example.myapp")

    def test_list_parameters_are_comma_joined(self, signing_key):
        client, session = _client(signing_key, _ok([]))
        client.get_beta_groups("app-1", ["Internal", "QA"])
        assert session.requests[0]["params"]["filter[name]"] == "Internal,QA"

    def test_latest_pre_release_version_with_included_build(self, signing_key):
        version = {"id": "prv-1", "relationships": {"builds": {"data": [{"id": "build-7", "type": "builds"}]}}}
        build = {"id": "build-7", "type": "builds", "attributes": {"version": "7"}}
        client, session = _client(signing_key, _ok([version], included=[build]))

        assert client.get_latest_pre_release_version("app-1", Platform.IOS, "1.2.3") == (version, build)
        params = session.requests[0]["params"]
        assert params["filter[platform]"] == "IOS"
        assert params["sort"] == "-version"

    def test_latest_pre_release_version_without_versions(self, signing_key):
        client, _ = _client(signing_key, _ok([]))
        assert client.get_latest_pre_release_version("app-1", Platform.MACOS, "1.0.0") == (None, None)

    def test_create_localization_body(self, signing_key):
        client, session = _client(signing_key, FakeResponse(201, {"data": {"id": "loc-1"}}))

        assert client.create_beta_build_localization("build-1", "en-US", "Notes") == {"id": "loc-1"}
        body = session.requests[0]["json"]["data"]
        assert body["attributes"] == {"whatsNew": "Notes", "locale": "en-US"}
        assert body["relationships"]["build"]["data"]["id"] == "build-1"

    def test_delete_certificate_with_empty_response(self, signing_key):
        client, session = _client(signing_key, FakeResponse(204))
        client.delete_certificate("cert-1")
        assert session.requests[0]["method"] == "DELETE"
        assert session.requests[0]["url"].endswith("/v1/certificates/cert-1")

    def test_create_certificate_requires_data(self, signing_key):
        client, _ = _client(signing_key, FakeResponse(201, {}))
        with pytest.raises(DistributionApiError):
            client.create_certificate("DEVELOPER_ID_APPLICATION", "csr")
