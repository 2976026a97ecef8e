"""App Store Connect API client

A thin typed facade over the REST resources the release pipeline needs.
One instance is built per run from the signing credential and passed to
every component that talks to the backend.
"""

import json
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import jwt  # type: ignore[import]
import requests  # type: ignore[import]

from .console import print_json
from .errors import DistributionApiError, UnauthorizedError
from .models import Platform, SigningCredential

API_BASE = "https://api.appstoreconnect.apple.com"
TOKEN_LIFETIME = 20 * 60  # Apple rejects tokens valid for more than 20 minutes
TOKEN_REFRESH_MARGIN = 60
REQUEST_TIMEOUT = 60

Resource = Dict[str, Any]


class DistributionClient:
    def __init__(
        self,
        key_id: str,
        issuer_id: str,
        private_key: str,
        session: Optional[requests.Session] = None,
        base_url: str = API_BASE,
        clock: Callable[[], float] = time.time,
    ):
        self.key_id = key_id
        self.issuer_id = issuer_id
        self._private_key = private_key
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self._clock = clock
        self._token: Optional[str] = None
        self._token_expiry = 0.0

    @classmethod
    def from_credential(cls, credential: SigningCredential, **kwargs: Any) -> "DistributionClient":
        private_key = credential.api_private_key or credential.api_key_path.read_text()
        return cls(credential.api_key_id, credential.api_issuer_id, private_key, **kwargs)

    def _bearer_token(self) -> str:
        """Return a cached JWT, minting a new one shortly before expiry"""
        now = self._clock()
        if self._token and now < self._token_expiry - TOKEN_REFRESH_MARGIN:
            return self._token
        issued_at = int(now)
        self._token_expiry = issued_at + TOKEN_LIFETIME
        self._token = jwt.encode(
            {
                "iss": self.issuer_id,
                "iat": issued_at,
                "exp": int(self._token_expiry),
                "aud": "appstoreconnect-v1",
            },
            self._private_key,
            algorithm="ES256",
            headers={"kid": self.key_id, "typ": "JWT"},
        )
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        if params:
            params = {
                key: ",".join(str(v) for v in value) if isinstance(value, (list, tuple)) else value
                for key, value in params.items()
            }
        print_json(f"{method} {path}", body if body is not None else params or {})

        try:
            response = self.session.request(
                method,
                f"{self.base_url}{path}",
                headers={
                    "Authorization": f"Bearer {self._bearer_token()}",
                    "Content-Type": "application/json",
                },
                params=params,
                json=body,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise DistributionApiError(f"{method} {path} failed: {e}") from e

        payload = _json_body(response)
        if response.status_code >= 400:
            errors = payload.get("errors", []) if isinstance(payload, dict) else []
            pretty = json.dumps(payload, indent=2) if payload else response.text
            if response.status_code == 401 or any(
                str(error.get("status")) == "401" for error in errors
            ):
                raise UnauthorizedError(
                    f"App Store Connect rejected the API key ({method} {path}):\n{pretty}", errors
                )
            raise DistributionApiError(
                f"{method} {path} failed with HTTP {response.status_code}:\n{pretty}",
                status=response.status_code,
                errors=errors,
            )

        if payload:
            print_json(f"{response.status_code} {method} {path}", payload)
        return payload or None

    # Apps

    def get_app_id(self, bundle_id: str) -> str:
        response = self._request("GET", "/v1/apps", params={"filter[bundleId]": [bundle_id]})
        apps = (response or {}).get("data") or []
        if not apps:
            raise DistributionApiError(f"No apps found for bundle id {bundle_id}")
        # filter[bundleId] is a prefix match; prefer the exact one
        for app in apps:
            if app.get("attributes", {}).get("bundleId") == bundle_id:
                return app["id"]
        return apps[0]["id"]

    # Pre-release versions and builds

    def get_latest_pre_release_version(
        self, app_id: str, platform: Platform, version: str
    ) -> Tuple[Optional[Resource], Optional[Resource]]:
        """Return the newest pre-release version and its newest included build"""
        response = self._request(
            "GET",
            "/v1/preReleaseVersions",
            params={
                "filter[app]": [app_id],
                "filter[platform]": [platform.api_name],
                "filter[version]": [version],
                "sort": "-version",
                "include": "builds",
                "limit[builds]": 1,
                "limit": 1,
            },
        )
        versions = (response or {}).get("data") or []
        if not versions:
            return None, None

        pre_release_version = versions[0]
        build = None
        builds_data = (
            pre_release_version.get("relationships", {}).get("builds", {}).get("data") or []
        )
        if builds_data:
            build_id = builds_data[0].get("id")
            for included in (response or {}).get("included") or []:
                if included.get("type") == "builds" and included.get("id") == build_id:
                    build = included
                    break
        return pre_release_version, build

    def get_builds(self, pre_release_version_id: str, limit: int = 1) -> List[Resource]:
        response = self._request(
            "GET",
            "/v1/builds",
            params={
                "filter[preReleaseVersion]": [pre_release_version_id],
                "sort": "-version",
                "limit": limit,
            },
        )
        return (response or {}).get("data") or []

    # Beta build localizations

    def get_beta_build_localization(self, build_id: str, locale: str) -> Optional[Resource]:
        response = self._request(
            "GET",
            "/v1/betaBuildLocalizations",
            params={
                "filter[build]": [build_id],
                "filter[locale]": [locale],
                "fields[betaBuildLocalizations]": ["whatsNew", "locale"],
            },
        )
        localizations = (response or {}).get("data") or []
        return localizations[0] if localizations else None

    def create_beta_build_localization(
        self, build_id: str, locale: str, whats_new: str
    ) -> Resource:
        response = self._request(
            "POST",
            "/v1/betaBuildLocalizations",
            body={
                "data": {
                    "type": "betaBuildLocalizations",
                    "attributes": {"whatsNew": whats_new, "locale": locale},
                    "relationships": {"build": {"data": {"id": build_id, "type": "builds"}}},
                }
            },
        )
        return (response or {}).get("data") or {}

    def update_beta_build_localization(self, localization_id: str, whats_new: str) -> Resource:
        response = self._request(
            "PATCH",
            f"/v1/betaBuildLocalizations/{localization_id}",
            body={
                "data": {
                    "id": localization_id,
                    "type": "betaBuildLocalizations",
                    "attributes": {"whatsNew": whats_new},
                }
            },
        )
        return (response or {}).get("data") or {}

    # Certificates

    def list_certificates(self, certificate_type: str) -> List[Resource]:
        response = self._request(
            "GET",
            "/v1/certificates",
            params={"filter[certificateType]": [certificate_type], "limit": 200},
        )
        return (response or {}).get("data") or []

    def create_certificate(self, certificate_type: str, csr_content: str) -> Resource:
        response = self._request(
            "POST",
            "/v1/certificates",
            body={
                "data": {
                    "type": "certificates",
                    "attributes": {
                        "certificateType": certificate_type,
                        "csrContent": csr_content,
                    },
                }
            },
        )
        certificate = (response or {}).get("data")
        if not certificate:
            raise DistributionApiError("No certificate returned from App Store Connect")
        return certificate

    def delete_certificate(self, certificate_id: str) -> None:
        self._request("DELETE", f"/v1/certificates/{certificate_id}")

    # Beta groups and review

    def get_beta_groups(self, app_id: str, names: List[str]) -> List[Resource]:
        response = self._request(
            "GET",
            "/v1/betaGroups",
            params={"filter[name]": names, "filter[app]": [app_id]},
        )
        return (response or {}).get("data") or []

    def add_build_to_beta_groups(self, build_id: str, group_ids: List[str]) -> None:
        self._request(
            "POST",
            f"/v1/builds/{build_id}/relationships/betaGroups",
            body={"data": [{"type": "betaGroups", "id": group_id} for group_id in group_ids]},
        )

    def create_beta_app_review_submission(self, build_id: str) -> Resource:
        response = self._request(
            "POST",
            "/v1/betaAppReviewSubmissions",
            body={
                "data": {
                    "type": "betaAppReviewSubmissions",
                    "relationships": {"build": {"data": {"id": build_id, "type": "builds"}}},
                }
            },
        )
        return (response or {}).get("data") or {}

    def get_build_beta_detail(self, build_id: str) -> Resource:
        response = self._request(
            "GET",
            "/v1/buildBetaDetails",
            params={"filter[build]": [build_id], "limit": 1},
        )
        details = (response or {}).get("data") or []
        if not details:
            raise DistributionApiError(f"No beta build details found for build {build_id}")
        return details[0]

    def update_build_beta_detail(self, detail_id: str, auto_notify_enabled: bool) -> Resource:
        response = self._request(
            "PATCH",
            f"/v1/buildBetaDetails/{detail_id}",
            body={
                "data": {
                    "id": detail_id,
                    "type": "buildBetaDetails",
                    "attributes": {"autoNotifyEnabled": auto_notify_enabled},
                }
            },
        )
        return (response or {}).get("data") or {}


def _json_body(response: requests.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {}
