"""Ephemeral signing environment for a single release run

The keychain, API key and provisioning profiles live only for one run.
Everything created is recorded in the StateStore as soon as it exists, so
the post phase (a separate process) can remove it however the main phase
ended.
"""

import base64
import binascii
import shutil
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from cryptography import x509  # type: ignore[import]
from cryptography.hazmat.primitives import hashes, serialization  # type: ignore[import]
from cryptography.hazmat.primitives.asymmetric import rsa  # type: ignore[import]
from cryptography.x509.oid import NameOID  # type: ignore[import]

from . import console as log
from .appstore import DistributionClient
from .ci import StateStore, runner_temp
from .config import Inputs
from .console import register_secret
from .errors import (
    BestEffortCleanupError,
    FatalConfigurationError,
    ReleaseError,
    ToolInvocationError,
)
from .models import SigningCredential
from .parsing import extract_profile_uuid, parse_identities, team_id_from_identity
from .process import SECURITY, Runner, run_command

APP_STORE_CONNECT_KEY_DIR = Path.home() / ".appstoreconnect" / "private_keys"
PROVISIONING_PROFILES_DIR = Path.home() / "Library" / "MobileDevice" / "Provisioning Profiles"
PROFILE_SUFFIXES = (".mobileprovision", ".provisionprofile")
KEYCHAIN_TIMEOUT = "21600"  # seconds before the keychain relocks
PARTITION_LIST = "apple-tool:,apple:,codesign:"

# Identity name prefix -> App Store Connect certificate type
CERTIFICATE_TYPES = {
    "Developer ID Application": "DEVELOPER_ID_APPLICATION",
    "Developer ID Installer": "DEVELOPER_ID_INSTALLER",
    "3rd Party Mac Developer Installer": "MAC_INSTALLER_DISTRIBUTION",
    "Apple Distribution": "DISTRIBUTION",
}

ClientFactory = Callable[[str, str, Path], DistributionClient]


def _default_client_factory(key_id: str, issuer_id: str, key_path: Path) -> DistributionClient:
    return DistributionClient(key_id, issuer_id, key_path.read_text())


def _decode_base64(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=False)
    except (binascii.Error, ValueError) as e:
        raise FatalConfigurationError(f"{name} is not valid base64: {e}") from e


class CredentialManager:
    def __init__(
        self,
        state: StateStore,
        runner: Runner = run_command,
        temp_dir: Optional[Path] = None,
        key_dir: Path = APP_STORE_CONNECT_KEY_DIR,
        profiles_dir: Path = PROVISIONING_PROFILES_DIR,
        token_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
        client_factory: ClientFactory = _default_client_factory,
    ):
        self.state = state
        self.runner = runner
        self.temp_dir = temp_dir or runner_temp()
        self.key_dir = key_dir
        self.profiles_dir = profiles_dir
        self.token_factory = token_factory
        self.client_factory = client_factory
        self.credential: Optional[SigningCredential] = None

    def _security(self, *args: str, **kwargs: Any) -> str:
        return self.runner([SECURITY, *args], **kwargs).stdout or ""

    # Phase one

    def establish_signing_context(self, inputs: Inputs) -> SigningCredential:
        """Create the keychain and import every supplied signing asset"""
        with log.group("Importing credentials"):
            if self.state.load().get("token"):
                raise FatalConfigurationError(
                    f"{self.state.path} still records the credentials of an earlier run; "
                    "run xcode-release-post to remove them first"
                )
            token = self.token_factory()
            register_secret(token)
            self.state.record(token=token)

            key_id = inputs.app_store_connect_key_id
            issuer_id = inputs.app_store_connect_issuer_id
            if not (key_id and issuer_id and inputs.app_store_connect_key):
                raise FatalConfigurationError(
                    "app-store-connect-key, app-store-connect-key-id and "
                    "app-store-connect-issuer-id are required"
                )
            register_secret(key_id)
            register_secret(issuer_id)
            private_key = _decode_base64(inputs.app_store_connect_key, "app-store-connect-key").decode("utf-8")
            register_secret(private_key)

            self.temp_dir.mkdir(parents=True, exist_ok=True)
            self.key_dir.mkdir(parents=True, exist_ok=True)
            key_path = self.key_dir / f"AuthKey_{key_id}.p8"
            self.state.record(
                api_key_id=key_id, api_issuer_id=issuer_id, api_key_path=str(key_path)
            )
            key_path.write_text(private_key, encoding="utf-8")
            key_path.chmod(0o600)

            keychain_path = self.temp_dir / f"{token}.keychain-db"
            self.state.record(keychain_path=str(keychain_path))
            self._security("create-keychain", "-p", token, str(keychain_path))
            self._security("set-keychain-settings", "-lut", KEYCHAIN_TIMEOUT, str(keychain_path))
            self._security("unlock-keychain", "-p", token, str(keychain_path))

            credential = SigningCredential(
                token=token,
                keychain_path=keychain_path,
                api_key_id=key_id,
                api_issuer_id=issuer_id,
                api_key_path=key_path,
                api_private_key=private_key,
                team_id=inputs.team_id or None,
                signing_identity=inputs.signing_identity or None,
            )
            if credential.team_id:
                register_secret(credential.team_id)

            if inputs.certificate:
                self._import_certificate(credential, inputs)
            if inputs.provisioning_profile:
                credential.provisioning_profile_uuid = self._install_provisioning_profile(inputs)

            self.credential = credential
            log.success("Imported credentials")
            return credential

    def _import_certificate(self, credential: SigningCredential, inputs: Inputs) -> None:
        if not inputs.certificate_password:
            raise FatalConfigurationError("certificate-password is required with certificate")
        register_secret(inputs.certificate_password)

        log.info("Importing certificate...")
        certificate_path = self.temp_dir / f"{credential.token}.p12"
        certificate_path.write_bytes(_decode_base64(inputs.certificate, "certificate"))
        try:
            self._security(
                "import", str(certificate_path),
                "-P", inputs.certificate_password,
                "-A", "-t", "cert", "-f", "pkcs12",
                "-k", str(credential.keychain_path),
            )
        finally:
            certificate_path.unlink(missing_ok=True)
        self._allow_codesign(credential)
        self._security(
            "list-keychains", "-d", "user", "-s", str(credential.keychain_path), "login.keychain-db"
        )

        if credential.signing_identity:
            return
        output = self._security(
            "find-identity", "-v", "-p", "codesigning", str(credential.keychain_path), echo=False
        )
        identities = parse_identities(output)
        if not identities:
            raise FatalConfigurationError("Failed to match signing identity!")
        identity = identities[0]
        register_secret(identity.hash)
        credential.signing_identity = identity.name
        if not credential.team_id:
            team_id = team_id_from_identity(identity.name)
            if not team_id:
                raise FatalConfigurationError(
                    f"Failed to find team id in signing identity {identity.name!r}"
                )
            register_secret(team_id)
            credential.team_id = team_id
        log.debug_log(output)

    def _allow_codesign(self, credential: SigningCredential) -> None:
        """Let codesign use the imported keys without a UI prompt"""
        self._security(
            "set-key-partition-list", "-S", PARTITION_LIST,
            "-s", "-k", credential.token, str(credential.keychain_path),
            echo=log.DEBUG,
        )

    def _install_provisioning_profile(self, inputs: Inputs) -> str:
        log.info("Importing provisioning profile...")
        name = inputs.provisioning_profile_name
        if not name:
            raise FatalConfigurationError(
                "provisioning-profile-name is required with provisioning-profile"
            )
        suffix = Path(name).suffix
        if suffix not in PROFILE_SUFFIXES:
            raise FatalConfigurationError(
                "Provisioning profile name must end with .mobileprovision or .provisionprofile"
            )

        content = _decode_base64(inputs.provisioning_profile, "provisioning-profile")
        profile_path = self.temp_dir / Path(name).name
        self.state.append("provisioning_profile_paths", str(profile_path))
        profile_path.write_bytes(content)

        profile_uuid = extract_profile_uuid(content)
        if not profile_uuid:
            raise FatalConfigurationError("Failed to parse provisioning profile UUID")

        # Xcode only finds profiles by UUID in the user's profile directory
        self.profiles_dir.mkdir(parents=True, exist_ok=True)
        installed_path = self.profiles_dir / f"{profile_uuid}{suffix}"
        self.state.append("provisioning_profile_paths", str(installed_path))
        shutil.copyfile(profile_path, installed_path)
        log.debug_log(f"Installed provisioning profile {profile_uuid}")
        return profile_uuid

    def create_additional_signing_certificate(
        self, kind: str, client: DistributionClient
    ) -> Dict[str, Any]:
        """Issue a certificate through App Store Connect and import it

        The private key is generated here and never leaves the machine;
        only the signing request is sent.
        """
        credential = self.credential
        if credential is None:
            raise ReleaseError("Signing context has not been established")

        log.info(f"Creating {kind} certificate...")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, f"xcode-release {kind}")])
            )
            .sign(private_key, hashes.SHA256())
        )
        csr_pem = csr.public_bytes(serialization.Encoding.PEM).decode("ascii")

        certificate = client.create_certificate(kind, csr_pem)
        self.state.append("created_certificates", {"id": certificate["id"], "type": kind})

        content = certificate.get("attributes", {}).get("certificateContent")
        if not content:
            raise ReleaseError(f"Certificate {certificate['id']} has no content")

        staging_dir = self.temp_dir / f"{credential.token}-certificates"
        self.state.record(certificate_staging_dir=str(staging_dir))
        staging_dir.mkdir(parents=True, exist_ok=True)

        key_pem = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
        register_secret(key_pem.decode("ascii"))
        key_path = staging_dir / f"{kind}.pem"
        key_path.write_bytes(key_pem)
        key_path.chmod(0o600)
        certificate_path = staging_dir / f"{kind}.cer"
        certificate_path.write_bytes(_decode_base64(content, "certificateContent"))

        keychain = str(credential.keychain_path)
        self._security("import", str(key_path), "-k", keychain, "-t", "priv", "-f", "openssl", "-A")
        self._security("import", str(certificate_path), "-k", keychain, "-t", "cert", "-f", "x509", "-A")
        self._allow_codesign(credential)
        log.success(f"Imported {kind} certificate {certificate['id']}")
        return certificate

    # Phase two

    def teardown_signing_context(self) -> List[BestEffortCleanupError]:
        """Remove everything recorded in the state file

        Each step runs regardless of earlier failures; failures are
        reported and returned, never raised.
        """
        failures: List[BestEffortCleanupError] = []

        def attempt(step: str, action: Callable[[], None]) -> None:
            try:
                action()
            except Exception as e:  # cleanup is best effort
                failure = BestEffortCleanupError(step, e)
                log.warning(f"Failed to {step[0].lower()}{step[1:]}: {e}")
                failures.append(failure)

        with log.group("Removing credentials"):
            try:
                self.state.load()
            except ReleaseError as e:
                log.warning(str(e))
                return [BestEffortCleanupError("Load state", e)]

            if not self.state.get("token"):
                log.info("No credentials to remove")
                return failures
            register_secret(self.state.get("token"))

            for profile_path in self.state.get("provisioning_profile_paths") or []:
                attempt(
                    f"Remove provisioning profile {Path(profile_path).name}",
                    lambda p=profile_path: Path(p).unlink(missing_ok=True),
                )

            keychain_path = self.state.get("keychain_path")
            if keychain_path:
                attempt("Delete keychain", lambda: self._delete_keychain(Path(keychain_path)))

            certificates = self.state.get("created_certificates") or []
            if certificates:
                attempt("Revoke certificates", lambda: self._revoke_certificates(certificates))

            key_path = self.state.get("api_key_path")
            if key_path:
                attempt(
                    "Remove App Store Connect key",
                    lambda: Path(key_path).unlink(missing_ok=True),
                )

            staging_dir = self.state.get("certificate_staging_dir")
            if staging_dir:
                attempt(
                    "Remove certificate staging directory",
                    lambda: shutil.rmtree(staging_dir, ignore_errors=False)
                    if Path(staging_dir).exists()
                    else None,
                )

            attempt("Remove state file", self.state.clear)

        if not failures:
            log.success("Removed credentials")
        return failures

    def _delete_keychain(self, keychain_path: Path) -> None:
        log.info("Removing keychain...")
        try:
            self._security("delete-keychain", str(keychain_path))
        except ToolInvocationError:
            # Nothing to delete if creation never finished
            if keychain_path.exists():
                raise

    def _revoke_certificates(self, certificates: List[Dict[str, str]]) -> None:
        key_path = Path(self.state.get("api_key_path", ""))
        client = self.client_factory(
            self.state.get("api_key_id", ""), self.state.get("api_issuer_id", ""), key_path
        )
        errors: List[str] = []
        for certificate_type in sorted({c["type"] for c in certificates}):
            existing = {c["id"] for c in client.list_certificates(certificate_type)}
            for certificate in certificates:
                if certificate["type"] != certificate_type or certificate["id"] not in existing:
                    continue
                log.info(f"Revoking certificate {certificate['id']}...")
                try:
                    client.delete_certificate(certificate["id"])
                except ReleaseError as e:
                    errors.append(f"{certificate['id']}: {e}")
        if errors:
            raise ReleaseError("; ".join(errors))
