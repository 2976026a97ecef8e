"""Archive, export, sign, notarize, validate and upload

BuildPipeline runs the stages strictly in order. Any failing command
aborts the run; nothing here retries.
"""

import json
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from rich.markup import escape  # type: ignore[import]
from rich.tree import Tree  # type: ignore[import]

from . import console as log
from .appstore import DistributionClient
from .config import Inputs
from .console import console
from .credentials import CERTIFICATE_TYPES, CredentialManager
from .errors import FatalConfigurationError, ReleaseError, ToolInvocationError
from .models import (
    ArchiveKind,
    ArtifactKind,
    BuildArtifact,
    Platform,
    ProjectDescriptor,
    SigningCredential,
)
from .notarize import Notarizer
from .parsing import SigningIdentity, find_identity
from .plists import dump_plist, load_plist, loads_plist, plist_diff
from .process import SECURITY, Runner, run_command, run_xcodebuild

# Xcode 15.4 renamed the export methods; old names still work but warn
METHOD_RENAME_VERSION = (15, 4)
RENAMED_METHODS = {
    "app-store": "app-store-connect",
    "ad-hoc": "release-testing",
    "development": "debugging",
}
EXPORT_OPTIONS = ("development", "ad-hoc", "app-store", "developer-id", "steam", "enterprise")

APP_STORE_ENTITLEMENTS = {
    "com.apple.security.app-sandbox": True,
    "com.apple.security.files.user-selected.read-only": True,
}
# Unity/Steam style builds load unsigned plugins and patch memory at runtime
DIRECT_DISTRIBUTION_ENTITLEMENTS = {
    "com.apple.security.cs.disable-library-validation": True,
    "com.apple.security.cs.allow-dyld-environment-variables": True,
    "com.apple.security.cs.disable-executable-page-protection": True,
}

DEVELOPER_ID_APPLICATION = "Developer ID Application"
DEVELOPER_ID_INSTALLER = "Developer ID Installer"
NESTED_CODE_SUFFIXES = (".bundle", ".dylib")

XcodebuildRunner = Callable[..., str]


def export_method(option: str, platform: Platform, xcode_version: Tuple[int, ...] = ()) -> str:
    """Map the export-option input to the method name this Xcode accepts"""
    method = (option or "development").strip()
    if method not in EXPORT_OPTIONS and method not in RENAMED_METHODS.values():
        raise FatalConfigurationError(f"Invalid export-option: {option}")
    if platform == Platform.MACOS:
        method = {"steam": "developer-id", "ad-hoc": "development"}.get(method, method)
    elif method in ("steam", "developer-id"):
        raise FatalConfigurationError(f"export-option {method} is only valid for macOS")
    if xcode_version and xcode_version >= METHOD_RENAME_VERSION:
        method = RENAMED_METHODS.get(method, method)
    return method


def write_export_options(
    project: ProjectDescriptor, method: str, credential: Optional[SigningCredential]
) -> Path:
    """Write exportOptions.plist inside the project bundle"""
    options: Dict[str, Any] = {
        "method": method,
        "signingStyle": "manual" if credential and credential.signing_identity else "automatic",
    }
    if credential and credential.team_id:
        options["teamID"] = credential.team_id
    if credential and credential.provisioning_profile_uuid:
        options["provisioningProfiles"] = {project.bundle_id: credential.provisioning_profile_uuid}
    return dump_plist(options, project.project_path / "exportOptions.plist")


def default_entitlements(export_method_name: str) -> Dict[str, bool]:
    if export_method_name in ("app-store", "app-store-connect"):
        return dict(APP_STORE_ENTITLEMENTS)
    return dict(DIRECT_DISTRIBUTION_ENTITLEMENTS)


def find_artifact(export_path: Path, platform: Platform, app_store: bool) -> BuildArtifact:
    """Locate the exported artifact by suffix"""
    if platform != Platform.MACOS:
        suffix, kind = ".ipa", ArtifactKind.MOBILE_ARCHIVE
    elif app_store:
        suffix, kind = ".pkg", ArtifactKind.INSTALLER_PACKAGE
    else:
        suffix, kind = ".app", ArtifactKind.APP_BUNDLE

    matches = sorted(export_path.glob(f"*{suffix}")) or sorted(export_path.rglob(f"*{suffix}"))
    if not matches or not matches[0].exists():
        raise ReleaseError(f"Failed to find exported {suffix} in {export_path}")
    return BuildArtifact(matches[0], kind)


class BuildPipeline:
    def __init__(
        self,
        project: ProjectDescriptor,
        inputs: Inputs,
        credentials: Optional[CredentialManager] = None,
        client: Optional[DistributionClient] = None,
        runner: Runner = run_command,
        xcodebuild: XcodebuildRunner = run_xcodebuild,
        notarizer: Optional[Notarizer] = None,
    ):
        self.project = project
        self.inputs = inputs
        self.credentials = credentials
        self.client = client
        self.runner = runner
        self.xcodebuild = xcodebuild
        self.credential = project.credential
        self.notarizer = notarizer or (
            Notarizer(self.credential, runner) if self.credential else None
        )
        self.skipped: List[str] = []

    # Configuration

    def prepare(self) -> None:
        """Settle export method, export options and entitlements before archiving"""
        project = self.project
        if self.inputs.export_option_plist:
            options_path = Path(self.inputs.export_option_plist)
            if not options_path.exists():
                raise FatalConfigurationError(
                    f"Invalid path for export-option-plist: {options_path}"
                )
        else:
            method = export_method(self.inputs.export_option, project.platform, project.xcode_version)
            options_path = write_export_options(project, method, self.credential)

        options = load_plist(options_path)
        log.debug_log(f"Export options ({options_path}):\n{json.dumps(options, indent=2, default=str)}")
        project.export_options_path = options_path
        project.export_method = str(options.get("method", ""))
        if not project.export_method:
            raise FatalConfigurationError(f"No method in export options {options_path}")

        if self.inputs.entitlements_plist:
            project.entitlements_path = Path(self.inputs.entitlements_plist)
        elif project.platform == Platform.MACOS:
            project.entitlements_path = self._default_entitlements_path()

        if project.platform == Platform.MACOS:
            project.archive_kind = ArchiveKind(self.inputs.archive_type)
            project.notarize = (
                self.inputs.notarize
                if self.inputs.notarize is not None
                else project.is_steam_build
            )

    def _default_entitlements_path(self) -> Path:
        path = self.project.project_path / "Entitlements.plist"
        if path.exists():
            log.debug_log(f"Existing Entitlements.plist found at: {path}")
            return path
        log.warning("Entitlements.plist not found, creating default Entitlements.plist...")
        return dump_plist(default_entitlements(self.project.export_method), path)

    @property
    def should_upload(self) -> bool:
        if not self.project.is_app_store_upload:
            return False
        return self.inputs.upload is not False

    def _auth_args(self) -> List[str]:
        if not self.credential:
            return []
        return [
            "-authenticationKeyID", self.credential.api_key_id,
            "-authenticationKeyPath", str(self.credential.api_key_path),
            "-authenticationKeyIssuerID", self.credential.api_issuer_id,
        ]

    # Stages

    def archive(self) -> Path:
        project = self.project
        archive_path = project.project_directory / f"{project.project_name}.xcarchive"
        args = [
            "archive",
            "-project", str(project.project_path),
            "-scheme", project.scheme,
            "-destination", project.destination,
            "-configuration", project.configuration,
            "-archivePath", str(archive_path),
            *self._auth_args(),
        ]

        credential = self.credential
        team_id = credential.team_id if credential else None
        identity = credential.signing_identity if credential else None
        profile_uuid = credential.provisioning_profile_uuid if credential else None
        if team_id:
            args.append(f"DEVELOPMENT_TEAM={team_id}")
        if identity and credential:
            args += [
                f"CODE_SIGN_IDENTITY={identity}",
                f"OTHER_CODE_SIGN_FLAGS=--keychain {credential.keychain_path}",
            ]
        else:
            args.append("CODE_SIGN_IDENTITY=-")
        args.append(f"CODE_SIGN_STYLE={'Manual' if profile_uuid or identity else 'Automatic'}")
        if profile_uuid:
            args.append(f"PROVISIONING_PROFILE={profile_uuid}")
        else:
            args += ["AD_HOC_CODE_SIGNING_ALLOWED=YES", "-allowProvisioningUpdates"]
        if project.entitlements_path:
            args.append(f"CODE_SIGN_ENTITLEMENTS={project.entitlements_path}")
        if project.override_marketing_version:
            args.append(f"MARKETING_VERSION={project.version_string}")
        if project.build_number_reconciled:
            args.append(f"CURRENT_PROJECT_VERSION={project.build_number}")
        if project.platform == Platform.IOS:
            # keep debug symbols for symbolication
            args.append("COPY_PHASE_STRIP=NO")
        if project.platform == Platform.MACOS and not project.is_app_store_upload:
            args.append("ENABLE_HARDENED_RUNTIME=YES")
        if not log.DEBUG:
            args.append("-quiet")

        with log.group(f"Archiving {project.scheme}"):
            self.xcodebuild(args)
        project.archive_path = archive_path
        log.success(f"Archived: {archive_path}")
        return archive_path

    def export(self) -> BuildArtifact:
        project = self.project
        if not project.archive_path or not project.export_options_path:
            raise ReleaseError("Archive must be created before export")
        export_path = project.project_directory / project.project_name
        args = [
            "-exportArchive",
            "-archivePath", str(project.archive_path),
            "-exportPath", str(export_path),
            "-exportOptionsPlist", str(project.export_options_path),
            "-allowProvisioningUpdates",
            *self._auth_args(),
        ]
        if not log.DEBUG:
            args.append("-quiet")

        with log.group("Exporting archive"):
            self.xcodebuild(args)
        project.export_path = export_path
        artifact = find_artifact(export_path, project.platform, project.is_app_store_upload)
        log.success(f"Exported: {artifact.path}")
        return artifact

    def _find_signing_identity(self, prefix: str, policy: Optional[str] = "codesigning") -> SigningIdentity:
        """Find an identity in the run keychain, creating one if allowed"""
        credential = self._require_credential()
        args = ["find-identity", "-v"]
        if policy:
            args += ["-p", policy]
        args.append(str(credential.keychain_path))

        identity = find_identity(
            self.runner([SECURITY, *args], show_output=False).stdout or "", prefix, credential.team_id
        )
        if identity:
            return identity

        if not (self.inputs.create_certificates and self.credentials and self.client):
            raise FatalConfigurationError(
                f"Could not find {prefix} certificate for team {credential.team_id}"
            )
        self.credentials.create_additional_signing_certificate(CERTIFICATE_TYPES[prefix], self.client)
        identity = find_identity(
            self.runner([SECURITY, *args], show_output=False).stdout or "", prefix, credential.team_id
        )
        if not identity:
            raise ReleaseError(f"Created {prefix} certificate is not usable for signing")
        return identity

    def _require_credential(self) -> SigningCredential:
        if not self.credential:
            raise ReleaseError("Signing credential has not been established")
        return self.credential

    def _codesign(self, identity: str, path: Path, entitlements: Optional[Path], deep: bool = False) -> None:
        credential = self._require_credential()
        args = ["codesign", "--force"]
        if deep:
            args.append("--deep")
        args += [
            "--sign", identity,
            "--options", "runtime",
            "--timestamp",
            "--keychain", str(credential.keychain_path),
        ]
        if entitlements:
            args += ["--entitlements", str(entitlements)]
        self.runner([*args, str(path)], show_output=False)

    def verify_entitlements(self, app_path: Path, expected_path: Path) -> None:
        """Signed entitlements must equal the expected ones exactly"""
        expected = load_plist(expected_path)
        result = self.runner(
            ["codesign", "-d", "--entitlements", "-", "--xml", str(app_path)], show_output=False
        )
        output = (result.stdout or "").strip()
        actual = loads_plist(output) if output else {}
        differences = plist_diff(expected, actual)
        if differences:
            raise ReleaseError(
                f"Signed entitlements of {app_path.name} do not match {expected_path}:\n"
                + "\n".join(f"  {difference}" for difference in differences)
            )
        log.debug_log(f"Entitlements verified for {app_path.name}")

    def sign_and_notarize_macos(self, artifact: BuildArtifact) -> BuildArtifact:
        """Re-sign an exported app for direct distribution and package it"""
        project = self.project
        app_path = artifact.path
        identity = self._find_signing_identity(DEVELOPER_ID_APPLICATION)
        entitlements = project.entitlements_path

        if not log.QUIET:
            sign_tree = Tree(f"[bold]Signing {escape(app_path.name)}[/bold]")
            sign_tree.add(f"Certificate: {escape(identity.name)}")
            if entitlements:
                sign_tree.add(f"Entitlements: {escape(str(entitlements))}")
            console.print(sign_tree)

        with log.group(f"Signing {app_path.name}"):
            self.runner(["xattr", "-cr", str(app_path)], show_output=False)
            self.runner(["find", str(app_path), "-name", "._*", "-delete"], check=False, show_output=False)

            # Deepest payloads first so outer signatures cover signed code
            nested = sorted(
                (p for p in app_path.rglob("*") if p.suffix in NESTED_CODE_SUFFIXES and not p.is_symlink()),
                key=lambda p: len(p.parts),
                reverse=True,
            )
            for path in nested:
                self._codesign(identity.name, path, entitlements)
            self._codesign(identity.name, app_path, entitlements, deep=True)
            self.runner(["codesign", "--verify", "--deep", "--strict", str(app_path)], show_output=False)
            if entitlements:
                self.verify_entitlements(app_path, entitlements)
            log.success("App signed successfully")

        if project.archive_kind == ArchiveKind.PKG:
            artifact = self.build_installer_package(app_path)
            submit_path = None
        elif project.archive_kind == ArchiveKind.DMG:
            artifact = self.build_disk_image(app_path, identity)
            submit_path = None
        else:
            submit_path = app_path.parent / f"{app_path.stem}.zip"
            if submit_path.exists():
                submit_path.unlink()
            self.runner(["ditto", "-c", "-k", "--keepParent", str(app_path), str(submit_path)], show_output=False)

        if project.notarize:
            if not self.notarizer:
                raise ReleaseError("Notarization requires a signing credential")
            with log.group("Notarizing"):
                self.notarizer.notarize(artifact, submit_path=submit_path)
        else:
            self.skipped.append("Notarization")
        return artifact

    def build_installer_package(self, app_path: Path) -> BuildArtifact:
        installer = self._find_signing_identity(DEVELOPER_ID_INSTALLER, policy=None)
        export_path = app_path.parent
        unsigned_path = export_path / f"{app_path.stem}-unsigned.pkg"
        pkg_path = export_path / f"{app_path.stem}.pkg"
        keychain = str(self._require_credential().keychain_path)

        with log.group(f"Packaging {pkg_path.name}"):
            self.runner(
                ["productbuild", "--component", str(app_path), "/Applications", str(unsigned_path)],
                show_output=False,
            )
            try:
                self.runner(
                    ["productsign", "--sign", installer.name, "--keychain", keychain, str(unsigned_path), str(pkg_path)],
                    show_output=False,
                )
            finally:
                unsigned_path.unlink(missing_ok=True)
            self.runner(["pkgutil", "--check-signature", str(pkg_path)], show_output=False)
        log.success(f"Installer package signed: {pkg_path}")
        return BuildArtifact(pkg_path, ArtifactKind.INSTALLER_PACKAGE)

    def build_disk_image(self, app_path: Path, identity: SigningIdentity) -> BuildArtifact:
        export_path = app_path.parent
        dmg_path = export_path / f"{app_path.stem}.dmg"
        contents = export_path / "dmg_contents"

        with log.group(f"Creating {dmg_path.name}"):
            if contents.exists():
                shutil.rmtree(contents)
            contents.mkdir()
            try:
                self.runner(["cp", "-a", str(app_path), str(contents / app_path.name)], show_output=False)
                if dmg_path.exists():
                    dmg_path.unlink()
                self.runner(
                    ["hdiutil", "create", "-srcfolder", str(contents), "-volname", app_path.stem, "-format", "UDBZ", str(dmg_path)],
                    show_output=log.VERBOSE,
                )
            finally:
                shutil.rmtree(contents, ignore_errors=True)
            self.runner(["xattr", "-c", str(dmg_path)], show_output=False)
            self._codesign(identity.name, dmg_path, None)
        log.success(f"Disk image signed: {dmg_path}")
        return BuildArtifact(dmg_path, ArtifactKind.DISK_IMAGE)

    def _altool(self, args: List[str]) -> str:
        credential = self._require_credential()
        cmd = [
            "xcrun", "altool", *args,
            "--apiKey", credential.api_key_id,
            "--apiIssuer", credential.api_issuer_id,
            "--output-format", "json",
        ]
        try:
            return self.runner(cmd, show_output=log.VERBOSE).stdout or ""
        except ToolInvocationError as e:
            payload = _json_payload(e.stdout) or _json_payload(e.stderr)
            if payload is not None:
                console.print("[red]altool error:[/red]")
                console.print_json(data=payload)
            raise

    def validate(self, artifact: BuildArtifact) -> None:
        with log.group(f"Validating {artifact.path.name}"):
            self._altool(["--validate-app", "-f", str(artifact.path), "-t", self.project.platform.altool_type])
        log.success("Validation passed")

    def upload(self, artifact: BuildArtifact) -> None:
        project = self.project
        if not project.app_id:
            if not self.client:
                raise ReleaseError("Uploading requires an App Store Connect client")
            project.app_id = self.client.get_app_id(project.bundle_id)
        with log.group(f"Uploading {artifact.path.name}"):
            self._altool([
                "--upload-package", str(artifact.path),
                "-t", project.platform.altool_type,
                "--apple-id", project.app_id,
                "--bundle-id", project.bundle_id,
                "--bundle-version", project.build_number,
                "--bundle-short-version-string", project.version_string,
            ])
        log.success(f"Uploaded {project.version_string} ({project.build_number})")

    def run(self) -> BuildArtifact:
        """Execute every applicable stage and return the final artifact"""
        project = self.project
        self.prepare()
        self.archive()
        artifact = self.export()

        if project.platform == Platform.MACOS and not project.is_app_store_upload:
            artifact = self.sign_and_notarize_macos(artifact)

        if self.should_upload:
            self.validate(artifact)
            self.upload(artifact)
        else:
            self.skipped.append("App Store Connect upload")

        project.executable_path = artifact.path
        return artifact


def _json_payload(text: str) -> Optional[Any]:
    text = (text or "").strip()
    start = text.find("{")
    if start == -1:
        return None
    try:
        return json.loads(text[start:])
    except json.JSONDecodeError:
        return None
