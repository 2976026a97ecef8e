"""Data model shared by the pipeline stages"""

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from .errors import FatalConfigurationError, ReleaseError


class Platform(str, Enum):
    IOS = "iOS"
    MACOS = "macOS"
    TVOS = "tvOS"
    VISIONOS = "visionOS"
    WATCHOS = "watchOS"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        for platform in cls:
            if platform.value.lower() == value.strip().lower():
                return platform
        raise FatalConfigurationError(f"Unsupported platform: {value}")

    @property
    def api_name(self) -> str:
        """App Store Connect platform filter value"""
        names = {
            Platform.IOS: "IOS",
            Platform.MACOS: "MAC_OS",
            Platform.TVOS: "TV_OS",
            Platform.VISIONOS: "VISION_OS",
        }
        if self not in names:
            raise ReleaseError(f"Unsupported App Store Connect platform: {self.value}")
        return names[self]

    @property
    def altool_type(self) -> str:
        """Platform type tag accepted by altool"""
        types = {
            Platform.IOS: "ios",
            Platform.MACOS: "macos",
            Platform.TVOS: "appletvos",
            Platform.VISIONOS: "visionos",
        }
        if self not in types:
            raise ReleaseError(f"Unsupported upload platform: {self.value}")
        return types[self]


# SDK name (SDKROOT / PLATFORM_NAME) to platform
SDK_PLATFORMS = {
    "iphoneos": Platform.IOS,
    "macosx": Platform.MACOS,
    "appletvos": Platform.TVOS,
    "watchos": Platform.WATCHOS,
    "xros": Platform.VISIONOS,
}


class ArchiveKind(str, Enum):
    APP = "app"
    PKG = "pkg"
    DMG = "dmg"


class ArtifactKind(str, Enum):
    APP_BUNDLE = "app"
    INSTALLER_PACKAGE = "pkg"
    DISK_IMAGE = "dmg"
    MOBILE_ARCHIVE = "ipa"


class NotarizationStatus(str, Enum):
    NOT_NOTARIZED = "not-notarized"
    SUBMITTED = "submitted"
    ACCEPTED = "accepted"
    STAPLED = "stapled"


@dataclass
class SigningCredential:
    """Ephemeral signing context owned by the CredentialManager"""

    token: str
    keychain_path: Path
    api_key_id: str
    api_issuer_id: str
    api_key_path: Path
    api_private_key: str = field(repr=False, default="")
    team_id: Optional[str] = None
    signing_identity: Optional[str] = None
    provisioning_profile_uuid: Optional[str] = None


@dataclass
class ProjectDescriptor:
    project_path: Path
    project_name: str
    project_directory: Path
    platform: Platform
    scheme: str
    bundle_id: str
    destination: str = ""
    configuration: str = "Release"
    version_string: str = ""
    build_number: str = ""
    info_plist_path: Optional[Path] = None
    override_marketing_version: bool = False
    xcode_version: Tuple[int, ...] = ()
    app_id: Optional[str] = None
    archive_path: Optional[Path] = None
    export_path: Optional[Path] = None
    executable_path: Optional[Path] = None
    export_method: str = ""
    export_options_path: Optional[Path] = None
    entitlements_path: Optional[Path] = None
    credential: Optional[SigningCredential] = None
    auto_increment_build_number: bool = False
    archive_kind: ArchiveKind = ArchiveKind.APP
    notarize: bool = False
    build_number_reconciled: bool = False

    def __setattr__(self, name: str, value: object) -> None:
        # Identity of the target is fixed once resolved
        if name in ("bundle_id", "platform") and name in self.__dict__:
            if self.__dict__[name] != value:
                raise ReleaseError(f"{name} cannot change once resolved")
        super().__setattr__(name, value)

    def assign_build_number(self, build_number: str) -> None:
        """Set the reconciled build number; allowed once per run"""
        if self.build_number_reconciled:
            raise ReleaseError("Build number has already been reconciled for this run")
        self.build_number = build_number
        self.build_number_reconciled = True

    @property
    def is_app_store_upload(self) -> bool:
        return self.export_method in ("app-store", "app-store-connect")

    @property
    def is_steam_build(self) -> bool:
        """Third-party distribution build (signed directly, not via the App Store)"""
        return self.platform == Platform.MACOS and self.export_method in (
            "developer-id",
            "steam",
        )


BUILD_NUMBER_PATTERN = re.compile(r"^(?P<prefix>.*\.)?(?P<suffix>\d+)$")


@dataclass(frozen=True)
class BuildNumber:
    """A build number split into its dotted prefix and trailing integer

    "2.1.7" -> ("2.1.", 7); "42" -> ("", 42). A missing remote build
    number is represented by BuildNumber.absent() with suffix -1.
    """

    prefix: str
    suffix: int

    @classmethod
    def absent(cls) -> "BuildNumber":
        return cls("", -1)

    @property
    def is_absent(self) -> bool:
        return self.suffix < 0

    def __str__(self) -> str:
        return f"{self.prefix}{self.suffix}"


@dataclass
class VersionState:
    local: BuildNumber
    remote: BuildNumber
    next: BuildNumber

    @property
    def changed(self) -> bool:
        return self.next != self.local


@dataclass
class BuildArtifact:
    path: Path
    kind: ArtifactKind
    notarization: NotarizationStatus = NotarizationStatus.NOT_NOTARIZED
