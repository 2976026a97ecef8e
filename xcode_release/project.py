"""Locate the Xcode project and work out what to build"""

import glob
import re
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rich.markup import escape  # type: ignore[import]

from . import console as log
from .config import Inputs
from .errors import FatalConfigurationError, ReleaseError, ToolInvocationError
from .models import SDK_PLATFORMS, Platform, ProjectDescriptor, SigningCredential
from .parsing import parse_build_settings, parse_scheme_list, parse_sdk_platforms
from .plists import dump_plist, load_plist
from .process import XCODEBUILD, Runner, run_command

DEFAULT_PROJECT_GLOB = "**/*.xcodeproj"

# Generated or dependency-manager projects that are never the product
EXCLUDED_PROJECTS = ("GameAssembly", "UnityFramework", "Pods")
EXCLUDED_SCHEMES = ("GameAssembly", "UnityFramework", "Pods")
PREFERRED_SCHEMES = ("Unity-iPhone",)

UNSET_BUILD_SETTING = ("", "NO")
VARIABLE_PATTERN = re.compile(r"\$[({](?P<name>\w+)(?::[^)}]*)?[)}]")
SDK_NAME_PATTERN = re.compile(r"(?P<name>[a-z]+)[\d.]*(?:\.sdk)?$")


def normalize_short_version(version: str) -> str:
    """Force a marketing version into exactly major.minor.patch

    "1.2.3.4" -> "1.2.3", "1.2" -> "1.2.0"; already normalized values are
    returned unchanged.
    """
    parts = version.strip().split(".")
    if not parts or not all(part.isdigit() for part in parts):
        raise FatalConfigurationError(f"Invalid version string: {version!r}")
    parts = (parts + ["0", "0"])[:3]
    return ".".join(str(int(part)) for part in parts)


def select_scheme(schemes: Sequence[str]) -> Optional[str]:
    """Pick the application scheme out of everything the project lists"""
    for preferred in PREFERRED_SCHEMES:
        if preferred in schemes:
            return preferred
    for scheme in schemes:
        if scheme in EXCLUDED_SCHEMES or "Test" in scheme:
            continue
        return scheme
    return None


def expand_build_variables(value: str, settings: Dict[str, str]) -> str:
    """Expand $(VAR) and ${VAR} references using the build settings"""
    return VARIABLE_PATTERN.sub(lambda m: settings.get(m.group("name"), m.group(0)), value)


def _is_excluded_project(path: Path) -> bool:
    return path.stem in EXCLUDED_PROJECTS or "DerivedData" in path.parts


class ProjectResolver:
    def __init__(
        self,
        runner: Runner = run_command,
        workspace: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
        sdk_download_attempts: int = 3,
        sdk_retry_interval: float = 30.0,
    ):
        self.runner = runner
        self.workspace = workspace or Path.cwd()
        self.sleep = sleep
        self.sdk_download_attempts = sdk_download_attempts
        self.sdk_retry_interval = sdk_retry_interval
        self._settings_text: Dict[Tuple[str, str], str] = {}

    def _xcodebuild(self, *args: str) -> str:
        return self.runner([XCODEBUILD, *args], show_output=log.DEBUG).stdout or ""

    def locate(self, search_glob: Optional[str] = None) -> Path:
        """Find the project file; the first match in path order wins"""
        pattern = search_glob or DEFAULT_PROJECT_GLOB
        if not Path(pattern).is_absolute():
            pattern = str(self.workspace / pattern)
        log.debug_log(f"Searching for projects: {pattern}")

        matches = sorted(Path(p) for p in glob.glob(pattern, recursive=True))
        for path in matches:
            if path.suffix != ".xcodeproj" or _is_excluded_project(path):
                continue
            log.debug_log(f"Found Xcode project: {path}")
            return path
        raise FatalConfigurationError(
            f"Invalid project-path! Unable to find .xcodeproj matching {pattern}"
        )

    def resolve_scheme(self, project_path: Path, explicit_scheme: Optional[str] = None) -> str:
        output = self._xcodebuild("-list", "-project", str(project_path), "-json")
        schemes = parse_scheme_list(output)
        if not schemes:
            raise FatalConfigurationError("No schemes found in the project")
        log.debug_log("Available schemes:\n" + "\n".join(f"  > {s}" for s in schemes))

        if explicit_scheme:
            if explicit_scheme not in schemes:
                log.warning(f"Scheme {explicit_scheme} is not listed by the project")
            return explicit_scheme

        scheme = select_scheme(schemes)
        if not scheme:
            raise FatalConfigurationError("Unable to determine the scheme to build")
        return scheme

    def build_settings_text(self, project_path: Path, scheme: str) -> str:
        key = (str(project_path), scheme)
        if key not in self._settings_text:
            self._settings_text[key] = self._xcodebuild(
                "-project", str(project_path), "-scheme", scheme, "-showBuildSettings"
            )
        return self._settings_text[key]

    def resolve_platform(
        self, project_path: Path, scheme: str, explicit_platform: Optional[str] = None
    ) -> Platform:
        if explicit_platform:
            return Platform.parse(explicit_platform)

        settings = parse_build_settings(self.build_settings_text(project_path, scheme))
        for key in ("SDKROOT", "PLATFORM_NAME"):
            value = settings.get(key, "")
            match = SDK_NAME_PATTERN.search(Path(value).name.lower()) if value else None
            if match and match.group("name") in SDK_PLATFORMS:
                log.debug_log(f"${key}: {value}")
                return SDK_PLATFORMS[match.group("name")]
        raise FatalConfigurationError(
            "Unable to determine the platform to build for; set the platform input"
        )

    def resolve_bundle_identifier(
        self, build_settings_text: str, explicit_id: Optional[str] = None
    ) -> str:
        if explicit_id:
            return explicit_id
        settings = parse_build_settings(build_settings_text)
        bundle_id = expand_build_variables(settings.get("PRODUCT_BUNDLE_IDENTIFIER", ""), settings)
        if bundle_id in UNSET_BUILD_SETTING or VARIABLE_PATTERN.search(bundle_id):
            raise FatalConfigurationError(
                "Unable to resolve PRODUCT_BUNDLE_IDENTIFIER; set the bundle-id input"
            )
        return bundle_id

    def _read_versions(
        self, info_plist_path: Optional[Path], settings: Dict[str, str]
    ) -> Tuple[str, str, bool]:
        """(short version, build number, whether the build must override MARKETING_VERSION)"""
        info: Dict[str, object] = {}
        if info_plist_path is not None:
            try:
                info = load_plist(info_plist_path)
            except (OSError, ReleaseError) as e:
                raise FatalConfigurationError(f"Failed to read {info_plist_path}: {e}") from e

        plist_short = str(info.get("CFBundleShortVersionString") or "")
        raw_short = plist_short or settings.get("MARKETING_VERSION", "")
        raw_build = str(info.get("CFBundleVersion") or settings.get("CURRENT_PROJECT_VERSION", ""))
        short_version = expand_build_variables(raw_short, settings)
        build_number = expand_build_variables(raw_build, settings)
        if not short_version or VARIABLE_PATTERN.search(short_version):
            source = info_plist_path or "the build settings"
            raise FatalConfigurationError(f"No marketing version in {source}")

        normalized = normalize_short_version(short_version)
        if normalized == short_version:
            return normalized, build_number, False

        log.info(f"Normalizing version {short_version} -> {normalized}")
        if info_plist_path is not None and plist_short and not VARIABLE_PATTERN.search(plist_short):
            info["CFBundleShortVersionString"] = normalized
            dump_plist(info, info_plist_path)
            return normalized, build_number, False
        # Backed by the build setting; keep the reference and override at build time
        return normalized, build_number, True

    def read_version_metadata(
        self, info_plist_path: Optional[Path], settings: Optional[Dict[str, str]] = None
    ) -> Tuple[str, str]:
        """Read (short version, build number), normalizing the short version

        Values come from the Info.plist when there is one and from the
        MARKETING_VERSION and CURRENT_PROJECT_VERSION build settings
        otherwise. A literal short version is rewritten in place only when
        normalization changed it, so reading a normalized project is a no-op.
        """
        short_version, build_number, _ = self._read_versions(info_plist_path, settings or {})
        return short_version, build_number

    def write_build_number(self, project: ProjectDescriptor) -> None:
        """Persist the build number into the Info.plist if it holds a literal one"""
        if not project.info_plist_path:
            return
        info = load_plist(project.info_plist_path)
        current = str(info.get("CFBundleVersion", ""))
        if not current or VARIABLE_PATTERN.search(current) or current == project.build_number:
            # CURRENT_PROJECT_VERSION is passed to the archive instead
            return
        info["CFBundleVersion"] = project.build_number
        dump_plist(info, project.info_plist_path)
        log.debug_log(f"CFBundleVersion -> {project.build_number}")

    def ensure_platform_sdk(self, platform: Platform, build_version: Optional[str] = None) -> None:
        """Download the platform SDK on demand if this Xcode lacks it"""
        if platform == Platform.MACOS:
            return
        sdk_names = {name for name, p in SDK_PLATFORMS.items() if p == platform}
        if sdk_names & parse_sdk_platforms(self._xcodebuild("-showsdks", "-json")):
            return

        args = ["-downloadPlatform", platform.value]
        if build_version:
            args += ["-buildVersion", build_version]
        for attempt in range(1, self.sdk_download_attempts + 1):
            log.info(f"Downloading {platform.value} platform (attempt {attempt}/{self.sdk_download_attempts})...")
            try:
                self.runner([XCODEBUILD, *args], show_output=True)
                return
            except ToolInvocationError as e:
                if attempt == self.sdk_download_attempts:
                    raise
                log.warning(f"Platform download failed: {e}")
                self.sleep(self.sdk_retry_interval)

    def _info_plist_path(self, project_directory: Path, settings: Dict[str, str]) -> Optional[Path]:
        """The Info.plist on disk, or None for a generated one"""
        info_plist = expand_build_variables(settings.get("INFOPLIST_FILE", ""), settings)
        if not info_plist:
            log.debug_log("No INFOPLIST_FILE; reading versions from the build settings")
            return None
        path = Path(info_plist)
        if not path.is_absolute():
            path = project_directory / path
        if not path.exists():
            log.warning(f"{path} does not exist; reading versions from the build settings")
            return None
        return path

    def resolve(
        self,
        inputs: Inputs,
        credential: Optional[SigningCredential] = None,
        xcode_version: Tuple[int, ...] = (),
    ) -> ProjectDescriptor:
        """Produce the descriptor every later stage works from"""
        with log.group("Resolving project"):
            project_path = self.locate(inputs.project_path or None)
            project_directory = project_path.parent
            scheme = self.resolve_scheme(project_path, inputs.scheme or None)
            platform = self.resolve_platform(project_path, scheme, inputs.platform or None)
            self.ensure_platform_sdk(platform, inputs.platform_sdk_version or None)

            settings_text = self.build_settings_text(project_path, scheme)
            settings = parse_build_settings(settings_text)
            bundle_id = self.resolve_bundle_identifier(settings_text, inputs.bundle_id or None)
            info_plist_path = self._info_plist_path(project_directory, settings)
            version_string, build_number, override_marketing_version = self._read_versions(
                info_plist_path, settings
            )

            project = ProjectDescriptor(
                project_path=project_path,
                project_name=project_path.stem,
                project_directory=project_directory,
                platform=platform,
                scheme=scheme,
                bundle_id=bundle_id,
                destination=inputs.destination or f"generic/platform={platform.value}",
                configuration=inputs.configuration or "Release",
                version_string=version_string,
                build_number=build_number,
                info_plist_path=info_plist_path,
                override_marketing_version=override_marketing_version,
                xcode_version=xcode_version,
                credential=credential,
                auto_increment_build_number=inputs.auto_increment_build_number,
            )

            rows: List[Tuple[str, str]] = [
                ("Project", str(project_path)),
                ("Scheme", scheme),
                ("Platform", platform.value),
                ("Bundle ID", bundle_id),
                ("Version", f"{version_string} ({build_number})"),
                ("Destination", project.destination),
            ]
            for label, value in rows:
                log.info(f"[dim]{label}:[/dim] {escape(value)}")
            return project
