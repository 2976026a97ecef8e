"""Input resolution: CLI flags, GitHub Actions inputs and the YAML config file"""

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore[import]

from .errors import FatalConfigurationError

DEFAULT_CONFIG_FILE = "xcode-release.yaml"
TRUE_VALUES = {"true", "yes", "1", "on"}
FALSE_VALUES = {"false", "no", "0", "off", ""}


class Config:
    """Configuration container for values loaded from the YAML file"""

    def __init__(self, config_dict: Dict[str, Any]):
        self._config = config_dict

    def __getitem__(self, key: str) -> Any:
        """Get a configuration value"""
        return self._config[key]

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value with a default"""
        return self._config.get(key, default)


def load_config(config_path: Optional[Path] = None) -> Config:
    """Load configuration from YAML file

    An explicitly requested file must exist; the default file is optional
    because CI jobs usually pass everything as action inputs.
    """
    explicit = config_path is not None
    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_FILE)

    if not config_path.exists():
        if explicit:
            raise FatalConfigurationError(f"Configuration file not found: {config_path}")
        return Config({})

    try:
        with open(config_path, "r") as f:
            config_dict = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise FatalConfigurationError(f"Failed to parse configuration file: {e}") from e
    except OSError as e:
        raise FatalConfigurationError(f"Failed to load configuration file: {e}") from e

    if not config_dict:
        raise FatalConfigurationError("Configuration file is empty")
    if not isinstance(config_dict, dict):
        raise FatalConfigurationError("Configuration file must contain a mapping")

    return Config(config_dict)


def parse_bool(value: Any, name: str = "value") -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    raise FatalConfigurationError(f"Invalid boolean for {name}: {value!r}")


@dataclass
class Inputs:
    """Resolved inputs for one release run"""

    app_store_connect_key: str = field(repr=False, default="")
    app_store_connect_key_id: str = ""
    app_store_connect_issuer_id: str = ""
    certificate: str = field(repr=False, default="")
    certificate_password: str = field(repr=False, default="")
    signing_identity: str = ""
    team_id: str = ""
    provisioning_profile: str = field(repr=False, default="")
    provisioning_profile_name: str = ""
    xcode_version: str = ""
    working_directory: Optional[Path] = None
    project_path: str = ""
    scheme: str = ""
    platform: str = ""
    destination: str = ""
    configuration: str = "Release"
    bundle_id: str = ""
    platform_sdk_version: str = ""
    export_option: str = "development"
    export_option_plist: str = ""
    entitlements_plist: str = ""
    auto_increment_build_number: bool = False
    archive_type: str = "app"
    notarize: Optional[bool] = None
    upload: Optional[bool] = None
    whats_new: str = ""
    test_groups: List[str] = field(default_factory=list)
    submit_for_review: bool = False
    create_certificates: bool = False
    poll_attempts: int = 180
    poll_interval: float = 30.0
    locale: str = "en-US"
    state_file: Optional[Path] = None


# name -> (kind, help); kind is one of str, bool, optbool, int, float, path, list
OPTIONS: Dict[str, Any] = {
    "app-store-connect-key": ("str", "Base64 encoded App Store Connect API private key (.p8)"),
    "app-store-connect-key-id": ("str", "App Store Connect API key id"),
    "app-store-connect-issuer-id": ("str", "App Store Connect API issuer id"),
    "certificate": ("str", "Base64 encoded signing certificate (.p12)"),
    "certificate-password": ("str", "Password for the signing certificate"),
    "signing-identity": ("str", "Code signing identity name"),
    "team-id": ("str", "Apple developer team id"),
    "provisioning-profile": ("str", "Base64 encoded provisioning profile"),
    "provisioning-profile-name": ("str", "Provisioning profile file name (.mobileprovision/.provisionprofile)"),
    "xcode-version": ("str", "Xcode version to select (latest, 16.x, 16.1)"),
    "working-directory": ("path", "Workspace root (default: GITHUB_WORKSPACE or cwd)"),
    "project-path": ("str", "Glob used to locate the .xcodeproj"),
    "scheme": ("str", "Scheme to build"),
    "platform": ("str", "Platform override (iOS, macOS, tvOS, visionOS)"),
    "destination": ("str", "xcodebuild destination (default: generic/platform=<platform>)"),
    "configuration": ("str", "Build configuration (default: Release)"),
    "bundle-id": ("str", "Bundle identifier override"),
    "platform-sdk-version": ("str", "Platform SDK build version to download if missing"),
    "export-option": ("str", "Export method: development, ad-hoc, app-store, developer-id, steam"),
    "export-option-plist": ("str", "Use this export options plist verbatim"),
    "entitlements-plist": ("str", "Entitlements plist override"),
    "auto-increment-build-number": ("bool", "Bump the build number past the latest App Store Connect build"),
    "archive-type": ("str", "macOS archive type: app, pkg or dmg"),
    "notarize": ("optbool", "Notarize macOS output"),
    "upload": ("optbool", "Upload to App Store Connect"),
    "whats-new": ("str", "TestFlight release notes (default: latest commit)"),
    "test-groups": ("list", "Comma separated TestFlight group names"),
    "submit-for-review": ("bool", "Submit the build for beta review and auto-notify testers"),
    "create-certificates": ("bool", "Create missing Developer ID certificates through App Store Connect"),
    "poll-attempts": ("int", "Maximum polls while App Store Connect processes the build"),
    "poll-interval": ("float", "Seconds between polls"),
    "locale": ("str", "Locale for release notes"),
    "state-file": ("path", "Cross-phase state file"),
}

REQUIRED = ("app-store-connect-key", "app-store-connect-key-id", "app-store-connect-issuer-id")


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser"""
    parser = argparse.ArgumentParser(
        prog="xcode-release",
        description="Archive, sign, notarize and upload an Xcode project",
        epilog="""
Every option may also be supplied as a GitHub Actions input (INPUT_<NAME>)
or as a key in the YAML configuration file.
        """,
    )
    parser.add_argument(
        "--config", type=Path, help=f"Path to configuration file (default: {DEFAULT_CONFIG_FILE})"
    )
    parser.add_argument(
        "--post", action="store_true", help="Run the cleanup phase instead of the release"
    )
    for name, (_, help_text) in OPTIONS.items():
        parser.add_argument(f"--{name}", dest=name.replace("-", "_"), help=help_text)
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Show detailed command output"
    )
    parser.add_argument(
        "--quiet", "-q", action="store_true", help="Only show critical errors and final result"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Show full stack traces on errors"
    )
    return parser


def _raw_value(name: str, args: argparse.Namespace, config: Config) -> Optional[Any]:
    value = getattr(args, name.replace("-", "_"), None)
    if value is not None:
        return value
    env_value = os.environ.get(f"INPUT_{name.upper()}")
    if env_value:
        return env_value
    return config.get(name)


def _convert(name: str, kind: str, value: Any) -> Any:
    if kind == "bool":
        return parse_bool(value, name)
    if kind == "optbool":
        return None if value is None or str(value).strip() == "" else parse_bool(value, name)
    if kind == "int":
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise FatalConfigurationError(f"Invalid integer for {name}: {value!r}") from e
    if kind == "float":
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise FatalConfigurationError(f"Invalid number for {name}: {value!r}") from e
    if kind == "path":
        return Path(str(value)).expanduser()
    if kind == "list":
        if isinstance(value, list):
            items = value
        else:
            items = str(value).split(",")
        return [str(item).strip() for item in items if str(item).strip()]
    return str(value)


def resolve_inputs(
    args: argparse.Namespace, config: Optional[Config] = None, require_credentials: bool = True
) -> Inputs:
    """Merge CLI flags, action inputs and config file values"""
    config = config or Config({})
    inputs = Inputs()
    for name, (kind, _) in OPTIONS.items():
        value = _raw_value(name, args, config)
        if value is None:
            continue
        setattr(inputs, name.replace("-", "_"), _convert(name, kind, value))

    if require_credentials:
        missing = [name for name in REQUIRED if not getattr(inputs, name.replace("-", "_"))]
        if missing:
            raise FatalConfigurationError(f"Missing required inputs: {', '.join(missing)}")

    if inputs.archive_type not in ("app", "pkg", "dmg"):
        raise FatalConfigurationError(f"Invalid archive-type: {inputs.archive_type}")
    if inputs.poll_attempts < 1:
        raise FatalConfigurationError("poll-attempts must be at least 1")
    return inputs
