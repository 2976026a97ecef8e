"""Parsers for human-readable tool output

Everything that scrapes text printed by security, xcodebuild or xcodes
lives here and returns typed records, so callers never see raw output.
Regex scraping of tool output is inherently fragile; prefer a tool's
JSON/plist mode wherever one exists (xcodebuild -list -json, notarytool
--output-format plist).
"""

import json
import plistlib
import re
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Set, Tuple
from xml.parsers.expat import ExpatError

from .errors import ReleaseError

IDENTITY_PATTERN = re.compile(r'^\s*\d+\)\s+(?P<hash>\w+)\s+"(?P<name>[^"]+)"', re.MULTILINE)
TEAM_ID_PATTERN = re.compile(r"\((?P<team_id>[A-Z0-9]{10})\)\s*$")
BUILD_SETTING_PATTERN = re.compile(r"^\s*(?P<key>[A-Z_][A-Z0-9_]*) = (?P<value>.*)$", re.MULTILINE)
XCODE_VERSION_PATTERN = re.compile(r"^Xcode (?P<version>\d+(?:\.\d+)*)", re.MULTILINE)
XCODES_LINE_PATTERN = re.compile(r"^(?P<version>\d+\.\d+(?:\.\d+)?)(?P<rest>.*)$", re.MULTILINE)
PROFILE_UUID_PATTERN = re.compile(rb"<key>UUID</key>\s*<string>([^<]+)</string>")
DIAGNOSTICS_PATTERN = re.compile(
    r"(?:Created bundle at path|Diagnostic logs? (?:is|are) available at)\s*"
    r"[\"']?(?P<path>/[^\"'\n]+?\.(?:xcdistributionlogs|xcresult))"
)


class SigningIdentity(NamedTuple):
    hash: str
    name: str


class XcodeRelease(NamedTuple):
    version: str
    parts: Tuple[int, ...]
    selected: bool = False


def version_tuple(version: str) -> Tuple[int, ...]:
    """Parse a dotted numeric version, ignoring anything after the numbers"""
    match = re.match(r"^\s*(\d+(?:\.\d+)*)", version)
    if not match:
        raise ReleaseError(f"Invalid version: {version!r}")
    return tuple(int(part) for part in match.group(1).split("."))


def parse_identities(output: str) -> List[SigningIdentity]:
    """Parse `security find-identity -v -p codesigning` output"""
    return [
        SigningIdentity(match.group("hash"), match.group("name"))
        for match in IDENTITY_PATTERN.finditer(output)
    ]


def find_identity(
    output: str, prefix: str, team_id: Optional[str] = None
) -> Optional[SigningIdentity]:
    """Find the first identity whose name starts with prefix (and matches team_id)"""
    for identity in parse_identities(output):
        if not identity.name.startswith(prefix):
            continue
        if team_id and team_id_from_identity(identity.name) != team_id:
            continue
        return identity
    return None


def team_id_from_identity(name: str) -> Optional[str]:
    """'Apple Distribution: Example Corp (ABCDE12345)' -> 'ABCDE12345'"""
    match = TEAM_ID_PATTERN.search(name)
    return match.group("team_id") if match else None


def parse_build_settings(output: str) -> Dict[str, str]:
    """Parse `xcodebuild -showBuildSettings` text; the first target wins"""
    settings: Dict[str, str] = {}
    for match in BUILD_SETTING_PATTERN.finditer(output):
        settings.setdefault(match.group("key"), match.group("value").strip())
    return settings


def parse_scheme_list(output: str) -> List[str]:
    """Parse `xcodebuild -list -json` output into scheme names"""
    try:
        info = json.loads(output)
    except json.JSONDecodeError as e:
        raise ReleaseError(f"Could not parse xcodebuild -list output: {e}") from e
    container = info.get("project") or info.get("workspace") or {}
    return list(container.get("schemes") or [])


def parse_xcode_version(output: str) -> Tuple[int, ...]:
    """Parse `xcodebuild -version` output"""
    match = XCODE_VERSION_PATTERN.search(output)
    if not match:
        raise ReleaseError(f"Could not determine Xcode version from: {output.strip()}")
    return version_tuple(match.group("version"))


def parse_xcodes_list(output: str, include_prereleases: bool = False) -> List[XcodeRelease]:
    """Parse `xcodes installed` / `xcodes list` output

    Example lines:
        16.1 (16B40) (Selected) /Applications/Xcode.app
        14.3 Beta 2 (14E5207e)
    """
    releases: List[XcodeRelease] = []
    for match in XCODES_LINE_PATTERN.finditer(output):
        rest = match.group("rest")
        if not include_prereleases and ("Beta" in rest or "Release Candidate" in rest):
            continue
        version = match.group("version")
        releases.append(XcodeRelease(version, version_tuple(version), "(Selected)" in rest))
    return releases


def extract_profile_uuid(content: bytes) -> Optional[str]:
    """Read the UUID from a provisioning profile's embedded property list"""
    start = content.find(b"<?xml")
    end = content.find(b"</plist>")
    if start != -1 and end != -1:
        try:
            embedded = plistlib.loads(content[start : end + len(b"</plist>")])
            uuid = embedded.get("UUID")
            if uuid:
                return str(uuid)
        except (plistlib.InvalidFileException, ExpatError, ValueError):
            pass
    # Malformed embedded plist; fall back to scanning for the key directly
    match = PROFILE_UUID_PATTERN.search(content)
    return match.group(1).decode("utf-8").strip() if match else None


def find_diagnostic_bundles(output: str) -> List[Path]:
    """Find diagnostic bundle paths that xcodebuild prints on failure"""
    paths: List[Path] = []
    for match in DIAGNOSTICS_PATTERN.finditer(output or ""):
        path = Path(match.group("path").strip())
        if path not in paths:
            paths.append(path)
    return paths


def parse_sdk_platforms(output: str) -> Set[str]:
    """Parse `xcodebuild -showsdks -json` into SDK platform names"""
    try:
        sdks = json.loads(output)
    except json.JSONDecodeError as e:
        raise ReleaseError(f"Could not parse xcodebuild -showsdks output: {e}") from e
    return {sdk["platform"] for sdk in sdks if sdk.get("platform")}
