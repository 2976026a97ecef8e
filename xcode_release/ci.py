"""CI runtime plumbing: job outputs, temp locations and cross-phase state"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from rich.markup import escape  # type: ignore[import]

from .console import console, debug_log, in_github_actions
from .errors import FatalConfigurationError

STATE_FILE_NAME = "xcode-release-state.json"

# Together these identify one job attempt on one runner
JOB_ENVIRONMENT = ("GITHUB_RUN_ID", "GITHUB_RUN_ATTEMPT", "GITHUB_JOB", "RUNNER_NAME")


def runner_temp() -> Path:
    """Per-job scratch directory (RUNNER_TEMP on GitHub runners)"""
    return Path(os.environ.get("RUNNER_TEMP") or tempfile.gettempdir())


def job_key() -> str:
    """Identifier of the current CI job, empty outside CI"""
    parts = [os.environ.get(name, "").strip() for name in JOB_ENVIRONMENT]
    key = "-".join(part for part in parts if part)
    return re.sub(r"[^A-Za-z0-9_.-]", "_", key)


def default_state_path() -> Path:
    """State file location, distinct for every job sharing a machine"""
    key = job_key()
    name = f"xcode-release-state-{key}.json" if key else STATE_FILE_NAME
    return runner_temp() / name


def workspace_root() -> Path:
    return Path(os.environ.get("GITHUB_WORKSPACE") or os.getcwd())


def set_output(name: str, value: str) -> None:
    """Expose a machine-readable job output"""
    output_file = os.environ.get("GITHUB_OUTPUT")
    if output_file:
        with open(output_file, "a", encoding="utf-8") as f:
            f.write(f"{name}={value}\n")
        debug_log(f"Output {name}={value}")
    elif not in_github_actions():
        console.print(f"[bold]{name}[/bold]: {escape(str(value))}")


class StateStore:
    """Key-value record shared between the main and post phases

    The whole record is rewritten atomically on every update, so whatever
    phase one managed to create is always discoverable by phase two, even
    if phase one died halfway through.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_state_path()
        self._data: Dict[str, Any] = {}

    def load(self) -> "StateStore":
        if self.path.exists():
            try:
                self._data = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise FatalConfigurationError(
                    f"State file {self.path} is corrupt: {e}"
                ) from e
        else:
            self._data = {}
        return self

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def record(self, **values: Any) -> None:
        """Merge values into the record and persist it"""
        self._data.update(values)
        self._write()

    def append(self, key: str, value: Any) -> None:
        """Append to a list-valued key and persist it"""
        items = list(self._data.get(key) or [])
        if value not in items:
            items.append(value)
        self.record(**{key: items})

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2)
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def clear(self) -> None:
        """Forget the record and delete the file"""
        self._data = {}
        if self.path.exists():
            self.path.unlink()
