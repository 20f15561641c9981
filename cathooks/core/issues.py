"""Issue tree model.

Layout under `.claude/cat/issues`:

    v1/                         major container (may hold major-only issues)
      v1.0/                     minor container
        STATE.md                version dependencies
        PLAN.md                 post-condition markers: `- [issue] <name>`
        some-issue/STATE.md
        v1.0.3/                 patch container
          hotfix/STATE.md

Issue ids are `<major>[.<minor>[.<patch>]]-<name>`. The tree is read-only
here; agents edit the Markdown files directly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator

from instrukt_ai_logging import get_logger

from cathooks.constants import PLAN_FILE_NAME, STATE_FILE_NAME
from cathooks.errors import IssueStateError

logger = get_logger(__name__)

QUALIFIED_ISSUE_ID_RE = re.compile(r"^(\d+)(?:\.(\d+)(?:\.(\d+))?)?-([a-zA-Z][a-zA-Z0-9_-]*)$")
BARE_NAME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]*$")
VERSION_ID_RE = re.compile(r"^(\d+)(?:\.(\d+)(?:\.(\d+))?)?$")
MAJOR_DIR_RE = re.compile(r"^v(\d+)$")
MINOR_DIR_RE = re.compile(r"^v(\d+)\.(\d+)$")
PATCH_DIR_RE = re.compile(r"^v(\d+)\.(\d+)\.(\d+)$")
VERSION_DIR_RE = re.compile(r"^v\d+(\.\d+){0,2}$")

_STATUS_PREFIX = "- **Status:**"
_DEPENDENCIES_PREFIX = "- **Dependencies:**"
_DECOMPOSED_HEADER_RE = re.compile(r"^## Decomposed Into")
_SECTION_HEADER_RE = re.compile(r"^## ")
_SUBISSUE_ITEM_RE = re.compile(r"^- ([^(\s]+)")
_POSTCONDITION_RE = re.compile(r"^- \[issue\] (.+)$")

VersionKey = tuple[int, ...]


class IssueStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    CLOSED = "closed"

    @classmethod
    def normalize(cls, raw: str) -> "IssueStatus":
        """Map a STATE.md status (including aliases) to its canonical value."""
        value = raw.strip().lower()
        value = _STATUS_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise IssueStateError(f"Unknown status '{raw.strip()}'. Valid values: {valid}") from None

    @property
    def is_claimable(self) -> bool:
        return self in (IssueStatus.OPEN, IssueStatus.IN_PROGRESS)


_STATUS_ALIASES = {
    "pending": IssueStatus.OPEN.value,
    "active": IssueStatus.IN_PROGRESS.value,
    "in_progress": IssueStatus.IN_PROGRESS.value,
    "completed": IssueStatus.CLOSED.value,
    "complete": IssueStatus.CLOSED.value,
    "done": IssueStatus.CLOSED.value,
}


@dataclass(frozen=True)
class IssueRef:
    """Parsed issue id. Empty `minor`/`patch` mean the component is absent."""

    major: str
    minor: str
    patch: str
    name: str

    @property
    def version(self) -> str:
        return ".".join(part for part in (self.major, self.minor, self.patch) if part)

    @property
    def issue_id(self) -> str:
        return f"{self.version}-{self.name}"

    @property
    def version_key(self) -> VersionKey:
        return tuple(int(part) for part in (self.major, self.minor, self.patch) if part)

    def version_fields(self) -> dict[str, str]:
        """Version components for JSON output; absent components are omitted, not emptied."""
        fields = {"major": self.major}
        if self.minor:
            fields["minor"] = self.minor
            if self.patch:
                fields["patch"] = self.patch
        return fields


def parse_issue_id(issue_id: str) -> IssueRef | None:
    match = QUALIFIED_ISSUE_ID_RE.match(issue_id)
    if not match:
        return None
    major, minor, patch, name = match.groups()
    return IssueRef(major, minor or "", patch or "", name)


def version_dir(issues_root: Path, major: str, minor: str = "", patch: str = "") -> Path:
    path = issues_root / f"v{major}"
    if not minor:
        return path
    path = path / f"v{major}.{minor}"
    if not patch:
        return path
    return path / f"v{major}.{minor}.{patch}"


@dataclass
class IssueState:
    status: IssueStatus
    dependencies: list[str] = field(default_factory=list)
    decomposed_into: list[str] = field(default_factory=list)

    @property
    def is_decomposed(self) -> bool:
        return bool(self.decomposed_into)


def parse_dependencies(lines: list[str]) -> list[str]:
    """Read `- **Dependencies:** [a, b]`. `[]`, `none` and blanks mean no dependencies."""
    for line in lines:
        if not line.startswith(_DEPENDENCIES_PREFIX):
            continue
        content = line[len(_DEPENDENCIES_PREFIX) :].strip()
        if not content.startswith("[") or "]" not in content:
            return []
        inner = content[1 : content.rindex("]")]
        deps: list[str] = []
        for part in inner.split(","):
            dep = part.strip().strip('"').strip("'")
            if dep:
                deps.append(dep)
        return deps
    return []


def parse_decomposed_into(lines: list[str]) -> list[str]:
    names: list[str] = []
    in_section = False
    for line in lines:
        if _DECOMPOSED_HEADER_RE.match(line):
            in_section = True
            continue
        if not in_section:
            continue
        if _SECTION_HEADER_RE.match(line):
            break
        match = _SUBISSUE_ITEM_RE.match(line)
        if match:
            name = match.group(1).strip().replace("(", "").replace(")", "")
            if name:
                names.append(name)
    return names


def parse_state(text: str, source: Path | str = "STATE.md") -> IssueState:
    """Parse an issue STATE.md.

    Raises:
        IssueStateError: When the Status line is missing or holds an unknown value.
    """
    lines = text.splitlines()
    raw_status: str | None = None
    for line in lines:
        if line.startswith(_STATUS_PREFIX):
            raw_status = line[len(_STATUS_PREFIX) :].strip()
            break
    if raw_status is None:
        raise IssueStateError(f"Status field missing in {source}. STATE.md must contain a '{_STATUS_PREFIX}' line.")
    try:
        status = IssueStatus.normalize(raw_status)
    except IssueStateError as e:
        raise IssueStateError(f"{e} (in {source})") from None
    return IssueState(status, parse_dependencies(lines), parse_decomposed_into(lines))


def parse_postconditions(plan_text: str) -> list[str]:
    names: list[str] = []
    for line in plan_text.splitlines():
        match = _POSTCONDITION_RE.match(line.strip())
        if match:
            names.append(match.group(1).strip())
    return names


@dataclass
class Issue:
    """An issue directory. `state` is None when STATE.md is unreadable; `error` says why."""

    ref: IssueRef
    path: Path
    state: IssueState | None
    error: str | None = None

    @property
    def issue_id(self) -> str:
        return self.ref.issue_id

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def is_closed(self) -> bool:
        return self.state is not None and self.state.status == IssueStatus.CLOSED


@dataclass
class Version:
    """A version container directory (major, minor or patch)."""

    key: VersionKey
    path: Path
    dependencies: list[str] = field(default_factory=list)
    postconditions: list[str] = field(default_factory=list)
    issues: list[Issue] = field(default_factory=list)


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def _sorted_subdirs(directory: Path, pattern: re.Pattern[str]) -> list[Path]:
    if not directory.is_dir():
        return []
    dirs = [p for p in directory.iterdir() if p.is_dir() and not p.is_symlink() and pattern.match(p.name)]
    return sorted(dirs, key=lambda p: tuple(int(n) for n in pattern.match(p.name).groups()))  # type: ignore[union-attr]


def _issue_dirs(container: Path) -> list[Path]:
    if not container.is_dir():
        return []
    return sorted(
        (
            p
            for p in container.iterdir()
            if p.is_dir() and not p.is_symlink() and not VERSION_DIR_RE.match(p.name) and BARE_NAME_RE.match(p.name)
        ),
        key=lambda p: p.name,
    )


def load_issue(path: Path, ref: IssueRef) -> Issue:
    text = _read_text(path / STATE_FILE_NAME)
    if text is None:
        return Issue(ref, path, None, f"Issue {ref.issue_id} has no readable status")
    try:
        return Issue(ref, path, parse_state(text, path / STATE_FILE_NAME))
    except IssueStateError as e:
        logger.warning("Invalid STATE.md for %s: %s", ref.issue_id, e)
        return Issue(ref, path, None, str(e))


def _load_version(path: Path, key: VersionKey) -> Version:
    state_text = _read_text(path / STATE_FILE_NAME)
    plan_text = _read_text(path / PLAN_FILE_NAME)
    version = Version(
        key=key,
        path=path,
        dependencies=parse_dependencies(state_text.splitlines()) if state_text else [],
        postconditions=parse_postconditions(plan_text) if plan_text else [],
    )
    parts = [str(k) for k in key] + ["", ""]
    for issue_dir in _issue_dirs(path):
        if not (issue_dir / STATE_FILE_NAME).is_file():
            continue
        ref = IssueRef(parts[0], parts[1], parts[2], issue_dir.name)
        version.issues.append(load_issue(issue_dir, ref))
    return version


class IssueTree:
    """Snapshot of every version container and issue, in version-then-name order."""

    def __init__(self, issues_root: Path, versions: list[Version]) -> None:
        self.issues_root = issues_root
        self.versions = versions
        self._by_id: dict[str, Issue] = {}
        self._version_of: dict[str, Version] = {}
        for version in versions:
            for issue in version.issues:
                self._by_id[issue.issue_id] = issue
                self._version_of[issue.issue_id] = version

    @classmethod
    def scan(cls, issues_root: Path) -> "IssueTree":
        versions: list[Version] = []
        for major_dir in _sorted_subdirs(issues_root, MAJOR_DIR_RE):
            major = int(MAJOR_DIR_RE.match(major_dir.name).group(1))  # type: ignore[union-attr]
            versions.append(_load_version(major_dir, (major,)))
            for minor_dir in _sorted_subdirs(major_dir, MINOR_DIR_RE):
                minor_key = tuple(int(n) for n in MINOR_DIR_RE.match(minor_dir.name).groups())  # type: ignore[union-attr]
                versions.append(_load_version(minor_dir, minor_key))
                for patch_dir in _sorted_subdirs(minor_dir, PATCH_DIR_RE):
                    patch_key = tuple(int(n) for n in PATCH_DIR_RE.match(patch_dir.name).groups())  # type: ignore[union-attr]
                    versions.append(_load_version(patch_dir, patch_key))
        return cls(issues_root, versions)

    def __iter__(self) -> Iterator[Issue]:
        for version in self.versions:
            yield from version.issues

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, issue_id: str) -> Issue | None:
        return self._by_id.get(issue_id)

    def version_of(self, issue: Issue) -> Version:
        return self._version_of[issue.issue_id]

    def find_by_name(self, name: str) -> Issue | None:
        """First issue with this bare name in version order."""
        for issue in self:
            if issue.name == name:
                return issue
        return None

    def lookup(self, reference: str) -> Issue | None:
        """Resolve a dependency reference: a qualified id first, then a bare name."""
        if QUALIFIED_ISSUE_ID_RE.match(reference):
            found = self.get(reference)
            if found is not None:
                return found
        if BARE_NAME_RE.match(reference):
            return self.find_by_name(reference)
        return None

    def versions_matching(self, key: VersionKey) -> list[Version]:
        """Containers equal to or nested under a version key."""
        return [v for v in self.versions if v.key[: len(key)] == key]

    def ancestors(self, version: Version) -> list[Version]:
        """The container and every enclosing container, outermost first."""
        return [v for v in self.versions if version.key[: len(v.key)] == v.key]
