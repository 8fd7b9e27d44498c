"""Firmware version from git tags.

Derives ``v<major>.<minor>.<patch>-<hash>[+]`` from the nearest reachable tag,
the short commit hash and the working tree state, and renders it as compiler
defines or a C header.

Used by the PlatformIO extra scripts in this repository and by the
``fw-version`` command for Makefile/CMake builds, e.g.::

    CFLAGS += $(shell fw-version --style defines)
"""
from __future__ import annotations

import argparse
import enum
import logging
import os
import re
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple, Union

_logger = logging.getLogger("fw_version")

HEADER_GUARD = "__version_h"
DIRTY_MARKER = "+"

_LEADING_DIGITS = re.compile(r"[0-9]+")
_SHORT_HASH = re.compile(r"^[0-9a-f]+$")


class VersionError(Exception):
    """Base class for everything that stops a version from being resolved."""


class TagNotFoundError(VersionError):
    pass


class MalformedVersionTagError(VersionError):
    pass


class NoCommitError(VersionError):
    pass


class RepositoryUnavailableError(VersionError, EnvironmentError):
    """git itself is missing or the directory is not a repository."""


class Style(enum.Enum):
    COMPACT = "compact"
    DEFINES = "defines"
    HEADER = "header"


@dataclass(frozen=True)
class VersionDescriptor:
    major: int
    minor: int
    patch: int
    commit_hash: str
    dirty: bool = False

    def __post_init__(self):
        for name in ("major", "minor", "patch"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
        if not _SHORT_HASH.match(self.commit_hash):
            raise ValueError(f"commit hash must be lowercase hex, got {self.commit_hash!r}")

    @property
    def dirty_marker(self) -> str:
        return DIRTY_MARKER if self.dirty else ""

    def __str__(self):
        return render(self, Style.COMPACT)


class SourceControl(Protocol):
    """What the resolver needs to know about a repository."""

    def describe_tags(self) -> str:
        ...

    def short_commit_hash(self) -> str:
        ...

    def changed_tracked_files(self) -> Sequence[str]:
        ...


class GitRepository:
    """SourceControl backed by the ``git`` executable.

    With ``safe_directory`` set, every command runs with
    ``-c safe.directory=<path>`` so checkouts owned by another user (Docker,
    CI runners) are still readable.
    """

    def __init__(self, path=".", safe_directory=False, git="git"):
        self.path = Path(path)
        self.safe_directory = safe_directory
        self.git = git

    def _command(self, args):
        cmd = [self.git]
        if self.safe_directory:
            cmd += ["-c", "safe.directory=" + str(self.path.resolve())]
        return cmd + list(args)

    def _exec(self, args) -> subprocess.CompletedProcess:
        cmd = self._command(args)
        try:
            result = subprocess.run(
                cmd,
                cwd=self.path,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True,
            )
        except OSError as e:
            # git or the directory itself is missing
            raise RepositoryUnavailableError(str(e)) from e
        _logger.debug("%s -> %d", " ".join(cmd), result.returncode)
        return result

    def _check_work_tree(self):
        # exit status only; git's messages may be translated
        result = self._exec(["rev-parse", "--is-inside-work-tree"])
        if result.returncode != 0 or result.stdout.strip() != "true":
            raise RepositoryUnavailableError(
                result.stderr.strip() or f"{self.path}: not inside a git work tree"
            )

    def _run(self, args) -> subprocess.CompletedProcess:
        result = self._exec(args)
        if result.returncode != 0:
            self._check_work_tree()
        return result

    def has_commits(self) -> bool:
        return self._run(["rev-parse", "--verify", "--quiet", "HEAD"]).returncode == 0

    def describe_tags(self) -> str:
        result = self._run(["describe", "--tags"])
        if result.returncode != 0:
            if not self.has_commits():
                raise NoCommitError(f"{self.path}: repository has no commits")
            raise TagNotFoundError(
                f"{self.path}: no tag reachable from HEAD ({result.stderr.strip()})"
            )
        return result.stdout.strip()

    def short_commit_hash(self) -> str:
        result = self._run(["rev-parse", "--verify", "--quiet", "--short", "HEAD"])
        if result.returncode != 0:
            raise NoCommitError(f"{self.path}: repository has no commits")
        return result.stdout.strip()

    def changed_tracked_files(self) -> List[str]:
        result = self._run(["diff", "--name-only", "HEAD"])
        if result.returncode != 0:
            if not self.has_commits():
                raise NoCommitError(f"{self.path}: repository has no commits")
            raise RepositoryUnavailableError(result.stderr.strip())
        return [line for line in result.stdout.splitlines() if line]


def strip_prefix(tag: str) -> str:
    return tag[1:] if tag.startswith("v") else tag


def parse_tag(tag: str) -> Tuple[int, int, int]:
    """Split ``[v]<major>.<minor>.<patch>[decoration]`` into three integers.

    Only the leading digits of each of the first three dot-separated fields
    count, so ``v1.2.3-4-gabcdef`` gives ``(1, 2, 3)``.
    """
    fields = strip_prefix(tag).split(".")
    if len(fields) < 3:
        raise MalformedVersionTagError(
            f"version tag {tag!r} needs <major>.<minor>.<patch>"
        )
    numbers = []
    for field in fields[:3]:
        match = _LEADING_DIGITS.match(field)
        if not match:
            raise MalformedVersionTagError(
                f"version tag {tag!r}: {field!r} does not start with a number"
            )
        numbers.append(int(match.group()))
    return numbers[0], numbers[1], numbers[2]


class VersionResolver:
    """Turns the state of ``source`` into a VersionDescriptor."""

    def __init__(self, source: SourceControl):
        self.source = source

    def resolve_tag(self) -> str:
        return strip_prefix(self.source.describe_tags())

    def resolve_commit_hash(self) -> str:
        return self.source.short_commit_hash()

    def resolve_dirty_flag(self) -> bool:
        return len(self.source.changed_tracked_files()) > 0

    def resolve(self) -> VersionDescriptor:
        # parse_tag strips the "v" itself
        major, minor, patch = parse_tag(self.source.describe_tags())
        return VersionDescriptor(
            major=major,
            minor=minor,
            patch=patch,
            commit_hash=self.resolve_commit_hash(),
            dirty=self.resolve_dirty_flag(),
        )


def _render_compact(descriptor: VersionDescriptor) -> str:
    d = descriptor
    return f"v{d.major}.{d.minor}.{d.patch}-{d.commit_hash}{d.dirty_marker}"


def _render_defines(descriptor: VersionDescriptor) -> Dict[str, Union[int, str]]:
    return {
        "FW_VERSION_MAJOR": descriptor.major,
        "FW_VERSION_MINOR": descriptor.minor,
        "FW_VERSION_PATCH": descriptor.patch,
        "FW_VERSION_HASH": descriptor.commit_hash,
        "FW_VERSION_DIRTY_INDEX": descriptor.dirty_marker,
    }


def _render_header(descriptor: VersionDescriptor) -> str:
    d = descriptor
    return f"""/* Generated by fw_version.py on every build. Do not edit. */
#ifndef {HEADER_GUARD}
#define {HEADER_GUARD}

#define FW_VERSION_FULL "{_render_compact(d)}"
#define FW_VERSION_MAJOR {d.major}
#define FW_VERSION_MINOR {d.minor}
#define FW_VERSION_PATCH {d.patch}
#define FW_VERSION_HASH "{d.commit_hash}"
#define FW_VERSION_DIRTY_INDEX "{d.dirty_marker}"

#endif /* {HEADER_GUARD} */
"""


_RENDERERS = {
    Style.COMPACT: _render_compact,
    Style.DEFINES: _render_defines,
    Style.HEADER: _render_header,
}


def render(descriptor: VersionDescriptor, style=Style.COMPACT):
    """Compact string, defines mapping or header text, depending on ``style``."""
    return _RENDERERS[Style(style)](descriptor)


def define_flags(defines) -> List[str]:
    """``-DNAME=value`` flags; strings become escaped C string literals."""
    flags = []
    for name, value in defines.items():
        if isinstance(value, str):
            value = f'\\"{value}\\"'
        flags.append(f"-D{name}={value}")
    return flags


def write_header(descriptor: VersionDescriptor, path) -> bool:
    """Write the version header to ``path``, unless it already says the same.

    Returns True when the file was (re)written.
    """
    path = Path(path)
    content = render(descriptor, Style.HEADER)
    if path.exists() and path.read_text() == content:
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    # a parallel target may be compiling against the old header right now
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise
    return True


def apply_to_env(env, descriptor: VersionDescriptor):
    """Inject the version defines into a PlatformIO/SCons build environment."""
    defines = []
    for name, value in render(descriptor, Style.DEFINES).items():
        if isinstance(value, str):
            value = env.StringifyMacro(value)
        defines.append((name, value))
    env.Append(CPPDEFINES=defines)
    # other extra scripts (firmware naming, OTA upload) read it from here
    env["PIOENV_FW_VERSION"] = render(descriptor, Style.COMPACT)


def resolve_version(path=".", safe_directory=False) -> VersionDescriptor:
    return VersionResolver(GitRepository(path, safe_directory=safe_directory)).resolve()


def _parse_args(argv):
    parser = argparse.ArgumentParser(
        prog="fw-version",
        description="Derive the firmware version from git tags.",
    )
    parser.add_argument("--repo", default=os.curdir, help="repository directory (default: %(default)s)")
    parser.add_argument(
        "--style",
        choices=[s.value for s in Style],
        default=Style.COMPACT.value,
        help="compact string, -D compiler flags, or a header file (default: %(default)s)",
    )
    parser.add_argument("-o", "--output", default="version.h", help="header path for --style header")
    parser.add_argument(
        "--safe-directory",
        action="store_true",
        help="run git with safe.directory set to the repository",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="log the git commands run")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")

    try:
        descriptor = resolve_version(args.repo, safe_directory=args.safe_directory)
    except VersionError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    style = Style(args.style)
    if style is Style.COMPACT:
        print(render(descriptor, style))
    elif style is Style.DEFINES:
        print(" ".join(define_flags(render(descriptor, style))))
    else:
        write_header(descriptor, args.output)
        print(f"Firmware version: {descriptor}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
