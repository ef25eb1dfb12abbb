"""Security filter for package contents.

Every check here is a hard failure: callers collect the issue list and
raise ``UnsafeContent`` if it is non-empty. The same rules apply when
staging local files and when validating a downloaded archive.
"""

from __future__ import annotations

import os
import stat
import tarfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from rulestack.errors import UnsafeContent

MAX_FILE_SIZE = 1024 * 1024  # 1 MiB per file
MAX_TOTAL_SIZE = 10 * 1024 * 1024  # 10 MiB uncompressed
MAX_FILES = 100

ALLOWED_EXTENSIONS = frozenset({".md", ".mdc", ".txt", ".json"})

BLOCKED_EXTENSIONS = frozenset({
    ".sh", ".bat", ".cmd", ".ps1", ".py", ".rb", ".pl", ".js",
    ".exe", ".dll", ".so", ".dylib",
})

EXECUTABLE_SIGNATURES: dict[bytes, str] = {
    b"\x7fELF": "ELF executable",
    b"MZ": "Windows executable",
    b"\xfe\xed\xfa\xce": "Mach-O executable",
    b"\xfe\xed\xfa\xcf": "Mach-O executable",
    b"\xce\xfa\xed\xfe": "Mach-O executable",
    b"\xcf\xfa\xed\xfe": "Mach-O executable",
    b"\xca\xfe\xba\xbe": "Java class or universal binary",
    b"#!": "script with shebang",
}

SUSPICIOUS_MARKUP = (
    "<script", "<iframe", "<object", "<embed", "<applet",
    "javascript:", "data:", "vbscript:",
    "onload=", "onerror=", "onclick=",
)

MARKDOWN_EXTENSIONS = frozenset({".md", ".mdc"})


@dataclass
class SecurityLimits:
    """Size and type limits; the defaults apply to every registry."""

    max_file_size: int = MAX_FILE_SIZE
    max_total_size: int = MAX_TOTAL_SIZE
    max_files: int = MAX_FILES
    allowed_extensions: frozenset[str] = field(default_factory=lambda: ALLOWED_EXTENSIONS)


def check_path(name: str) -> list[str]:
    """Path-level checks for a root-relative archive entry name."""
    issues = []
    if not name:
        return ["empty path"]
    if name.startswith(("/", "\\")) or PurePosixPath(name).is_absolute() or (len(name) > 1 and name[1] == ":"):
        issues.append(f"{name}: absolute paths are not allowed")
    if ".." in name.replace("\\", "/").split("/"):
        issues.append(f"{name}: '..' path segments are not allowed")
    if any(ord(ch) < 32 or ord(ch) == 127 for ch in name):
        issues.append(f"{name!r}: control characters in path")
    return issues


def check_file_type(name: str, limits: SecurityLimits | None = None) -> list[str]:
    limits = limits or SecurityLimits()
    ext = PurePosixPath(name).suffix.lower()
    if ext in BLOCKED_EXTENSIONS:
        return [f"{name}: executable/script files are not allowed"]
    if ext and ext not in limits.allowed_extensions:
        allowed = ", ".join(sorted(limits.allowed_extensions))
        return [f"{name}: extension '{ext}' is not allowed (allowed: {allowed})"]
    return []


def check_content(name: str, data: bytes) -> list[str]:
    """Content checks: binaries, encoding, and active markup in markdown."""
    for signature, kind in EXECUTABLE_SIGNATURES.items():
        if data.startswith(signature):
            return [f"{name}: looks like a {kind}"]
    if b"\x00" in data:
        return [f"{name}: binary content (NUL bytes) is not allowed"]
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError:
        return [f"{name}: content is not valid UTF-8"]

    if PurePosixPath(name).suffix.lower() in MARKDOWN_EXTENSIONS:
        lowered = text.lower()
        found = [pattern for pattern in SUSPICIOUS_MARKUP if pattern in lowered]
        if found:
            return [f"{name}: suspicious markup ({', '.join(found)})"]
    return []


def check_local_file(name: str, path: Path, limits: SecurityLimits | None = None) -> list[str]:
    """All checks for a file about to be staged. Does not follow symlinks."""
    limits = limits or SecurityLimits()
    issues = check_path(name) + check_file_type(name, limits)
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return issues + [f"{name}: file not found: {path}"]
    if stat.S_ISLNK(st.st_mode):
        return issues + [f"{name}: symlinks are not allowed"]
    if not stat.S_ISREG(st.st_mode):
        return issues + [f"{name}: only regular files are allowed"]
    if st.st_size > limits.max_file_size:
        return issues + [f"{name}: too large ({st.st_size} bytes, max {limits.max_file_size})"]
    if issues:
        return issues
    return check_content(name, path.read_bytes())


def check_totals(sizes: list[int], limits: SecurityLimits | None = None) -> list[str]:
    limits = limits or SecurityLimits()
    issues = []
    if len(sizes) > limits.max_files:
        issues.append(f"too many files ({len(sizes)}, max {limits.max_files})")
    total = sum(sizes)
    if total > limits.max_total_size:
        issues.append(f"package too large ({total} bytes, max {limits.max_total_size})")
    return issues


def check_tar(tar: tarfile.TarFile, limits: SecurityLimits | None = None) -> list[str]:
    """Validate every member of an open tar archive without extracting it."""
    limits = limits or SecurityLimits()
    issues: list[str] = []
    total = 0
    count = 0
    for member in tar:
        count += 1
        if count > limits.max_files:
            issues.append(f"archive contains too many files (max {limits.max_files})")
            break
        issues.extend(check_path(member.name))
        if member.isdir():
            continue
        if not member.isfile():
            issues.append(f"{member.name}: unsupported entry type (symlinks and special files are not allowed)")
            continue
        issues.extend(check_file_type(member.name, limits))
        if member.size > limits.max_file_size:
            issues.append(f"{member.name}: too large ({member.size} bytes, max {limits.max_file_size})")
            continue
        total += member.size
        if total > limits.max_total_size:
            issues.append(f"archive too large ({total} bytes, max {limits.max_total_size})")
            break
        fileobj = tar.extractfile(member)
        if fileobj is not None:
            issues.extend(check_content(member.name, fileobj.read()))
    return issues


def raise_for_issues(issues: list[str], **context) -> None:
    if issues:
        raise UnsafeContent("unsafe package content: " + "; ".join(issues), **context)
