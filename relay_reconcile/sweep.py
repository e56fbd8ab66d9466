"""
Comprehensive sweep rules.

The sweep may remove files the reconciler did not create, so every rule is
narrow: fixed directories, exact file names, globs evaluated at depth one
only, and whole-word line matchers. Nothing outside these rules is touched,
even when its name contains "ipfs".
"""

import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Tuple

from relay_reconcile.config import AppConfig

logger = logging.getLogger("relay_reconcile")

COMMAND_PATTERN = re.compile(r"(^|[\s;&|(])(/usr/local/bin/|/usr/bin/)?(ipfs|kubo)(\s|;|$)")
IPFS_PATH_PATTERN = re.compile(r"\bIPFS_PATH=")
HOST_NAME_PATTERN = re.compile(r"^(ipfs|kubo)([.-].*)?$", re.IGNORECASE)
HOST_NAME_FIELD = re.compile(r"[ \t]+(\S+)")


def _command_line(line: str) -> bool:
    return bool(COMMAND_PATTERN.search(line) or IPFS_PATH_PATTERN.search(line))


def _ipfs_path_line(line: str) -> bool:
    return bool(IPFS_PATH_PATTERN.search(line))


LINE_MATCHERS: Dict[str, Callable[[str], bool]] = {
    "command": _command_line,
    "ipfs_path": _ipfs_path_line,
}


def _drop_host_name(match) -> str:
    return "" if HOST_NAME_PATTERN.match(match.group(1)) else match.group(0)


def scrub_hosts(text: str) -> Tuple[str, int]:
    """Drop ipfs/kubo host names from hosts entries; drop entries left without names."""
    out = []
    removed = 0
    for line in text.splitlines(keepends=True):
        body, sep, comment = line.partition("#")
        fields = body.split()
        if len(fields) < 2:
            out.append(line)
            continue
        names = [name for name in fields[1:] if not HOST_NAME_PATTERN.match(name)]
        if len(names) == len(fields) - 1:
            out.append(line)
            continue
        removed += 1
        if names:
            # remaining names keep their spacing and the trailing comment
            out.append(HOST_NAME_FIELD.sub(_drop_host_name, body) + sep + comment)
    return "".join(out), removed


def scrub_text(text: str, matcher: str) -> Tuple[str, int]:
    """Return the text without matching lines and the number of lines changed."""
    if matcher == "hosts":
        return scrub_hosts(text)
    match = LINE_MATCHERS[matcher]
    kept = [line for line in text.splitlines(keepends=True) if not match(line)]
    return "".join(kept), len(text.splitlines()) - len(kept)


def _read(path: Path) -> str:
    try:
        return path.read_text(errors="replace")
    except OSError as e:
        logger.debug(f"Skipping unreadable {path}: {e}")
        return ""


def _depth_one(directory: Path, patterns: List[str]) -> List[Path]:
    if not directory.is_dir():
        return []
    found = []
    for pattern in patterns:
        found.extend(p for p in directory.glob(pattern) if p.parent == directory)
    return found


def download_dirs(config: AppConfig) -> List[Path]:
    dirs = [config.path(d) for d in config.SWEEP_DOWNLOAD_DIRS]
    for home in config.home_dirs():
        if home not in dirs:
            dirs.append(home)
    return dirs


def find_removals(config: AppConfig) -> List[Path]:
    """Collect every existing path matched by a removal rule."""
    found = []

    unit_dir = config.path(config.SWEEP_UNIT_DIR)
    found.extend(p for p in _depth_one(unit_dir, config.SWEEP_UNIT_GLOBS) if not p.is_dir() or p.is_symlink())

    for directory in config.SWEEP_DIRS:
        path = config.path(directory)
        if path.exists() or path.is_symlink():
            found.append(path)

    for home in config.home_dirs():
        dot_ipfs = home / ".ipfs"
        if dot_ipfs.is_dir():
            found.append(dot_ipfs)

    for bin_dir in config.SWEEP_BIN_DIRS:
        for name in config.SWEEP_BIN_NAMES:
            path = config.path(bin_dir) / name
            if path.is_file() or path.is_symlink():
                found.append(path)

    for directory in download_dirs(config):
        found.extend(p for p in _depth_one(directory, config.SWEEP_ARCHIVE_GLOBS) if p.is_file())
        for name in config.SWEEP_EXTRACT_NAMES:
            extracted = directory / name
            # only release trees, recognised by their bundled installer
            if extracted.is_dir() and not extracted.is_symlink() and (extracted / "install.sh").is_file():
                found.append(extracted)

    log_dir = config.path(config.SWEEP_LOG_DIR)
    found.extend(p for p in _depth_one(log_dir, config.SWEEP_LOG_GLOBS) if p.is_file())

    unique = []
    for path in found:
        if path not in unique:
            unique.append(path)
    return unique


def scrub_candidates(config: AppConfig) -> List[Tuple[Path, str]]:
    candidates = [(config.path(f), "command") for f in config.SWEEP_CRON_FILES]
    for cron_dir in config.SWEEP_CRON_DIRS:
        directory = config.path(cron_dir)
        if directory.is_dir():
            candidates.extend((p, "command") for p in sorted(directory.iterdir()) if p.is_file())
    candidates.extend((config.path(f), "ipfs_path") for f in config.SWEEP_PROFILE_FILES)
    for home in config.home_dirs():
        candidates.extend((home / name, "ipfs_path") for name in config.SWEEP_USER_PROFILES)
    candidates.append((config.path(config.HOSTS_FILE), "hosts"))
    return candidates


def find_scrubs(config: AppConfig) -> List[Tuple[Path, str]]:
    """Files holding at least one line a scrub rule would remove."""
    scrubs = []
    for path, matcher in scrub_candidates(config):
        if not path.is_file():
            continue
        _, changed = scrub_text(_read(path), matcher)
        if changed:
            scrubs.append((path, matcher))
    return scrubs


def scrub_file(host, path: Path, matcher: str) -> int:
    """Rewrite a file without its matching lines, keeping mode and ownership."""
    text = host.read_text(path)
    if text is None:
        return 0
    cleaned, changed = scrub_text(text, matcher)
    if not changed:
        return 0
    mode = host.mode(path)
    owner = host.owner(path)
    host.write_file(path, cleaned, mode if mode is not None else 0o644)
    if owner is not None:
        host.chown(path, owner[0], owner[1])
    logger.info(f"Removed {changed} line(s) from {path}")
    return changed
