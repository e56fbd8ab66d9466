"""
Kubo release handling: architecture mapping, download, checksum
verification and atomic installation of the ipfs binary.
"""

import hashlib
import logging
import re
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import Dict, Optional

from relay_reconcile.errors import DownloadError, IntegrityError, UnsupportedPlatformError

logger = logging.getLogger("relay_reconcile")

ARCHIVE_MEMBER = "kubo/ipfs"


def normalize_arch(machine: str, supported: Dict[str, str]) -> str:
    """Map platform.machine() output to the Kubo release architecture."""
    arch = supported.get(machine.lower())
    if arch is None:
        raise UnsupportedPlatformError(
            f"Unsupported architecture '{machine}' (supported: {', '.join(sorted(set(supported.values())))})"
        )
    return arch


def archive_name(version: str, arch: str) -> str:
    return f"kubo_v{version}_linux-{arch}.tar.gz"


def release_url(base_url: str, version: str, arch: str) -> str:
    return f"{base_url.rstrip('/')}/v{version}/{archive_name(version, arch)}"


def checksum_url(base_url: str, version: str, arch: str) -> str:
    return release_url(base_url, version, arch) + ".sha512"


def parse_checksum(text: Optional[str]) -> Optional[str]:
    """Extract the hex digest from a ``<digest>  <file>`` checksum document."""
    if not text:
        return None
    match = re.search(r"\b([0-9a-fA-F]{128})\b", text)
    return match.group(1).lower() if match else None


def sha512_file(path: Path) -> str:
    h = hashlib.sha512()
    with open(str(path), "rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_archive(archive: Path, expected: Optional[str]) -> bool:
    """
    Compare the archive digest with the published one.

    Returns:
        True when verified, False when no checksum was published.

    Raises:
        IntegrityError: The digests differ.
    """
    if expected is None:
        logger.warning(f"No published checksum for {archive.name}; installing unverified")
        return False
    actual = sha512_file(archive)
    if actual != expected:
        raise IntegrityError(
            f"Checksum mismatch for {archive.name}: expected {expected[:16]}..., got {actual[:16]}..."
        )
    logger.info(f"Checksum verified for {archive.name}")
    return True


def extract_binary(archive: Path, dest: Path) -> Path:
    """Extract only the ipfs executable from the release archive."""
    try:
        with tarfile.open(str(archive), "r:gz") as tar:
            try:
                member = tar.getmember(ARCHIVE_MEMBER)
            except KeyError:
                raise DownloadError(f"{archive.name} does not contain {ARCHIVE_MEMBER}")
            if not member.isfile():
                raise DownloadError(f"{ARCHIVE_MEMBER} in {archive.name} is not a regular file")
            source = tar.extractfile(member)
            with open(str(dest), "wb") as handle:
                shutil.copyfileobj(source, handle)
    except (tarfile.TarError, OSError) as e:
        raise DownloadError(f"Could not extract {archive.name}: {e}")
    return dest


def install_release(host, url: str, sha_url: str, binary: Path, timeout: int) -> bool:
    """
    Download, verify, extract and install the Kubo binary.

    Nothing is written to ``binary`` unless the checksum (when published)
    matches. The replacement is atomic, so a running daemon keeps its open
    executable until restarted.

    Returns:
        Whether the archive was verified against a published checksum.
    """
    with tempfile.TemporaryDirectory(prefix="relay-reconcile-") as workdir:
        archive = Path(workdir) / url.rsplit("/", 1)[-1]
        host.download(url, archive, timeout)
        expected = parse_checksum(host.fetch_text(sha_url, timeout))
        verified = verify_archive(archive, expected)
        extracted = extract_binary(archive, Path(workdir) / "ipfs")
        host.install_file(extracted, binary, 0o755)
    logger.info(f"Installed {binary}")
    return verified
