"""Secret material: basic-auth passwords and private-network swarm keys."""

import base64
import binascii
import hashlib
import re
import secrets
from pathlib import Path
from typing import List, Optional

from relay_reconcile.errors import ConfigurationError

SWARM_KEY_HEADER = "/key/swarm/psk/1.0.0/"
SWARM_KEY_ENCODING = "/base16/"


def generate_password(nbytes: int = 18) -> str:
    """Return a URL-safe random password (18 bytes gives 24 characters, 144 bits)."""
    return secrets.token_urlsafe(nbytes)


def generate_swarm_key() -> bytes:
    return f"{SWARM_KEY_HEADER}\n{SWARM_KEY_ENCODING}\n{secrets.token_hex(32)}\n".encode()


def is_valid_swarm_key(data: bytes) -> bool:
    """Check the three-line PSK layout: header, encoding, 64 hex digits."""
    try:
        lines = data.decode("ascii").strip().splitlines()
    except UnicodeDecodeError:
        return False
    if len(lines) != 3:
        return False
    header, encoding, key = (line.strip() for line in lines)
    return (
        header == SWARM_KEY_HEADER
        and encoding == SWARM_KEY_ENCODING
        and re.fullmatch(r"[0-9a-fA-F]{64}", key) is not None
    )


def load_swarm_key(source: Path, raw: bytes) -> bytes:
    """
    Decode an operator-supplied swarm key.

    Files whose name mentions base64 hold the key base64-encoded; the decoded
    bytes must still be a valid PSK.

    Raises:
        ConfigurationError: The material is not a usable swarm key.
    """
    data = raw
    if "base64" in source.name.lower():
        try:
            data = base64.b64decode(raw.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(f"Swarm key {source} is not valid base64: {e}")
    if not is_valid_swarm_key(data):
        raise ConfigurationError(f"Swarm key {source} does not have the /key/swarm/psk/1.0.0/ format")
    if not data.endswith(b"\n"):
        data += b"\n"
    return data


def digest(data: Optional[bytes]) -> Optional[str]:
    if data is None:
        return None
    return hashlib.sha256(data).hexdigest()


def parse_htpasswd_users(content: Optional[str]) -> List[str]:
    """Return the user names present in an htpasswd file, in file order."""
    users = []
    for line in (content or "").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or ":" not in line:
            continue
        users.append(line.split(":", 1)[0])
    return users
