"""
Record of artifacts created by convergence passes.

The scoped teardown removes exactly what appears here (plus the declared
target), so a ledger written by an older release with different paths is
still honoured.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger("relay_reconcile")


@dataclass
class Ledger:
    paths: List[str] = field(default_factory=list)
    users: List[str] = field(default_factory=list)
    groups: List[str] = field(default_factory=list)
    firewall_rules: List[str] = field(default_factory=list)
    packages: List[str] = field(default_factory=list)
    created: Optional[str] = None
    updated: Optional[str] = None

    def record(self, category: str, value: str) -> None:
        entries = getattr(self, category)
        if value not in entries:
            entries.append(value)

    def is_empty(self) -> bool:
        return not (self.paths or self.users or self.groups or self.firewall_rules or self.packages)

    @classmethod
    def load(cls, path: Path) -> "Ledger":
        """Read the ledger; a missing or unreadable file yields an empty ledger."""
        try:
            data = json.loads(Path(path).read_text())
        except FileNotFoundError:
            return cls()
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable ledger {path}: {e}")
            return cls()
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)

    def save(self, path: Path) -> None:
        now = datetime.now().isoformat(timespec="seconds")
        if self.created is None:
            self.created = now
        self.updated = now
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(self), indent=2) + "\n")
        path.chmod(0o600)
