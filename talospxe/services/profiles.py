"""
File-backed machine profile store served by the boot HTTP service.

Layout under the server root:

    groups/<id>.json    {"id": ..., "profile": ..., "selector": {"mac": ..., "type": ...}}
    profiles/<id>.json  {"id": ..., "boot": {"kernel": ..., "initrd": [...], "args": [...]}}
    assets/...          static files referenced by profiles

Files are read on every lookup so edits take effect without a restart.
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import structlog

logger = structlog.get_logger()

_HEX_MAC = re.compile(r"^[0-9a-f]{12}$")
_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


def normalize_mac(value: str) -> str:
    """00-11-22-AA-BB-CC, 00:11:22:aa:bb:cc and 001122aabbcc all become 00:11:22:aa:bb:cc."""
    digits = value.strip().lower().replace(":", "").replace("-", "").replace(".", "")
    if not _HEX_MAC.match(digits):
        return value.strip().lower()
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def normalize_labels(labels: Mapping[str, str]) -> Dict[str, str]:
    normalized = {key: value for key, value in labels.items() if value != ""}
    if "mac" in normalized:
        normalized["mac"] = normalize_mac(normalized["mac"])
    return normalized


@dataclass(frozen=True, slots=True)
class Group:
    """Binds machines whose labels match selector to a profile."""

    id: str
    profile: str
    selector: Dict[str, str] = field(default_factory=dict)

    def matches(self, labels: Mapping[str, str]) -> bool:
        return all(labels.get(key) == value for key, value in self.selector.items())


class ProfileStore:
    """Reads groups and profiles from the server root."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _load(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("profile_store_read_error", path=str(path), error=str(e))
            return None
        if not isinstance(data, dict):
            logger.warning("profile_store_invalid_document", path=str(path))
            return None
        return data

    def groups(self) -> List[Group]:
        groups = []
        for path in sorted((self.root / "groups").glob("*.json")):
            data = self._load(path)
            if data is None or "profile" not in data:
                continue
            groups.append(
                Group(
                    id=str(data.get("id", path.stem)),
                    profile=str(data["profile"]),
                    selector=normalize_labels({k: str(v) for k, v in (data.get("selector") or {}).items()}),
                )
            )
        return groups

    def profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        if not _SAFE_ID.match(profile_id) or profile_id in (".", ".."):
            return None
        path = self.root / "profiles" / f"{profile_id}.json"
        if not path.exists():
            return None
        return self._load(path)

    def match(self, labels: Mapping[str, str]) -> Optional[Group]:
        """Most specific group whose selector matches labels, or None."""
        labels = normalize_labels(labels)
        candidates = [group for group in self.groups() if group.matches(labels)]
        if not candidates:
            return None
        # most selector keys wins; ties go to the lowest id
        candidates.sort(key=lambda group: (-len(group.selector), group.id))
        return candidates[0]

    @property
    def assets(self) -> Path:
        return self.root / "assets"
