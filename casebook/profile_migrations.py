"""Migration registry for the stored player profile blob."""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, Optional

PROFILE_SCHEMA_VERSION = 1


class ProfileMigrationError(Exception):
    """Raised when a stored profile cannot be brought to the current schema."""


Migration = Callable[[Dict], Dict]


def _migrate_v0_to_v1(payload: Dict) -> Dict:
    upgraded = dict(payload)
    upgraded["version"] = 1
    upgraded.setdefault("completedCases", {})
    upgraded.setdefault("totalXp", 0)
    upgraded.setdefault("characters", {})
    return upgraded


MIGRATIONS: Dict[int, Migration] = {
    0: _migrate_v0_to_v1,
}


def merge_legacy_payloads(progress: Any, collection: Any) -> Dict:
    """Combine the separate case-progress and character-collection blobs.

    Either side may be missing or malformed; the result is an unversioned
    profile for ``migrate_profile_payload`` to upgrade.
    """
    progress_data: Dict = progress if isinstance(progress, dict) else {}
    collection_data: Dict = collection if isinstance(collection, dict) else {}
    merged: Dict[str, Any] = {
        "completedCases": progress_data.get("completedCases", {}),
        "totalXp": progress_data.get("totalXp", 0),
        "characters": collection_data.get("characters", {}),
    }
    return merged


def migrate_profile_payload(payload: Any, target_version: int = PROFILE_SCHEMA_VERSION) -> Dict:
    if not isinstance(payload, dict):
        raise ProfileMigrationError("Profile payload was not an object.")

    version: Optional[Any] = payload.get("version", 0)
    if version is None:
        version = 0
    if isinstance(version, bool) or not isinstance(version, int):
        raise ProfileMigrationError("Profile version missing or invalid.")
    if version > target_version:
        raise ProfileMigrationError(
            f"Profile schema {version} is newer than supported {target_version}."
        )

    current = copy.deepcopy(payload)
    while version < target_version:
        migrator = MIGRATIONS.get(version)
        if migrator is None:
            raise ProfileMigrationError(f"No migration available for profile schema {version}.")
        current = migrator(current)
        version = current.get("version", version + 1)
        if not isinstance(version, int):
            raise ProfileMigrationError("Migration produced an invalid schema version.")

    return current
