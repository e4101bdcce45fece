"""JSON-file persistence for instance records."""

import copy
import json
from pathlib import Path
from typing import Callable

from .errors import InstanceNotFound
from .types import ManagedInstance


class InstanceStore:
    """One ``<instance_id>.instance.json`` file per instance in ``data_dir``.

    Records are never deleted here; terminated instances stay as history.
    """

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)

    def _path(self, instance_id: str) -> Path:
        return self.data_dir / f"{instance_id}.instance.json"

    def exists(self, instance_id: str) -> bool:
        return self._path(instance_id).exists()

    def load(self, instance_id: str) -> ManagedInstance:
        """Load instance record.

        :raises InstanceNotFound: No record for this handle
        """
        path = self._path(instance_id)
        if not path.exists():
            raise InstanceNotFound(instance_id)
        return json.loads(path.read_text())

    def load_owned(self, instance_id: str, owner: str) -> ManagedInstance:
        """Load a record only if it belongs to ``owner``."""
        instance = self.load(instance_id)
        if instance.get("owner") != owner:
            raise InstanceNotFound(instance_id)
        return instance

    def save(self, instance: ManagedInstance) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(instance["instance_id"])
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(instance, indent=2, default=str))
        tmp.replace(path)

    def update(
        self, instance_id: str, mutate: Callable[[ManagedInstance], None]
    ) -> ManagedInstance:
        """Re-read the record, apply ``mutate`` in place and save it.

        Re-reading right before the write keeps a concurrent status update
        from being overwritten with a stale copy.
        """
        instance = self.load(instance_id)
        original_id = instance["instance_id"]
        mutate(instance)
        if instance.get("instance_id") != original_id:
            raise ValueError("instance_id is immutable")
        self.save(instance)
        return instance

    def all(self) -> list[ManagedInstance]:
        if not self.data_dir.exists():
            return []
        return [
            json.loads(path.read_text())
            for path in sorted(self.data_dir.glob("*.instance.json"))
        ]

    def find(
        self,
        owner: str | None = None,
        *,
        status: str | None = None,
        engine: str | None = None,
        created_after: str | None = None,
        created_before: str | None = None,
    ) -> list[ManagedInstance]:
        """Filter records by equality on owner/status/engine and a created_at range.

        Timestamps compare as ISO-8601 strings. Newest first.
        """
        results = []
        for instance in self.all():
            if owner is not None and instance.get("owner") != owner:
                continue
            if status is not None and instance.get("status") != status:
                continue
            if engine is not None and instance.get("engine") != engine:
                continue
            created = instance.get("created_at") or ""
            if created_after is not None and created < created_after:
                continue
            if created_before is not None and created >= created_before:
                continue
            results.append(instance)
        results.sort(key=lambda i: i.get("created_at") or "", reverse=True)
        return results


def connection_string(instance: ManagedInstance) -> str | None:
    """Password-free connection URL, or None before a public IP is known."""
    host = (instance.get("network") or {}).get("public_ip")
    if not host:
        return None
    engine = instance["engine"]
    db_name = "postgres" if engine == "postgresql" else "mysql"
    return f"{engine}://{instance['master_username']}@{host}:{instance['port']}/{db_name}"


def public_view(instance: ManagedInstance) -> dict:
    """Copy of a record that is safe to hand to end users (no passwords)."""
    view = copy.deepcopy(dict(instance))
    view.pop("master_password", None)
    for user in view.get("database_users", []):
        user.pop("password", None)
    view["connection_string"] = connection_string(instance)
    return view
