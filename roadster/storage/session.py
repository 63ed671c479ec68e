"""Admin session blob (who is signed in on this device)."""

from __future__ import annotations

from typing import Optional

from roadster.core.models import AdminSession
from roadster.core.utils import read_object, read_string, utc_now_iso
from roadster.storage.kv import ADMIN_SESSION, KeyValueStore


class SessionStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def read(self) -> Optional[AdminSession]:
        source = read_object(self.kv.read_json(ADMIN_SESSION))
        username = read_string(source.get("username"))
        logged_in_at = read_string(source.get("loggedInAt"))
        if not username or not logged_in_at:
            return None
        return AdminSession(username, logged_in_at)

    def write(self, username: str) -> AdminSession:
        session = AdminSession(username.strip().lower(), utc_now_iso())
        self.kv.write_json(ADMIN_SESSION, session.to_dict())
        return session

    def clear(self) -> None:
        self.kv.remove_name(ADMIN_SESSION)
