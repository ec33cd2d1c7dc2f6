"""Permission checks for helpdesk-ticketing.

Authentication and role storage live in the host application; the core
only asks whether an actor holds the admin capability.
"""

from typing import Iterable


class StaticAdminChecker:
    """PermissionChecker backed by a fixed set of admin user ids."""

    def __init__(self, admin_ids: Iterable[str] = ()):
        self.admin_ids = frozenset(admin_ids)

    def has_admin_capability(self, actor_id: str) -> bool:
        return actor_id in self.admin_ids
