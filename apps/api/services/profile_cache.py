"""
Profile Cache

Read-through Redis cache for client display names (TTL CACHE_TTL_PROFILE,
5 minutes). Profile writes go through the access gateway, which drops the
cache entry synchronously before returning, so a read after a write never
sees the old name.

Cached names are shared between callers, so scope is checked on every
lookup (registry, not cache). Callers outside scope get the anonymous
"Client XXXX" label and nothing from the profile.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from core.auth import AuthContext
from core.cache import get_cache, set_cache, profile_cache_key
from core.config import settings
from services.relationship_registry import is_active_assignment
from services.role_resolver import Role, parse_role

logger = logging.getLogger(__name__)

COLLECTION = "clientprofiles"
PROFILE_FIELDS = ("display_name", "first_name", "last_name", "email")


def anonymous_label(client_id: str) -> str:
    return f"Client {str(client_id)[-4:].upper()}"


def resolve_display_name(client_id: str, profile: Optional[Dict[str, Any]]) -> str:
    """display name -> first name -> email prefix -> 'Client XXXX'."""
    if profile:
        for key in ("display_name", "first_name"):
            value = (profile.get(key) or "").strip()
            if value:
                return value
        email = (profile.get("email") or "").strip()
        if email:
            prefix = email.split("@")[0]
            if prefix:
                return prefix
    return anonymous_label(client_id)


class ProfileCache:
    def __init__(self, gateway):
        self.gateway = gateway

    def _in_scope(self, ctx: AuthContext, client_id: str) -> bool:
        if ctx.is_admin:
            return True
        if parse_role(ctx.role) == Role.CLIENT:
            return ctx.member_id == client_id
        return is_active_assignment(self.gateway.db, ctx.member_id, client_id)

    def _load_profiles(self, ctx: AuthContext, client_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        filters = {"client_id": client_ids}
        if ctx.is_admin:
            items = self.gateway.admin_read_all(COLLECTION, ctx, filters)
        else:
            items = self.gateway.read_all(COLLECTION, ctx, filters)
        return {p["client_id"]: p for p in items}

    def get_display_names(self, ctx: AuthContext, client_ids: Iterable[str]) -> Dict[str, str]:
        """Batch lookup. Cache hits are served first; misses are loaded in one read."""
        names: Dict[str, str] = {}
        misses: List[str] = []
        for client_id in dict.fromkeys(client_ids):
            if not self._in_scope(ctx, client_id):
                names[client_id] = anonymous_label(client_id)
                continue
            cached = get_cache(profile_cache_key(client_id))
            if cached is not None:
                names[client_id] = cached
            else:
                misses.append(client_id)

        if misses:
            profiles = self._load_profiles(ctx, misses)
            for client_id in misses:
                name = resolve_display_name(client_id, profiles.get(client_id))
                set_cache(profile_cache_key(client_id), name, ttl=settings.CACHE_TTL_PROFILE)
                names[client_id] = name
        return names

    def get_display_name(self, ctx: AuthContext, client_id: str) -> str:
        return self.get_display_names(ctx, [client_id])[client_id]

    def save_profile(self, ctx: AuthContext, client_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create or update a client's profile through the gateway (which invalidates the cache)."""
        values = {k: v for k, v in fields.items() if k in PROFILE_FIELDS}
        existing = self._load_profiles(ctx, [client_id]).get(client_id)
        if existing is None:
            return self.gateway.write(COLLECTION, ctx, {"client_id": client_id, **values})
        return self.gateway.write(COLLECTION, ctx, {"id": existing["id"], **values})
