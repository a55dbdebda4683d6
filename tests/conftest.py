"""Shared fixtures for accesscore tests."""

from __future__ import annotations

import logging
from typing import Any, Optional

import pytest

from accesscore.events import error_emitter
from accesscore.models import Collections
from accesscore.permissions import RoleSnapshot
from accesscore.store import MemoryDocumentStore
from accesscore.token_utils import reset_default_backend


class Seeder:
    """Writes fixture documents straight into a store."""

    def __init__(self, store: MemoryDocumentStore) -> None:
        self.store = store

    async def profile(
        self,
        uid: str,
        *,
        team_id: Optional[str] = None,
        is_tech_lead: bool = False,
        is_admin: bool = False,
    ) -> None:
        await self.store.set(
            Collections.USERS,
            uid,
            {
                "displayName": uid.upper(),
                "email": f"{uid}@example.com",
                "photoUrl": None,
                "isAdmin": is_admin,
                "isTechLead": is_tech_lead,
                "teamId": team_id,
            },
        )

    async def team(self, team_id: str, tech_lead_id: str, services: tuple[str, ...] = ()) -> None:
        await self.store.set(
            Collections.TEAMS,
            team_id,
            {"name": team_id.title(), "techLeadId": tech_lead_id, "availableServiceIds": list(services)},
        )

    async def service(self, service_id: str, name: Optional[str] = None) -> None:
        await self.store.set(
            Collections.SERVICES, service_id, {"name": name or service_id.title(), "description": ""}
        )

    async def request(self, request_id: str, user_id: str, service_id: str, status: str = "pending") -> None:
        await self.store.set(
            Collections.REQUESTS,
            request_id,
            {
                "userId": user_id,
                "serviceId": service_id,
                "status": status,
                "requestedAt": self.store.now(),
                "resolvedAt": None,
                "resolvedBy": None,
                "notes": None,
            },
        )

    async def doc(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        return await self.store.get(collection, doc_id)


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


@pytest.fixture
def seed(store: MemoryDocumentStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def admin() -> RoleSnapshot:
    return RoleSnapshot(uid="admin", is_admin=True)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def _reset_globals():
    yield
    error_emitter.clear()
    reset_default_backend()
