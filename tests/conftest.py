"""Shared fixtures: in-memory store, recording push sink, fixed clock, graph builder."""

from typing import Dict, List, Optional

import pytest

from engine.config import PropagationSettings
from engine.errors import PushDeliveryError
from engine.hashing import hash_chain, hash_graph, hash_notification
from engine.memory_store import InMemoryExposureStore
from engine.push import DeliverySink, PushMessage
from engine.records import ContactEdge, DirectoryEntry
from engine.windows import MILLIS_PER_DAY

# 2025-06-15T16:00:00Z
NOW = 1_750_003_200_000
DAY = MILLIS_PER_DAY


def days_ago(days: float) -> int:
    return NOW - int(days * DAY)


class RecordingSink(DeliverySink):
    """Delivery sink that records messages; tokens in `fail_codes` are refused."""

    def __init__(self):
        self.messages: List[PushMessage] = []
        self.fail_codes: Dict[str, Optional[str]] = {}

    async def send(self, message: PushMessage) -> str:
        if message.token in self.fail_codes:
            raise PushDeliveryError("refused", code=self.fail_codes[message.token])
        self.messages.append(message)
        return f"projects/test/messages/{len(self.messages)}"

    def types_for(self, token: str) -> List[str]:
        return [m.notification_type.value for m in self.messages if m.token == token]


class ContactGraph:
    """Builds users and directed edges on an in-memory store by name."""

    def __init__(self, store: InMemoryExposureStore):
        self.store = store

    async def add_user(self, name: str, push_token: Optional[str] = "default") -> DirectoryEntry:
        token = f"token-{name}" if push_token == "default" else push_token
        return await self.store.upsert_user(DirectoryEntry(
            graph_id=hash_graph(name),
            notification_id=hash_notification(name),
            display_name=name,
            push_token=token,
            uid=name,
        ))

    async def add_users(self, *names: str) -> None:
        for name in names:
            await self.add_user(name)

    async def meet(self, owner: str, partner: str, at: int, partner_display_name: Optional[str] = None) -> ContactEdge:
        """`owner` records an interaction with `partner` at `at`."""
        return await self.store.record_edge(ContactEdge(
            owner_graph_id=hash_graph(owner),
            partner_graph_id=hash_graph(partner),
            partner_display_name=partner if partner_display_name is None else partner_display_name,
            recorded_at=at,
        ))

    async def notifications_for(self, name: str):
        return await self.store.list_notifications_for_recipient(hash_notification(name))


def gid(name: str) -> str:
    return hash_graph(name)


def nid(name: str) -> str:
    return hash_notification(name)


def cid(name: str) -> str:
    return hash_chain(hash_graph(name))


@pytest.fixture
def settings() -> PropagationSettings:
    return PropagationSettings(
        _env_file=None,
        store_retry_attempts=3,
        store_retry_base_delay=0.0,
        store_retry_max_delay=0.0,
        push_enabled=False,
    )


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def store() -> InMemoryExposureStore:
    return InMemoryExposureStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def graph(store) -> ContactGraph:
    return ContactGraph(store)
