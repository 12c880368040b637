from __future__ import annotations

import os
from dataclasses import dataclass

import pytest

# Must be set before app.main is imported, since it reads settings at import time.
os.environ.setdefault("DOCJOBS_STORE_BACKEND", "memory")
os.environ.setdefault("DOCJOBS_OTEL_ENABLED", "false")

from app.core.config import Settings  # noqa: E402
from app.services.models import SourceRepositoryRecord  # noqa: E402
from app.services.retry import StoreCallPolicy  # noqa: E402
from app.services.store import InMemoryJobStore  # noqa: E402


@dataclass(frozen=True)
class Seed:
    repository_id: str = "0b6f4a8e-5a8c-4d3e-9a51-3c2f8f0d1a01"
    sibling_repository_id: str = "0b6f4a8e-5a8c-4d3e-9a51-3c2f8f0d1a02"
    other_repository_id: str = "0b6f4a8e-5a8c-4d3e-9a51-3c2f8f0d1a03"
    full_name: str = "acme/widgets"
    owner_id: str = "7d1c2b3a-0000-4000-8000-000000000001"
    other_user_id: str = "7d1c2b3a-0000-4000-8000-000000000002"
    admin_id: str = "7d1c2b3a-0000-4000-8000-000000000003"


@pytest.fixture
def seed() -> Seed:
    return Seed()


@pytest.fixture
def store(seed: Seed) -> InMemoryJobStore:
    memory = InMemoryJobStore()
    memory.add_source_repository(
        SourceRepositoryRecord(id=seed.repository_id, full_name=seed.full_name, user_id=seed.owner_id)
    )
    # A fork registered by another user under the same name.
    memory.add_source_repository(
        SourceRepositoryRecord(id=seed.sibling_repository_id, full_name=seed.full_name, user_id=seed.other_user_id)
    )
    memory.add_source_repository(
        SourceRepositoryRecord(id=seed.other_repository_id, full_name="acme/gadgets", user_id=seed.owner_id)
    )
    for user_id in (seed.owner_id, seed.other_user_id, seed.admin_id):
        memory.add_user(user_id)
    return memory


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        store_timeout_seconds=1.0,
        store_retry_backoff_seconds=0.0,
        rate_limit_enabled=False,
        otel_enabled=False,
        worker_url=None,
        supabase_url="https://example.supabase.co",
        supabase_anon_key="anon-key",
    )


@pytest.fixture
def policy() -> StoreCallPolicy:
    return StoreCallPolicy(timeout_seconds=1.0, backoff_seconds=0.0)
