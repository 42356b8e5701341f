from __future__ import annotations

import asyncio
from typing import Any

import pytest
from asyncpg import exceptions as pg_exc  # type: ignore[import-untyped]

from ats_pipeline.services.repository import (
    PostgresRepository,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
)


class DroppedPool:
    async def fetchrow(self, *args: Any, **kwargs: Any) -> Any:
        raise pg_exc.ConnectionDoesNotExistError("connection was closed in the middle of operation")

    async def fetchval(self, *args: Any, **kwargs: Any) -> Any:
        raise ConnectionResetError("connection reset by peer")

    async def execute(self, *args: Any, **kwargs: Any) -> Any:
        raise pg_exc.DeadlockDetectedError("deadlock detected")


class BadIdPool:
    async def fetchrow(self, *args: Any, **kwargs: Any) -> Any:
        raise pg_exc.InvalidTextRepresentationError("invalid input syntax for type uuid")


def _repository(pool: Any) -> PostgresRepository:
    repository = PostgresRepository("postgresql://ats@localhost/ats", min_pool_size=1, max_pool_size=1)
    repository._pool = pool
    return repository


def test_driver_failures_surface_as_repository_errors() -> None:
    repository = _repository(DroppedPool())

    with pytest.raises(RepositoryError) as lost:
        asyncio.run(repository.get_connector("6c1f3f9e-3d55-4a0e-8d0b-1c2f5a7d9e10"))
    with pytest.raises(RepositoryError) as reset:
        asyncio.run(repository.upsert_job("6c1f3f9e-3d55-4a0e-8d0b-1c2f5a7d9e10", "J-1"))
    with pytest.raises(RepositoryError) as deadlock:
        asyncio.run(repository.update_connector_status("6c1f3f9e-3d55-4a0e-8d0b-1c2f5a7d9e10", "error"))

    assert isinstance(lost.value.__cause__, pg_exc.ConnectionDoesNotExistError)
    assert isinstance(reset.value.__cause__, ConnectionResetError)
    assert isinstance(deadlock.value.__cause__, pg_exc.DeadlockDetectedError)
    assert "get_connector" in str(lost.value)


def test_repository_errors_pass_through_untranslated() -> None:
    repository = _repository(BadIdPool())

    with pytest.raises(RepositoryNotFoundError):
        asyncio.run(repository.get_connector("not-a-uuid"))


def test_missing_database_url_is_unavailable() -> None:
    repository = PostgresRepository(None, min_pool_size=1, max_pool_size=1)

    with pytest.raises(RepositoryUnavailableError):
        asyncio.run(repository.list_jobs())
