from __future__ import annotations

import pytest

from mintwatch.tracking.errors import ConflictError, InvalidError
from mintwatch.tracking.store import InMemoryAssetRepository
from mintwatch.tracking.types import Phase
from tests.tracking.fakes import make_asset


@pytest.mark.anyio
async def test_create_and_get_return_copies(repository: InMemoryAssetRepository) -> None:
    asset = make_asset("Mint1")
    created = await repository.create(asset)
    assert created.version == 1
    assert asset.version == 0

    loaded = await repository.get("Mint1")
    loaded.history.clear()
    again = await repository.get("Mint1")
    assert len(again.history) == 1
    assert await repository.get("missing") is None


@pytest.mark.anyio
async def test_duplicate_create_is_rejected(repository: InMemoryAssetRepository) -> None:
    await repository.create(make_asset("Mint1"))
    with pytest.raises(InvalidError):
        await repository.create(make_asset("Mint1"))


@pytest.mark.anyio
async def test_save_bumps_version(repository: InMemoryAssetRepository) -> None:
    await repository.create(make_asset("Mint1"))
    loaded = await repository.get("Mint1")
    loaded.phase = Phase.ACTIVE
    saved = await repository.save(loaded)
    assert saved.version == 2
    assert loaded.version == 2
    assert (await repository.get("Mint1")).phase is Phase.ACTIVE


@pytest.mark.anyio
async def test_stale_save_conflicts(repository: InMemoryAssetRepository) -> None:
    await repository.create(make_asset("Mint1"))
    first = await repository.get("Mint1")
    second = await repository.get("Mint1")
    await repository.save(first)

    second.score = 99
    with pytest.raises(ConflictError) as info:
        await repository.save(second)
    assert info.value.expected == 1
    assert info.value.actual == 2
    assert (await repository.get("Mint1")).score != 99


@pytest.mark.anyio
async def test_find_and_exists(repository: InMemoryAssetRepository) -> None:
    await repository.create(make_asset("Mint1"))
    await repository.create(make_asset("Mint2", phase=Phase.ACTIVE))

    assert await repository.exists("Mint1")
    assert not await repository.exists("Mint3")
    assert {a.id for a in await repository.find()} == {"Mint1", "Mint2"}
    active = await repository.find(lambda a: a.phase is Phase.ACTIVE)
    assert [a.id for a in active] == ["Mint2"]

    await repository.delete("Mint1")
    assert len(repository) == 1
