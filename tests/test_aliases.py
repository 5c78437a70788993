"""Tests for alias validation."""

import pytest

from vmrepo.services.cleanup.aliases import (
    AliasError,
    check_all_aliases,
    move_disk,
    remove_disk,
    resolve_alias,
)
from vmrepo.services.cleanup.context import ReadOnlyViolation

from conftest import VDI_DIR


@pytest.mark.asyncio
async def test_resolve_alias(storage, repo):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    assert await resolve_alias(storage, alias) == target
    # plain disks resolve to themselves
    assert await resolve_alias(storage, target) == target


@pytest.mark.asyncio
@pytest.mark.parametrize("content, message", [
    (b"", "empty"),
    (b"data/B.alias.vhd", "another alias"),
    (b"x" * 2048, "more than"),
])
async def test_resolve_alias_rejects(storage, repo, content, message):
    alias = repo.raw(f"{VDI_DIR}/A.alias.vhd", content)
    with pytest.raises(AliasError, match=message):
        await resolve_alias(storage, alias)


@pytest.mark.asyncio
async def test_valid_alias_is_confirmed(storage, repo, make_ctx, codec, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert result.confirmed == {target}
    assert result.broken == set()
    assert recorder.warnings == []
    assert storage.mutations == []
    assert codec.open_handles == 0


@pytest.mark.asyncio
async def test_non_disk_target_deletes_alias_and_target(storage, repo, make_ctx, recorder):
    alias = repo.raw(f"{VDI_DIR}/A.alias.vhd", b"data/A.txt")
    target = repo.raw(f"{VDI_DIR}/data/A.txt", b"junk")

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert result.broken == {alias}
    assert recorder.warned("alias references non disk target")
    assert alias not in storage.files
    assert target not in storage.files


@pytest.mark.asyncio
async def test_missing_target_deletes_alias_only(storage, repo, make_ctx, recorder):
    alias = repo.raw(f"{VDI_DIR}/A.alias.vhd", b"data/A.vhd")

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert result.broken == {alias}
    assert recorder.warned("missing or broken alias target")
    assert ("unlink", alias) in storage.mutations
    assert len(storage.mutations) == 1


@pytest.mark.asyncio
async def test_unreadable_target_keeps_alias_and_target(storage, repo, make_ctx, codec, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    codec.open_failures.add(target)

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert result.broken == set()
    assert recorder.warned("alias target unreadable, keeping it")
    assert storage.mutations == []


@pytest.mark.asyncio
async def test_unreadable_alias_protects_data_dir(storage, repo, make_ctx, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    storage.unreadable.add(alias)

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert result.broken == set()
    assert recorder.warned("no alias references disk") == [{"path": target}]
    assert storage.mutations == []


@pytest.mark.asyncio
async def test_unreferenced_data_is_deleted(storage, repo, make_ctx, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    stray = repo.disk("B.vhd", directory=f"{VDI_DIR}/data")

    await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True))

    assert recorder.warned("no alias references disk") == [{"path": stray}]
    assert stray not in storage.files
    assert target in storage.files


@pytest.mark.asyncio
async def test_no_side_effects_without_repair(storage, repo, make_ctx, recorder):
    broken = repo.raw(f"{VDI_DIR}/A.alias.vhd", b"data/A.txt")
    repo.raw(f"{VDI_DIR}/data/A.txt", b"junk")
    repo.disk("B.vhd", directory=f"{VDI_DIR}/data")
    missing = repo.raw(f"{VDI_DIR}/C.alias.vhd", b"data/C.vhd")

    result = await check_all_aliases({VDI_DIR: [broken, missing]}, make_ctx(repair=False))

    assert result.broken == {broken, missing}
    assert len(recorder.warnings) == 4
    assert storage.mutations == []


@pytest.mark.asyncio
async def test_remove_disk_follows_alias(storage, repo, make_ctx):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")

    assert await remove_disk(make_ctx(repair=True), alias, "unused disk")

    assert storage.mutations == [("unlink", target), ("unlink", alias)]


@pytest.mark.asyncio
async def test_remove_disk_refuses_without_repair(repo, make_ctx):
    path = repo.disk("A.vhd")
    with pytest.raises(ReadOnlyViolation):
        await remove_disk(make_ctx(repair=False), path, "unused disk")


@pytest.mark.asyncio
async def test_move_disk_onto_alias_keeps_alias_valid(storage, repo, make_ctx):
    source = repo.disk("A.vhd", blocks={"0": "a"})
    alias, target = repo.alias("B.alias.vhd", "B.vhd")

    await move_disk(make_ctx(repair=True), source, alias)

    assert source not in storage.files
    assert alias in storage.files
    assert repo.blocks(target) == {"0": "a"}


@pytest.mark.asyncio
async def test_move_alias_onto_disk_moves_data(storage, repo, make_ctx):
    alias, source_data = repo.alias("A.alias.vhd", "A.vhd", blocks={"0": "a"})
    destination = repo.disk("B.vhd")

    await move_disk(make_ctx(repair=True), alias, destination)

    assert alias not in storage.files
    assert source_data not in storage.files
    assert repo.blocks(destination) == {"0": "a"}


@pytest.mark.asyncio
async def test_alias_being_merged_skips_footer_check(storage, repo, make_ctx, codec, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    marker = repo.marker(alias)
    codec.footer_failures.add(target)

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=True), {alias: marker})

    assert result.confirmed == {target}
    assert result.broken == set()
    assert codec.footer_checks[target] is False
    assert recorder.warnings == []
    assert storage.mutations == []


@pytest.mark.asyncio
async def test_footer_mismatch_without_merge_breaks_alias(storage, repo, make_ctx, codec, recorder):
    alias, target = repo.alias("A.alias.vhd", "A.vhd")
    codec.footer_failures.add(target)

    result = await check_all_aliases({VDI_DIR: [alias]}, make_ctx(repair=False))

    assert result.broken == {alias}
    assert codec.footer_checks[target] is True
    assert recorder.warned("missing or broken alias target")
