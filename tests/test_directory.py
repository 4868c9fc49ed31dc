import pytest

from tenant_mail_relay.directory import DomainDirectory, normalise_domain
from tenant_mail_relay.errors import ConflictError, NotFoundError, ValidationError
from tenant_mail_relay.persistence import Persistence


async def make_directory(tmp_path) -> DomainDirectory:
    persistence = Persistence(str(tmp_path / "dir.db"))
    await persistence.init_db()
    return DomainDirectory(persistence)


def test_normalise_domain():
    assert normalise_domain("  Example.COM ") == "example.com"
    assert normalise_domain(None) == ""


@pytest.mark.asyncio
async def test_register_returns_token_that_resolves(tmp_path):
    directory = await make_directory(tmp_path)
    entry = await directory.register("Example.com")

    assert entry["domain"] == "example.com"
    assert entry["token"]
    assert await directory.lookup_by_token(entry["token"]) == "example.com"

    other = await directory.register("other.org")
    assert other["token"] != entry["token"]


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "   ", "localhost"])
async def test_register_rejects_invalid_names(tmp_path, name):
    directory = await make_directory(tmp_path)
    with pytest.raises(ValidationError, match="invalid domain"):
        await directory.register(name)


@pytest.mark.asyncio
async def test_register_twice_conflicts_and_keeps_token(tmp_path):
    directory = await make_directory(tmp_path)
    entry = await directory.register("example.com")

    with pytest.raises(ConflictError, match="domain already exists"):
        await directory.register("EXAMPLE.com")
    assert await directory.lookup_by_token(entry["token"]) == "example.com"


@pytest.mark.asyncio
async def test_delete_invalidates_token(tmp_path):
    directory = await make_directory(tmp_path)
    entry = await directory.register("example.com")

    await directory.delete("example.com")
    assert await directory.list() == []
    with pytest.raises(NotFoundError):
        await directory.lookup_by_token(entry["token"])
    with pytest.raises(NotFoundError, match="domain not found"):
        await directory.delete("example.com")


@pytest.mark.asyncio
async def test_list_is_ordered_by_name(tmp_path):
    directory = await make_directory(tmp_path)
    for name in ["zeta.io", "alpha.io", "mid.io"]:
        await directory.register(name)
    assert [d["domain"] for d in await directory.list()] == ["alpha.io", "mid.io", "zeta.io"]


@pytest.mark.asyncio
async def test_seed_is_idempotent(tmp_path):
    directory = await make_directory(tmp_path)
    existing = await directory.register("example.com")

    seeded = await directory.seed(["example.com", " new.org ", "", "nodot"])
    assert seeded == ["new.org"]
    assert await directory.seed(["example.com", "new.org"]) == []

    assert [d["domain"] for d in await directory.list()] == ["example.com", "new.org"]
    assert await directory.lookup_by_token(existing["token"]) == "example.com"
