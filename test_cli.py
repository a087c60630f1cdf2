"""Tests for the menu handlers that talk to the pipelines."""
import asyncio

import cli
from accounts.password import FixedPasswordProvider
from accounts.session import Session
from storage.file_manager import register_public_key, upload_bytes
from storage.ledger import MemoryLedgerBackend, MetadataLedger


class _OfflineLedgerBackend(MemoryLedgerBackend):
    async def scan(self, predicate):
        raise ConnectionError("ledger unreachable")


def _answers(monkeypatch, *answers):
    replies = iter(answers)
    monkeypatch.setattr("builtins.input", lambda prompt="": next(replies))


def test_listing_failures_are_reported_not_raised(world, monkeypatch, capsys):
    session = Session(
        "alice",
        vault=world.vault("alice"),
        blobs=world.blobs,
        ledger=MetadataLedger(_OfflineLedgerBackend()),
        passwords=FixedPasswordProvider("correct horse"),
    )

    _answers(monkeypatch, "all", "timestamp", "desc")
    cli.handle_list_files(session)
    cli.handle_list_shared(session)
    _answers(monkeypatch, "")
    cli.handle_download(session)
    cli.handle_delete(session)

    out = capsys.readouterr().out
    assert out.count("Listing failed") == 4


def test_list_files_menu_sorts(world, monkeypatch, capsys):
    alice = world.session("alice")
    asyncio.run(register_public_key(alice))
    records = [asyncio.run(upload_bytes(alice, payload)) for payload in (b"one", b"two")]

    _answers(monkeypatch, "all", "cid", "asc")
    cli.handle_list_files(alice)

    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()[:2] in ("1.", "2.")]
    expected = [cli._short(address) for address in sorted(r.content_address for r in records)]
    assert [line.split()[1] for line in lines] == expected


def test_clear_private_key_asks_first(world, monkeypatch, capsys):
    alice = world.session("alice")
    asyncio.run(register_public_key(alice))

    _answers(monkeypatch, "no")
    cli.handle_clear(alice)
    assert alice.vault.exists("alice")

    _answers(monkeypatch, "yes")
    cli.handle_clear(alice)
    assert not alice.vault.exists("alice")
    assert "Private key removed" in capsys.readouterr().out

    cli.handle_clear(alice)
    assert "No private key stored" in capsys.readouterr().out
