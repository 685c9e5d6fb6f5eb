"""Unit tests for DNSManager views, metadata edits, backups and the CLI.

Reconciliation itself is covered in test_reconciler.py.
"""

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List
from unittest.mock import patch

import pytest

from dns_manager.cli import (
    ActivationRequest,
    DesiredRecord,
    DesiredStateDocument,
    DNSClient,
    DNSManager,
    NotFound,
    RemoteRecord,
    RemoteRejected,
    RemoteUnavailable,
    SnapshotStore,
    generate_identity,
    main,
)

DOMAIN = "xmr.example.com"
NOW = datetime(2024, 5, 1, 12, 0, 0)

# =============================================================================
# Fakes and Helpers
# =============================================================================


class FakeDNSClient(DNSClient):
    """In-memory remote zone."""

    def __init__(self, records: List[RemoteRecord] | None = None):
        self.records: Dict[str, RemoteRecord] = {r.remote_id: r for r in records or []}
        self.create_calls: List[tuple] = []
        self.fail_list = False
        self.reject_create = False

    @property
    def name(self) -> str:
        return "FakeDNS"

    @property
    def domain(self) -> str:
        return DOMAIN

    def list_records(self) -> List[RemoteRecord]:
        if self.fail_list:
            raise RemoteUnavailable("connection refused")
        return list(self.records.values())

    def create_record(self, address, name, comment="", proxied=False, ttl=60) -> str:
        self.create_calls.append((address, name, comment, proxied, ttl))
        if self.reject_create:
            raise RemoteRejected("Cloudflare API error", status_code=400)
        remote_id = f"rec-{len(self.create_calls)}"
        self.records[remote_id] = RemoteRecord(
            remote_id=remote_id, name=f"{name}.{DOMAIN}", address=address, ttl=ttl, comment=comment
        )
        return remote_id

    def delete_record(self, remote_id: str) -> None:
        self.records.pop(remote_id, None)


def remote(name: str, address: str, comment: str = "") -> RemoteRecord:
    return RemoteRecord(
        remote_id=f"cf-{name}-{address}",
        name=f"{name}.{DOMAIN}",
        address=address,
        ttl=60,
        comment=comment,
    )


def desired(name: str, address: str, **kwargs) -> DesiredRecord:
    full_name = f"{name}.{DOMAIN}"
    kwargs.setdefault("identity", generate_identity(full_name, address))
    return DesiredRecord(name=full_name, address=address, **kwargs)


def setup_manager(
    tmp_path: Path,
    remote_records: List[RemoteRecord] | None = None,
    records: List[DesiredRecord] | None = None,
) -> tuple[DNSManager, FakeDNSClient, SnapshotStore]:
    client = FakeDNSClient(remote_records)
    store = SnapshotStore(str(tmp_path), keep_backups=10, clock=lambda: NOW)
    if records is not None:
        store.save(
            "test", DesiredStateDocument(environment="test", domain=DOMAIN, records=records)
        )
    manager = DNSManager(
        client=client,
        store=store,
        default_account_tags=["Pool1"],
        default_container_tags=["Group1"],
        clock=lambda: NOW,
    )
    return manager, client, store


# =============================================================================
# View
# =============================================================================


class TestView:
    """Tests for the unified view of desired and remote records."""

    def test_groups_name_variants_by_address(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(
            tmp_path,
            remote_records=[remote("us", "10.0.0.1")],
            records=[
                desired("us", "10.0.0.1", alias="US", notes="rack 4"),
                desired("eu", "10.0.0.1", alias="EU"),
            ],
        )

        view = manager.view("test")

        assert len(view.groups) == 1
        group = view.groups[0]
        assert group.address == "10.0.0.1"
        assert group.names == "US; EU"
        assert group.notes == "rack 4"
        assert group.has_active_entries is True
        assert [(e.name, e.active) for e in group.entries] == [("us", True), ("eu", False)]
        assert (view.active_count, view.inactive_count) == (1, 1)

    def test_ungrouped_view_has_one_group_per_entry(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(
            tmp_path,
            remote_records=[remote("us", "10.0.0.1")],
            records=[desired("us", "10.0.0.1"), desired("eu", "10.0.0.1")],
        )

        view = manager.view("test", grouped=False)

        assert len(view.groups) == 2
        assert all(len(g.entries) == 1 for g in view.groups)
        assert view.total_addresses == 1

    def test_inactive_group_when_nothing_is_live(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path, records=[desired("us", "10.0.0.2")])

        view = manager.view("test")

        assert view.groups[0].has_active_entries is False
        assert view.active_count == 0

    def test_groups_sorted_numerically_by_address(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(
            tmp_path,
            records=[desired("a", "10.0.0.10"), desired("b", "10.0.0.9"), desired("c", "9.0.0.1")],
        )

        view = manager.view("test")

        assert [g.address for g in view.groups] == ["9.0.0.1", "10.0.0.9", "10.0.0.10"]

    def test_labels_resolved_by_identity(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(
            tmp_path,
            remote_records=[remote("us", "10.0.0.1", comment="cf-comment")],
            records=[desired("us", "10.0.0.1", alias="main", account="Pool1")],
        )

        entry = manager.view("test").groups[0].entries[0]

        assert entry.alias == "main"
        assert entry.account == "Pool1"
        assert entry.active is True

    def test_labels_fall_back_to_address_and_name(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(
            tmp_path,
            remote_records=[remote("us", "10.0.0.1")],
            records=[desired("us", "10.0.0.1", identity="stale-identity", container="Group1")],
        )

        view = manager.view("test")

        assert len(view.groups[0].entries) == 1
        entry = view.groups[0].entries[0]
        assert entry.container == "Group1"
        assert entry.active is True

    def test_imports_remote_when_no_document(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(
            tmp_path, remote_records=[remote("us", "10.0.0.1"), remote("eu", "10.0.0.2", "EU")]
        )

        view = manager.view("test")

        assert view.active_count == 2
        document = store.load("test")
        assert sorted(r.alias for r in document.records) == ["EU", "server-10-0-0-1"]
        assert all(r.description == "Imported from Cloudflare on 2024-05-01" for r in document.records)
        assert document.account_tags == ["Pool1"]

    def test_empty_everything_synthesizes_document(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path)

        view = manager.view("test")

        assert view.groups == []
        assert view.account_tags == ["Pool1"]
        assert view.container_tags == ["Group1"]
        assert not store.document_path("test").exists()

    def test_view_propagates_listing_failure(self, tmp_path: Path) -> None:
        manager, client, _ = setup_manager(tmp_path)
        client.fail_list = True

        with pytest.raises(RemoteUnavailable):
            manager.view("test")


# =============================================================================
# Metadata Edits
# =============================================================================


class TestUpdateTag:
    """Tests for update_tag lookup order and persistence."""

    def test_update_by_identity(self, tmp_path: Path) -> None:
        record = desired("us", "10.0.0.1")
        manager, _, store = setup_manager(tmp_path, records=[record])

        identity = manager.update_tag("test", "account", "Pool2", identity=record.identity)

        assert identity == record.identity
        assert store.load("test").records[0].account == "Pool2"

    def test_update_by_address_and_name(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(
            tmp_path, records=[desired("us", "10.0.0.1", identity="old-identity")]
        )

        manager.update_tag("test", "container", "Group2", name="us", address="10.0.0.1")

        assert store.load("test").records[0].container == "Group2"

    def test_imports_live_record_missing_from_document(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path, remote_records=[remote("us", "10.0.0.1")])

        identity = manager.update_tag("test", "account", "Pool1", name="us", address="10.0.0.1")

        document = store.load("test")
        assert len(document.records) == 1
        record = document.records[0]
        assert record.identity == identity == generate_identity(f"us.{DOMAIN}", "10.0.0.1")
        assert record.account == "Pool1"
        assert record.description == "Added via tag update on 2024-05-01"

    def test_unknown_record_raises_not_found(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path, remote_records=[remote("us", "10.0.0.1")])

        with pytest.raises(NotFound):
            manager.update_tag("test", "account", "Pool1", identity="nope")
        with pytest.raises(NotFound):
            manager.update_tag("test", "account", "Pool1", name="eu", address="10.0.0.1")

    def test_invalid_tag_type(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path, records=[desired("us", "10.0.0.1")])

        with pytest.raises(ValueError):
            manager.update_tag("test", "region", "west", name="us", address="10.0.0.1")


class TestUpdateNotes:
    """Tests for update_notes."""

    def test_updates_every_record_with_address(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(
            tmp_path,
            records=[desired("us", "10.0.0.1"), desired("eu", "10.0.0.1"), desired("x", "10.0.0.2")],
        )

        count = manager.update_notes("test", "10.0.0.1", "moved to rack 7")

        assert count == 2
        notes = {r.name: r.notes for r in store.load("test").records}
        assert notes == {
            f"us.{DOMAIN}": "moved to rack 7",
            f"eu.{DOMAIN}": "moved to rack 7",
            f"x.{DOMAIN}": "",
        }

    def test_unknown_address_raises_not_found(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path, records=[desired("us", "10.0.0.1")])

        with pytest.raises(NotFound):
            manager.update_notes("test", "10.9.9.9", "nothing")

    def test_missing_document_raises_not_found(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path)

        with pytest.raises(NotFound):
            manager.update_notes("test", "10.0.0.1", "nothing")


class TestAddVocabularyTag:
    """Tests for add_vocabulary_tag."""

    def test_adds_sorted_without_duplicates(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path, records=[])

        assert manager.add_vocabulary_tag("test", "account", " Pool3 ") == ["Pool1", "Pool3"]
        assert manager.add_vocabulary_tag("test", "account", "Pool2") == ["Pool1", "Pool2", "Pool3"]
        assert manager.add_vocabulary_tag("test", "account", "Pool2") == ["Pool1", "Pool2", "Pool3"]

        assert store.load("test").account_tags == ["Pool1", "Pool2", "Pool3"]

    def test_creates_document_when_missing(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path)

        manager.add_vocabulary_tag("test", "container", "Group1")

        document = store.load("test")
        assert document.container_tags == ["Group1"]
        assert document.account_tags == ["Pool1"]

    def test_empty_name_rejected(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path)

        with pytest.raises(ValueError):
            manager.add_vocabulary_tag("test", "account", "   ")


# =============================================================================
# Single Entry Creation
# =============================================================================


class TestCreateSingleEntry:
    """Tests for create_single_entry."""

    def test_creates_remote_record_and_persists(self, tmp_path: Path) -> None:
        manager, client, store = setup_manager(tmp_path)

        identity = manager.create_single_entry("test", "us", "10.0.0.5", ttl=0)

        assert client.create_calls == [("10.0.0.5", "us", "us", False, 60)]
        record = store.load("test").records[0]
        assert record.identity == identity == generate_identity(f"us.{DOMAIN}", "10.0.0.5")
        assert record.name == f"us.{DOMAIN}"
        assert record.last_activated_at != ""

    def test_existing_record_is_stamped(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path, records=[desired("us", "10.0.0.5", alias="US")])

        manager.create_single_entry("test", "us", "10.0.0.5", alias="US")

        records = store.load("test").records
        assert len(records) == 1
        assert records[0].last_activated_at != ""

    def test_invalid_address_rejected_before_remote_call(self, tmp_path: Path) -> None:
        manager, client, _ = setup_manager(tmp_path)

        with pytest.raises(ValueError):
            manager.create_single_entry("test", "us", "10.0.0")

        assert client.create_calls == []

    def test_remote_rejection_leaves_document_alone(self, tmp_path: Path) -> None:
        manager, client, store = setup_manager(tmp_path)
        client.reject_create = True

        with pytest.raises(RemoteRejected):
            manager.create_single_entry("test", "us", "10.0.0.5")

        assert not store.document_path("test").exists()


# =============================================================================
# Backups and Health
# =============================================================================


class TestManagerBackups:
    """Tests for the backup surface on DNSManager."""

    def test_backup_list_restore(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path, records=[desired("us", "10.0.0.1")])
        original = store.document_path("test").read_bytes()

        backup = manager.backup("test")
        manager.update_notes("test", "10.0.0.1", "changed")
        backups = manager.list_backups("test")
        assert len(backups) == 2
        assert backups[-1] == backup

        manager.restore("test", str(backup))

        assert store.document_path("test").read_bytes() == original
        assert len(manager.list_backups("test")) == 3

    def test_backup_waits_for_readers(self, tmp_path: Path) -> None:
        """backup() writes and prunes files, so it must not run beside a reader."""
        manager, _, store = setup_manager(tmp_path, records=[desired("us", "10.0.0.1")])
        lock = manager.lock_for("test")
        results: List[Path] = []

        lock.acquire_read()
        try:
            thread = threading.Thread(target=lambda: results.append(manager.backup("test")))
            thread.start()
            thread.join(timeout=0.3)
            assert thread.is_alive()
            assert store.list_backups("test") == []
        finally:
            lock.release_read()

        thread.join(timeout=2)
        assert not thread.is_alive()
        assert store.list_backups("test") == results

    def test_backup_without_document_raises(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path)

        with pytest.raises(NotFound):
            manager.backup("test")


class TestHealth:
    """Tests for health reporting."""

    def test_healthy(self, tmp_path: Path) -> None:
        manager, _, _ = setup_manager(tmp_path)

        health = manager.health("test")

        assert health["status"] == "healthy"
        assert health["environment"] == "test"
        assert health["remote_connected"] is True
        assert health["uptime_seconds"] >= 0

    def test_remote_unreachable(self, tmp_path: Path) -> None:
        manager, client, _ = setup_manager(tmp_path)
        client.fail_list = True

        assert manager.health("test")["remote_connected"] is False


# =============================================================================
# Locking
# =============================================================================


class LockCheckingClient(FakeDNSClient):
    """Records every remote call made while the environment lock was held."""

    def __init__(self, records: List[RemoteRecord] | None = None):
        super().__init__(records)
        self.manager: DNSManager | None = None
        self.calls: List[str] = []
        self.calls_under_lock: List[str] = []

    def _check(self, call: str) -> None:
        self.calls.append(call)
        lock = self.manager.lock_for("test")
        if lock.acquire_write(timeout=0.5):
            lock.release_write()
        else:
            self.calls_under_lock.append(call)

    def list_records(self) -> List[RemoteRecord]:
        self._check("list")
        return super().list_records()

    def create_record(self, address, name, comment="", proxied=False, ttl=60) -> str:
        self._check("create")
        return super().create_record(address, name, comment, proxied, ttl)

    def delete_record(self, remote_id: str) -> None:
        self._check("delete")
        super().delete_record(remote_id)


def setup_lock_checking_manager(
    tmp_path: Path, remote_records: List[RemoteRecord] | None = None
) -> tuple[DNSManager, LockCheckingClient, SnapshotStore]:
    client = LockCheckingClient(remote_records)
    store = SnapshotStore(str(tmp_path), keep_backups=0, clock=lambda: NOW)
    manager = DNSManager(client=client, store=store, clock=lambda: NOW)
    client.manager = manager
    return manager, client, store


class TestLocking:
    """Remote calls happen outside the document lock; edits serialize on it."""

    def test_reconcile_calls_remote_without_lock(self, tmp_path: Path) -> None:
        manager, client, store = setup_lock_checking_manager(
            tmp_path, remote_records=[remote("old", "10.0.0.9")]
        )

        result = manager.reconcile(
            "test", [ActivationRequest(name="us", address="10.0.0.1", alias="US")]
        )

        assert result.applied == 2
        assert {"list", "create", "delete"} <= set(client.calls)
        assert client.calls_under_lock == []
        assert [r.address for r in store.load("test").records] == ["10.0.0.1"]

    def test_view_import_calls_remote_without_lock(self, tmp_path: Path) -> None:
        manager, client, store = setup_lock_checking_manager(
            tmp_path, remote_records=[remote("us", "10.0.0.1")]
        )

        manager.view("test")

        assert client.calls == ["list"]
        assert client.calls_under_lock == []
        assert store.document_path("test").exists()

    def test_update_tag_import_calls_remote_without_lock(self, tmp_path: Path) -> None:
        manager, client, _ = setup_lock_checking_manager(
            tmp_path, remote_records=[remote("us", "10.0.0.1")]
        )

        manager.update_tag("test", "account", "Pool1", name="us", address="10.0.0.1")

        assert client.calls == ["list"]
        assert client.calls_under_lock == []

    def test_create_single_entry_calls_remote_without_lock(self, tmp_path: Path) -> None:
        manager, client, _ = setup_lock_checking_manager(tmp_path)

        manager.create_single_entry("test", "us", "10.0.0.5")

        assert client.calls == ["create"]
        assert client.calls_under_lock == []

    def test_concurrent_vocabulary_additions_are_both_kept(self, tmp_path: Path) -> None:
        manager, _, store = setup_manager(tmp_path, records=[])
        barrier = threading.Barrier(2)
        errors: List[BaseException] = []

        def add(tag: str) -> None:
            barrier.wait(timeout=2)
            try:
                manager.add_vocabulary_tag("test", "account", tag)
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=add, args=(tag,)) for tag in ("Pool3", "Pool2")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert errors == []
        assert store.load("test").account_tags == ["Pool1", "Pool2", "Pool3"]

    def test_concurrent_edits_of_different_records_are_both_kept(self, tmp_path: Path) -> None:
        us, eu = desired("us", "10.0.0.1"), desired("eu", "10.0.0.2")
        manager, _, store = setup_manager(tmp_path, records=[us, eu])
        barrier = threading.Barrier(2)

        def tag() -> None:
            barrier.wait(timeout=2)
            manager.update_tag("test", "container", "Group2", identity=us.identity)

        def notes() -> None:
            barrier.wait(timeout=2)
            manager.update_notes("test", "10.0.0.2", "rack 9")

        threads = [threading.Thread(target=tag), threading.Thread(target=notes)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        records = {r.address: r for r in store.load("test").records}
        assert records["10.0.0.1"].container == "Group2"
        assert records["10.0.0.2"].notes == "rack 9"
        # Every save backed up the previous document under its own name
        assert len(store.list_backups("test")) == 2


# =============================================================================
# CLI
# =============================================================================


@pytest.fixture
def no_credentials(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for var in ("CF_API_TOKEN", "CF_ZONE_ID", "DNS_NAME"):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


def cli_args(tmp_path: Path, *extra: str) -> List[str]:
    return [
        "--env", "test",
        "--data-dir", str(tmp_path),
        "--backup-dir", str(tmp_path / "backups"),
        *extra,
    ]


class TestCLI:
    """Tests for the command-line entry point."""

    def test_list_backups_without_credentials(
        self, tmp_path: Path, no_credentials, capsys: pytest.CaptureFixture
    ) -> None:
        main(cli_args(tmp_path, "--list-backups"))

        assert "No backups found for test environment" in capsys.readouterr().out

    def test_backup_command(self, tmp_path: Path, no_credentials, capsys: pytest.CaptureFixture) -> None:
        setup_manager(tmp_path, records=[desired("us", "10.0.0.1")])

        main(cli_args(tmp_path, "--backup"))

        assert "Backup created:" in capsys.readouterr().out
        assert len(list((tmp_path / "backups").glob("servers.test.json.backup-*"))) == 1

    def test_backup_without_document_exits_nonzero(self, tmp_path: Path, no_credentials) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(cli_args(tmp_path, "--backup"))

        assert excinfo.value.code == 1

    def test_missing_credentials_exits_nonzero(self, tmp_path: Path, no_credentials) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(cli_args(tmp_path, "--status"))

        assert excinfo.value.code == 1

    def test_apply_reconciles_activation_file(
        self, tmp_path: Path, no_credentials, capsys: pytest.CaptureFixture
    ) -> None:
        no_credentials.setenv("CF_API_TOKEN", "token-abcdefgh-1234")
        no_credentials.setenv("CF_ZONE_ID", "zone-123")
        no_credentials.setenv("DNS_NAME", DOMAIN)
        activation_file = tmp_path / "active.yaml"
        activation_file.write_text("active_servers:\n  - {name: us, ip: 10.0.0.1, alias: US}\n")
        client = FakeDNSClient([remote("old", "10.0.0.9")])

        with patch("dns_manager.cli.CloudflareClient", return_value=client):
            main(cli_args(tmp_path, "--apply", str(activation_file)))

        result = json.loads(capsys.readouterr().out)
        assert result["success"] is True
        assert result["applied"] == 2
        assert [r.address for r in client.records.values()] == ["10.0.0.1"]
