# tests/services/test_allowed_ip.py
from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from aegis_gateway.core.errors import DuplicateEntry, InvalidAddress, NotFound
from aegis_gateway.db.time import utcnow
from aegis_gateway.models import AllowedIp
from aegis_gateway.services.allowed_ip import AllowedIpStore, validate_ip_address

VALID = [
    "192.168.1.1",
    "10.0.0.1",
    "172.16.0.1",
    "8.8.8.8",
    "203.0.113.7",
    "255.255.255.255",
    "2001:db8::1",
    "fd00::1",
]
MALFORMED = [
    "256.1.1.1",
    "192.168.1",
    "192.168.1.1.1",
    "192.168.1.01",
    "010.0.0.1",
    "",
    " ",
    "192.168.1.1:8080",
    "http://192.168.1.1",
    "192.168.1.0/24",
    "localhost",
    "2001:db8::g",
    "2001:db8:::1",
    "fe80::1%eth0",
    "１９２.168.1.1",
]
RESTRICTED = [
    "127.0.0.1",
    "127.1.1.1",
    "0.0.0.0",
    "0.1.2.3",
    "169.254.1.1",
    "224.0.0.1",
    "239.255.255.255",
    "240.0.0.1",
    "254.255.255.255",
    "::1",
    "::",
    "fe80::1",
    "ff00::1",
    "ff02::1",
    "::ffff:127.0.0.1",
]


@pytest.fixture()
def store(db_session: Session) -> AllowedIpStore:
    return AllowedIpStore(db_session)


@pytest.mark.parametrize("address", VALID)
def test_valid_addresses_are_accepted(address: str) -> None:
    assert validate_ip_address(address)


@pytest.mark.parametrize("address", MALFORMED + RESTRICTED)
def test_invalid_addresses_are_rejected(address: str) -> None:
    with pytest.raises(InvalidAddress):
        validate_ip_address(address)


@pytest.mark.parametrize("value", [None, 192168, ["8.8.8.8"]])
def test_non_string_input_is_rejected(value: object) -> None:
    with pytest.raises(InvalidAddress):
        validate_ip_address(value)


def test_canonical_forms() -> None:
    assert validate_ip_address("  192.168.1.1  ") == "192.168.1.1"
    assert validate_ip_address("::ffff:192.0.2.1") == "192.0.2.1"
    assert validate_ip_address("2001:DB8:0:0:0:0:0:1") == "2001:db8::1"


@pytest.mark.parametrize("address", RESTRICTED)
def test_add_rejects_restricted_ranges(store: AllowedIpStore, address: str) -> None:
    with pytest.raises(InvalidAddress):
        store.add("alice", address)


@pytest.mark.parametrize("address", VALID)
def test_add_succeeds_exactly_once_per_pair(store: AllowedIpStore, address: str) -> None:
    entry = store.add("alice", address, "office")
    assert entry.is_active is True
    assert entry.description == "office"
    with pytest.raises(DuplicateEntry):
        store.add("alice", address)
    # Another principal may allow the same address.
    assert store.add("bob", address).principal_id == "bob"


def test_duplicate_detection_uses_canonical_form(store: AllowedIpStore) -> None:
    store.add("alice", "2001:db8::1")
    with pytest.raises(DuplicateEntry):
        store.add("alice", "2001:DB8:0::1")


def test_soft_disabled_entry_does_not_block_re_adding(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    store.update(entry.id, "alice", {"is_active": False})
    again = store.add("alice", "8.8.8.8")
    assert again.id != entry.id


def test_list_returns_active_entries_for_owner(store: AllowedIpStore) -> None:
    first = store.add("alice", "8.8.8.8")
    second = store.add("alice", "8.8.4.4")
    disabled = store.add("alice", "1.1.1.1")
    store.update(disabled.id, "alice", {"is_active": False})
    store.add("bob", "9.9.9.9")

    entries = store.list("alice")
    assert {entry.id for entry in entries} == {first.id, second.id}
    assert all(entry.principal_id == "alice" for entry in entries)


def test_list_orders_newest_first(store: AllowedIpStore, db_session: Session) -> None:
    older = store.add("alice", "8.8.8.8")
    newer = store.add("alice", "8.8.4.4")
    older.created_at = utcnow() - timedelta(days=1)
    db_session.commit()
    assert [entry.id for entry in store.list("alice")] == [newer.id, older.id]


def test_update_changes_fields(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8", "old")
    updated = store.update(entry.id, "alice", {"description": "new", "ip_address": "8.8.4.4"})
    assert updated.description == "new"
    assert updated.ip_address == "8.8.4.4"


def test_update_validates_new_address(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    store.add("alice", "8.8.4.4")
    with pytest.raises(InvalidAddress):
        store.update(entry.id, "alice", {"ip_address": "127.0.0.1"})
    with pytest.raises(DuplicateEntry):
        store.update(entry.id, "alice", {"ip_address": "8.8.4.4"})


def test_update_requires_active_owned_entry(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    with pytest.raises(NotFound):
        store.update(entry.id, "bob", {"description": "mine now"})
    with pytest.raises(NotFound):
        store.update("missing", "alice", {"description": "x"})
    store.update(entry.id, "alice", {"is_active": False})
    with pytest.raises(NotFound):
        store.update(entry.id, "alice", {"description": "x"})


def test_update_rejects_unknown_fields(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    with pytest.raises(ValueError):
        store.update(entry.id, "alice", {"principal_id": "bob"})


def test_remove_deletes_owned_entry(store: AllowedIpStore, db_session: Session) -> None:
    entry = store.add("alice", "8.8.8.8")
    with pytest.raises(NotFound):
        store.remove(entry.id, "bob")
    removed = store.remove(entry.id, "alice")
    assert removed.ip_address == "8.8.8.8"
    assert db_session.get(AllowedIp, entry.id) is None
    with pytest.raises(NotFound):
        store.remove(entry.id, "alice")


def test_is_allowed_records_last_use(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    assert entry.last_used_at is None

    assert store.is_allowed("alice", "8.8.8.8") is True
    assert store.is_allowed("alice", "::ffff:8.8.8.8") is True
    assert store.is_allowed("alice", "8.8.4.4") is False
    assert store.is_allowed("bob", "8.8.8.8") is False
    assert store.is_allowed("alice", "garbage") is False
    assert store.list("alice")[0].last_used_at is not None


def test_is_allowed_ignores_disabled_entries(store: AllowedIpStore) -> None:
    entry = store.add("alice", "8.8.8.8")
    store.update(entry.id, "alice", {"is_active": False})
    assert store.is_allowed("alice", "8.8.8.8") is False


def test_is_allowed_survives_failed_timestamp_write(
    store: AllowedIpStore, db_session: Session, mocker
) -> None:
    store.add("alice", "8.8.8.8")
    mocker.patch.object(
        db_session, "commit", side_effect=OperationalError("UPDATE", {}, Exception("locked"))
    )
    assert store.is_allowed("alice", "8.8.8.8") is True


def test_stats(store: AllowedIpStore, db_session: Session) -> None:
    store.add("alice", "8.8.8.8")
    stale = store.add("alice", "8.8.4.4")
    disabled = store.add("alice", "1.1.1.1")
    store.update(disabled.id, "alice", {"is_active": False})
    store.add("bob", "9.9.9.9")

    store.is_allowed("alice", "8.8.8.8")
    stale.last_used_at = utcnow() - timedelta(days=8)
    db_session.commit()

    stats = store.stats("alice")
    assert (stats.total, stats.active, stats.recently_used) == (3, 2, 1)
    assert store.stats("carol") == type(stats)(0, 0, 0)
