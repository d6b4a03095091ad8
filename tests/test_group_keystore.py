import asyncio
from datetime import timedelta

import pytest

from conftest import make_device
from convkeys.config import settings
from convkeys.errors import EpochPartiallyIssued, ExchangeRecordPending, PeerKeyUnavailable, SyncStoreUnavailable
from convkeys.services.audit import AuditTrail
from convkeys.services.group_keystore import RotationPolicy
from convkeys.services.sync_store import InMemoryKeyRecordStore


def _targets(store, conversation_id, epoch):
    return {
        rec.target_id
        for rec in store._records.values()
        if rec.conversation_id == conversation_id and rec.epoch == epoch
    }


def test_three_person_rotation_leaves_removed_member_out(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice, bob, carol = (make_device(uid, keys, store, now=wall_clock) for uid in ("alice", "bob", "carol"))

        epoch1, key1 = await alice.distributor.create_epoch("g1", {"alice", "bob", "carol"})
        assert epoch1 == 1
        assert _targets(store, "g1", 1) == {"bob", "carol"}
        assert (await bob.exchange.resolve_group_key("g1", 1)).raw_key == key1
        assert (await carol.exchange.resolve_group_key("g1", 1)).raw_key == key1

        epoch2 = await alice.distributor.remove_participant("g1", "carol")
        assert epoch2 == 2
        assert _targets(store, "g1", 2) == {"bob"}
        assert alice.registry.get("g1").members == frozenset({"alice", "bob"})

        bob_key2 = (await bob.exchange.resolve_group_key("g1", 2)).raw_key
        alice_key2 = alice.distributor.key_material("g1", 2).raw_key
        assert bob_key2 == alice_key2
        assert bob_key2 != key1
        assert bob.registry.get("g1").current_epoch == 2

        with pytest.raises(ExchangeRecordPending):
            await carol.exchange.resolve_group_key("g1", 2)

    asyncio.run(scenario())


def test_rotation_produces_fresh_keys(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = make_device("alice", keys, store, now=wall_clock)
        keys["bob"]

        seen = set()
        for expected_epoch in range(1, 6):
            epoch, raw_key = await alice.distributor.rotate("g1", {"bob"})
            assert epoch == expected_epoch
            seen.add(raw_key)
        assert len(seen) == 5

    asyncio.run(scenario())


def test_add_participant_wraps_only_the_current_epoch_for_the_newcomer(keys, wall_clock, session_factory):
    async def scenario():
        store = InMemoryKeyRecordStore()
        audit = AuditTrail(session_factory, user_id="alice")
        alice = make_device("alice", keys, store, now=wall_clock, audit=audit)
        dave = make_device("dave", keys, store, now=wall_clock)
        keys["bob"]

        _, raw_key = await alice.distributor.create_epoch("g1", {"bob"})
        await alice.distributor.rotate("g1", {"bob"})
        key2 = alice.distributor.key_material("g1", 2).raw_key
        before = len(store._records)

        record = await alice.distributor.add_participant("g1", "dave")

        assert (record.target_id, record.epoch) == ("dave", 2)
        assert len(store._records) == before + 1
        assert (await dave.exchange.resolve_group_key("g1", 2)).raw_key == key2
        assert key2 != raw_key
        assert "dave" in alice.registry.get("g1").members
        assert [e.event_type for e in audit.events(conversation_id="g1")] == [
            "encryption.group_epoch_created",
            "encryption.group_epoch_created",
            "encryption.group_member_added",
        ]

    asyncio.run(scenario())


def test_receiver_can_add_participant_from_cached_key(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = make_device("alice", keys, store, now=wall_clock)
        bob = make_device("bob", keys, store, now=wall_clock)
        erin = make_device("erin", keys, store, now=wall_clock)

        _, raw_key = await alice.distributor.create_epoch("g1", {"bob"})
        await bob.exchange.resolve_group_key("g1", 1)
        await bob.distributor.add_participant("g1", "erin")

        assert (await erin.exchange.resolve_group_key("g1", 1)).raw_key == raw_key

    asyncio.run(scenario())


def test_missing_public_key_issues_nothing(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = make_device("alice", keys, store, now=wall_clock)
        keys["bob"]

        with pytest.raises(PeerKeyUnavailable):
            await alice.distributor.create_epoch("g1", {"bob", "mallory"})

        assert store._records == {}
        assert alice.registry.get("g1") is None

    asyncio.run(scenario())


def test_reissue_rotates_to_a_new_epoch(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = make_device("alice", keys, store, now=wall_clock, ttl=timedelta(hours=1))
        bob = make_device("bob", keys, store, now=wall_clock)

        await alice.distributor.create_epoch("g1", {"bob"})
        wall_clock.advance(timedelta(hours=3))

        epoch, raw_key = await alice.distributor.reissue("g1")
        assert epoch == 2
        assert (await bob.exchange.resolve_group_key("g1", 2)).raw_key == raw_key

    asyncio.run(scenario())


def test_store_outage_is_retried(keys, wall_clock, monkeypatch):
    monkeypatch.setattr(settings, "store_retry_base_delay_seconds", 0.0)

    class FlakyStore(InMemoryKeyRecordStore):
        def __init__(self):
            super().__init__()
            self.failures = 2

        async def create(self, record):
            if self.failures:
                self.failures -= 1
                raise SyncStoreUnavailable("backend offline")
            await super().create(record)

    async def scenario():
        store = FlakyStore()
        alice = make_device("alice", keys, store, now=wall_clock)
        keys["bob"]

        await alice.distributor.create_epoch("g1", {"bob"})
        assert _targets(store, "g1", 1) == {"bob"}

    asyncio.run(scenario())


def test_store_outage_for_one_member_is_reported_and_can_be_completed(
    keys, wall_clock, session_factory, monkeypatch
):
    monkeypatch.setattr(settings, "store_retry_base_delay_seconds", 0.0)

    class OutageStore(InMemoryKeyRecordStore):
        def __init__(self):
            super().__init__()
            self.unreachable = {"carol"}

        async def create(self, record):
            if record.target_id in self.unreachable:
                raise SyncStoreUnavailable("backend offline")
            await super().create(record)

    async def scenario():
        store = OutageStore()
        audit = AuditTrail(session_factory, user_id="alice")
        alice = make_device("alice", keys, store, now=wall_clock, audit=audit)
        bob = make_device("bob", keys, store, now=wall_clock)
        carol = make_device("carol", keys, store, now=wall_clock)

        with pytest.raises(EpochPartiallyIssued) as excinfo:
            await alice.distributor.create_epoch("g1", {"bob", "carol"})
        assert (excinfo.value.epoch, excinfo.value.missing) == (1, frozenset({"carol"}))
        assert excinfo.value.recoverable

        # the issuer can use the epoch and bob already has his record
        issued = await alice.cache.peek("g1", 1)
        assert issued is not None
        assert (await bob.exchange.resolve_group_key("g1", 1)).raw_key == issued.raw_key
        assert _targets(store, "g1", 1) == {"bob"}
        assert alice.distributor.missing_members("g1", 1) == frozenset({"carol"})
        assert [e.event_type for e in audit.events(conversation_id="g1")] == ["encryption.group_epoch_incomplete"]

        assert await alice.distributor.complete_epoch("g1") == frozenset({"carol"})

        store.unreachable.clear()
        assert await alice.distributor.complete_epoch("g1") == frozenset()
        assert _targets(store, "g1", 1) == {"bob", "carol"}
        assert (await carol.exchange.resolve_group_key("g1", 1)).raw_key == issued.raw_key
        assert alice.distributor.missing_members("g1", 1) == frozenset()
        assert alice.registry.get("g1").current_epoch == 1

    asyncio.run(scenario())


def test_time_based_rotation_policy(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        daily = make_device("alice", keys, store, now=wall_clock, rotation_policy=RotationPolicy.DAILY)
        on_demand = make_device("bob", keys, store, now=wall_clock)
        keys["carol"]

        await daily.distributor.create_epoch("g1", {"carol"})
        await on_demand.distributor.create_epoch("g2", {"carol"})
        started = daily.registry.get("g1").epoch_started_at

        assert not daily.distributor.needs_rotation("g1", started + timedelta(hours=1))
        assert daily.distributor.needs_rotation("g1", started + timedelta(days=1, minutes=1))
        assert not daily.distributor.needs_rotation("unknown")
        assert on_demand.distributor.rotation_policy is RotationPolicy.ON_DEMAND
        assert not on_demand.distributor.needs_rotation("g2", started + timedelta(days=365))

    asyncio.run(scenario())


def test_forget_drops_issuer_keys(keys, wall_clock):
    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = make_device("alice", keys, store, now=wall_clock)
        keys["bob"]

        await alice.distributor.create_epoch("g1", {"bob"})
        assert alice.distributor.has_epoch_key("g1", 1)
        alice.distributor.forget("g1")

        assert not alice.distributor.has_epoch_key("g1", 1)
        with pytest.raises(KeyError):
            alice.distributor.key_material("g1", 1)

    asyncio.run(scenario())
