import asyncio

from sqlalchemy import inspect, text

from convkeys.db import make_engine, make_session_factory
from convkeys.db_init import init_db
from convkeys.main import create_key_engine
from convkeys.schemas.records import MigrationStatus
from convkeys.services.crypto import x25519_generate
from convkeys.services.sync_store import InMemoryKeyRecordStore


def test_init_db_creates_tables(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'fresh.db'}")

    assert init_db(engine) == "schema ok"
    tables = set(inspect(engine).get_table_names())
    assert {"wrapped_key_records", "migration_records", "legacy_conversation_keys", "audit_logs"} <= tables
    assert init_db(engine) == "schema ok"


def test_init_db_adds_missing_columns_and_resets_interrupted_verification(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'old.db'}")
    with engine.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE migration_records ("
                "id CHAR(32) PRIMARY KEY, conversation_id VARCHAR(255) UNIQUE, "
                "legacy_key_fingerprint VARCHAR(64), status VARCHAR(20), "
                "created_at TIMESTAMP, verified_at TIMESTAMP)"
            )
        )
        conn.execute(
            text(
                "INSERT INTO migration_records (id, conversation_id, legacy_key_fingerprint, status) "
                "VALUES ('0123456789abcdef0123456789abcdef', 'c1', 'ab', 'verifying')"
            )
        )

    assert init_db(engine) == "schema updated"
    columns = {c["name"] for c in inspect(engine).get_columns("migration_records")}
    assert {"attempts", "samples_checked", "error"} <= columns
    with engine.connect() as conn:
        status = conn.execute(text("SELECT status FROM migration_records")).scalar_one()
    assert status == MigrationStatus.FAILED.value


def test_create_key_engine_wires_a_working_device(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'device.db'}")
    session_factory = make_session_factory(engine)
    alice_private, alice_public = x25519_generate()
    bob_private, bob_public = x25519_generate()

    async def scenario():
        store = InMemoryKeyRecordStore()
        alice = create_key_engine(
            "alice",
            alice_private,
            public_keys={"bob": bob_public},
            store=store,
            session_factory=session_factory,
        )
        bob = create_key_engine(
            "bob",
            bob_private,
            public_keys={"alice": alice_public},
            store=store,
            session_factory=session_factory,
            init_schema=False,
        )
        try:
            _, raw_key = await alice.service.distributor.create_epoch("g1", {"bob"})
            await bob.service.register_group("g1")
            assert (await bob.service.get_key("g1", 1)).raw_key == raw_key
            assert alice.migration is None
            assert [e.event_type for e in bob.audit.events(conversation_id="g1")] == [
                "encryption.group_epoch_created",
                "encryption.key_exchange_accepted",
            ]
        finally:
            await alice.close()
            await bob.close()
        assert not alice.service.cache.is_open

    asyncio.run(scenario())
