from datetime import datetime

import pytest

from convkeys.db import Base, make_engine, make_session_factory
from convkeys.services.conversation_keys import ConversationKeyService
from convkeys.services.conversations import ConversationRegistry
from convkeys.services.crypto import x25519_generate
from convkeys.services.directory import InMemoryDirectory
from convkeys.services.exchange import KeyExchange
from convkeys.services.group_keystore import GroupKeyDistributor
from convkeys.services.key_cache import ConversationKeyCache
from convkeys.services.key_derivation import material_from_raw_key


class FakeClock:
    """Settable stand-in for datetime.utcnow / time.monotonic."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'convkeys-test.db'}")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def keys():
    """Fresh X25519 key pairs per user id: keys['alice'] -> (private, public)."""

    class _Keys(dict):
        def __missing__(self, user_id):
            self[user_id] = x25519_generate()
            return self[user_id]

        def public(self, *user_ids):
            return {uid: self[uid][1] for uid in user_ids}

    return _Keys()


@pytest.fixture
def wall_clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, 0))


@pytest.fixture
def mono_clock():
    return FakeClock(1000.0)


def make_material(conversation_id="c1", epoch=1, raw_key=None):
    return material_from_raw_key(raw_key or bytes(range(1, 33)), conversation_id, epoch)


def make_device(user_id, keys, store, *, audit=None, now=None, ttl=None, rotation_policy=None):
    """Full key stack for one participant, sharing ``store`` with the others."""

    async def fetch(uid):
        pair = keys.get(uid)
        return pair[1] if pair is not None else None

    directory = InMemoryDirectory(user_id, keys[user_id][0], fetcher=fetch)
    cache = ConversationKeyCache().open()
    registry = ConversationRegistry()
    extra = {"now": now} if now is not None else {}
    distributor = GroupKeyDistributor(
        user_id,
        directory,
        store,
        cache,
        registry,
        audit=audit,
        ttl=ttl,
        rotation_policy=rotation_policy,
        **extra,
    )
    exchange = KeyExchange(user_id, directory, store, cache, registry, audit=audit, poll_interval=0.01, **extra)
    return ConversationKeyService(user_id, directory, cache, registry, distributor, exchange)
