from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from convkeys.config import settings
from convkeys.db import SessionLocal, engine
from convkeys.db_init import init_db
from convkeys.services.audit import AuditTrail
from convkeys.services.conversation_keys import ConversationKeyService
from convkeys.services.conversations import ConversationRegistry
from convkeys.services.directory import InMemoryDirectory, PublicKeyFetcher
from convkeys.services.exchange import KeyExchange
from convkeys.services.group_keystore import GroupKeyDistributor
from convkeys.services.key_cache import ConversationKeyCache
from convkeys.services.legacy_keystore import LegacyKeyStore
from convkeys.services.migration import HistoricalSampler, MigrationCoordinator
from convkeys.services.sync_store import KeyRecordStore, SqlKeyRecordStore

logger = logging.getLogger(__name__)


@dataclass
class KeyEngine:
    service: ConversationKeyService
    audit: AuditTrail
    legacy_store: LegacyKeyStore
    migration: MigrationCoordinator | None = None

    async def close(self) -> None:
        await self.service.cache.shutdown()


def create_key_engine(
    local_user_id: str,
    local_private_key: bytes,
    *,
    public_keys: dict[str, bytes] | None = None,
    fetcher: PublicKeyFetcher | None = None,
    store: KeyRecordStore | None = None,
    session_factory: sessionmaker[Session] | None = None,
    sampler: HistoricalSampler | None = None,
    legacy_master_key: bytes | None = None,
    init_schema: bool = True,
) -> KeyEngine:
    """Wire one device's key engine. Call from inside the event loop that will use it."""
    if session_factory is None:
        session_factory = SessionLocal
        if init_schema:
            logger.info("Database init: %s", init_db(engine))
    elif init_schema:
        logger.info("Database init: %s", init_db(session_factory.kw["bind"]))

    salt = settings.hkdf_salt.encode()
    audit = AuditTrail(session_factory, user_id=local_user_id)
    directory = InMemoryDirectory(local_user_id, local_private_key, public_keys=public_keys, fetcher=fetcher)
    store = store if store is not None else SqlKeyRecordStore(session_factory)
    cache = ConversationKeyCache().open()
    registry = ConversationRegistry()
    distributor = GroupKeyDistributor(local_user_id, directory, store, cache, registry, audit=audit, salt=salt)
    exchange = KeyExchange(local_user_id, directory, store, cache, registry, audit=audit, salt=salt)
    service = ConversationKeyService(local_user_id, directory, cache, registry, distributor, exchange, salt=salt)
    legacy_store = LegacyKeyStore(session_factory, master_key=legacy_master_key)

    migration = None
    if sampler is not None:
        migration = MigrationCoordinator(
            session_factory,
            sampler,
            service.get_key,
            legacy_store=legacy_store,
            audit=audit,
        )
    logger.info("Key engine ready for user=%s (%s)", local_user_id, settings.environment)
    return KeyEngine(service=service, audit=audit, legacy_store=legacy_store, migration=migration)
