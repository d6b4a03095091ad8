from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=str(_PROJECT_ROOT / ".env"), env_prefix="CONVKEYS_")

    app_name: str = "convkeys"
    environment: str = "dev"

    # Local device database: exchange record mirror, migration progress, audit trail.
    database_url: str = "sqlite:///./convkeys.db"

    # Key derivation. The salt is application-wide and must match on every client.
    hkdf_salt: str = "convkeys-e2e-salt-v1"

    # Key exchange records
    exchange_ttl_hours: int = 24
    record_poll_interval_seconds: float = 1.0

    # Retries against the key-record synchronization store
    store_retry_attempts: int = 3
    store_retry_base_delay_seconds: float = 0.2

    # Conversation key cache
    cache_idle_minutes: int = 30
    cache_max_entries: int = 256

    # Group rotation trigger: never, daily, weekly, monthly, on_demand.
    rotation_policy: str = "on_demand"

    # Migration from server-stored keys
    migration_sample_size: int = 10
    # 32-byte AES key, base64url-encoded. The pre-migration backend wrapped conversation keys with it.
    legacy_master_key: str = ""
    # Optional: the legacy master key was derived from a passphrase file + managed salt.
    legacy_passphrase_file: str | None = None
    legacy_salt_file: str = "/var/lib/convkeys/salt.bin"


settings = Settings()
