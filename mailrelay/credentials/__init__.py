from .models import CloudApiSettings, SmtpSettings, TokenState, TransportConfig
from .store import ConfigStore, JsonFileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from .vault import CredentialVault, load_host_secrets

__all__ = [
    "CloudApiSettings",
    "ConfigStore",
    "CredentialVault",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "SmtpSettings",
    "TokenState",
    "TransportConfig",
    "load_host_secrets",
]
