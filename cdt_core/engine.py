"""
Engine Composition Module

Wires storage, cache, audit log, lifecycle and queries together from
configuration. Build one engine at process start and close it at shutdown.
"""

from datetime import date
from typing import Callable, Optional

from .audit import AuditLog
from .cache import CacheBackend, create_cache, fail_safe
from .certificates import CertificateRules
from .config import CdtConfig, get_config
from .lifecycle import CertificateLifecycle
from .logging_config import get_logger, setup_logging_from_config
from .queries import CacheTtl, CertificateQueries
from .repository import CertificateRepository
from .storage import StorageInterface, create_storage


class CdtEngine:
    """CDT engine with all components initialized"""

    def __init__(self, config: Optional[CdtConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 cache: Optional[CacheBackend] = None,
                 today: Callable[[], date] = date.today):
        self.config = config or get_config()
        self.logger = get_logger("cdt_core.engine")

        # Initialize storage and cache
        self.storage = storage or create_storage(
            self.config.storage_backend, self.config.database_path
        )
        self.cache = fail_safe(cache or create_cache(
            self.config.cache_backend,
            redis_url=self.config.redis_url,
            key_prefix=self.config.redis_key_prefix,
            default_ttl_seconds=self.config.cache_ttl_list_seconds
        ))

        # Initialize core components
        self.repository = CertificateRepository(self.storage)
        self.audit_log = AuditLog(self.storage)
        self.rules = CertificateRules.from_config(self.config)
        self.lifecycle = CertificateLifecycle(
            self.repository, self.audit_log, self.cache, self.rules, today=today
        )
        self.queries = CertificateQueries(
            self.repository, self.audit_log, self.cache,
            ttl=CacheTtl.from_config(self.config),
            default_page_size=self.config.default_page_size
        )

        self.logger.info(
            f"CDT engine ready (storage={self.config.storage_backend}, "
            f"cache={self.config.cache_backend})"
        )

    def close(self) -> None:
        """Release the cache and storage connections"""
        self.cache.close()
        self.storage.close()
        self.logger.info("CDT engine closed")

    def __enter__(self) -> 'CdtEngine':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_engine(config: Optional[CdtConfig] = None, configure_logging: bool = False,
                  **kwargs) -> CdtEngine:
    """Build an engine from configuration (global settings by default)"""
    settings = config or get_config()
    if configure_logging:
        setup_logging_from_config(settings)
    return CdtEngine(config=settings, **kwargs)
