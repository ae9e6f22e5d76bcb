# clinic_guard/core/service_base.py
"""
Lifecycle base for the store clients behind the counter store and the
session store.

A store client is created unconnected, connects once on initialize(),
counts failed operations by name and reports them with its health.
"""
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import Optional, Dict, Any, TypeVar, Generic
import logging
from clinic_guard.core.exceptions import ServiceError, ConfigurationError

ConfigType = TypeVar('ConfigType', bound='StoreConfig')


@dataclass
class StoreConfig:
    """Settings shared by every store client"""
    url: Optional[str] = None
    operation_timeout: Optional[float] = 2.0


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract store client.

    Subclasses connect in _initialize_client() and release the connection
    in _cleanup(). Operations report failures through _record_failure() so
    that degraded stores show up in get_metrics().
    """

    def __init__(
        self,
        config: ConfigType,
        name: str,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.service_name = name
        self.logger = logger or logging.getLogger(f"clinic_guard.store.{name}")
        self._initialized = False
        self._client = None
        self._failures: Counter = Counter()

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Connect to the store.

        Returns:
            The client, or None when the store is not configured

        Raises:
            ConfigurationError: the configuration is unusable
        """

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Check that the store answers.

        Returns:
            {"healthy": bool, "status": str, "details": dict}
        """

    async def initialize(self) -> None:
        """Connect once; later calls are no-ops"""
        if self._initialized:
            return

        self.logger.info(f"🔌 Connecting {self.service_name}...")
        try:
            self._client = await self._initialize_client()
        except ConfigurationError:
            raise
        except Exception as e:
            self.logger.error(f"Could not create {self.service_name} client", exc_info=True)
            raise ServiceError(
                f"Failed to initialize {self.service_name}",
                service_name=self.service_name,
                operation="initialize",
                details={'original_error': str(e), 'error_type': type(e).__name__}
            )

        self._initialized = True
        state = "connected" if self._client is not None else "disabled"
        self.logger.info(f"✅ {self.service_name} ready ({state})")

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def shutdown(self) -> None:
        """Release the connection. Never raises; problems are logged."""
        if not self._initialized:
            return

        try:
            await self._cleanup()
        except Exception:
            self.logger.error(f"Error while closing {self.service_name}", exc_info=True)
        finally:
            self._client = None
            self._initialized = False
            self.logger.info(f"{self.service_name} closed")

    async def _cleanup(self) -> None:
        pass

    def _record_failure(self, operation: str) -> None:
        self._failures[operation] += 1

    def get_metrics(self) -> Dict[str, Any]:
        """Connection state and failed operations since startup"""
        return {
            "store": self.service_name,
            "initialized": self._initialized,
            "connected": self._client is not None,
            "failed_operations": dict(self._failures),
        }
