"""Framework lifecycle handlers."""

from collections.abc import Iterable

from ..config import Settings
from ..database.store import StateStore
from ..models.agent import Framework
from ..models.errors import UnknownFrameworkError
from ..services.container_runtime import ContainerRuntime
from ..services.crypto import ConfigCipher
from .base import FrameworkHandler
from .elizaos import ElizaOSHandler
from .openclaw import OpenClawHandler
from .picoclaw import PicoClawHandler

HANDLER_CLASSES: dict[Framework, type[FrameworkHandler]] = {
    Framework.ELIZAOS: ElizaOSHandler,
    Framework.OPENCLAW: OpenClawHandler,
    Framework.PICOCLAW: PicoClawHandler,
}


class HandlerRegistry:
    """Maps framework identifiers to handler instances."""

    def __init__(self, handlers: Iterable[FrameworkHandler]) -> None:
        self._handlers = {handler.framework: handler for handler in handlers}

    @classmethod
    def build(
        cls,
        runtime: ContainerRuntime,
        store: StateStore,
        settings: Settings | None = None,
        cipher: ConfigCipher | None = None,
    ) -> "HandlerRegistry":
        return cls(
            handler_class(runtime, store, settings, cipher)
            for handler_class in HANDLER_CLASSES.values()
        )

    def get(self, framework: str | Framework) -> FrameworkHandler:
        """
        Look up the handler for a framework.

        Raises:
            UnknownFrameworkError: No handler for that identifier
        """
        try:
            return self._handlers[Framework(framework)]
        except (ValueError, KeyError):
            raise UnknownFrameworkError(f"Unknown framework: {framework}") from None


__all__ = [
    "FrameworkHandler",
    "ElizaOSHandler",
    "OpenClawHandler",
    "PicoClawHandler",
    "HandlerRegistry",
    "HANDLER_CLASSES",
]
