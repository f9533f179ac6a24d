"""
Process lifecycle management

Components register named cleanup hooks on an injected LifecycleManager
instead of installing their own exit handlers. Registration is idempotent
per name, and shutdown runs every hook exactly once, newest first.
"""

import asyncio
import inspect
import signal
from collections import OrderedDict
from typing import Any, Callable, Optional

from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="system")

ShutdownHook = Callable[[], Any]


class LifecycleManager:
    def __init__(self):
        self._hooks: "OrderedDict[str, ShutdownHook]" = OrderedDict()
        self._shutdown_started = False
        self._shutdown_task: Optional[asyncio.Task] = None
        self._signals_installed = False
        self._done = asyncio.Event()

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_started

    def register(self, name: str, hook: ShutdownHook) -> bool:
        """Register ``hook`` under ``name``. Returns False if the name is taken."""
        if name in self._hooks:
            logger.debug(f"Shutdown hook {name} already registered")
            return False
        self._hooks[name] = hook
        logger.debug(f"Registered shutdown hook {name}")
        return True

    def unregister(self, name: str) -> None:
        if self._hooks.pop(name, None) is not None:
            logger.debug(f"Unregistered shutdown hook {name}")

    def is_registered(self, name: str) -> bool:
        return name in self._hooks

    async def shutdown(self) -> None:
        """Run all hooks once, in reverse registration order."""
        if self._shutdown_started:
            return
        self._shutdown_started = True

        logger.info(f"Shutting down ({len(self._hooks)} hooks)")
        while self._hooks:
            name, hook = self._hooks.popitem(last=True)
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Shutdown hook {name} failed: {e}", exc_info=True)
        logger.info("Shutdown complete")
        self._done.set()

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info(f"Received {sig.name}, shutting down")
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self.shutdown())

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Route SIGINT/SIGTERM to shutdown(). Safe to call more than once."""
        if self._signals_installed:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                # Windows event loops do not support add_signal_handler
                logger.warning(f"Signal handler for {sig.name} not supported on this platform")
        self._signals_installed = True

    async def wait_for_shutdown(self) -> None:
        """Block until shutdown() has finished."""
        await self._done.wait()
