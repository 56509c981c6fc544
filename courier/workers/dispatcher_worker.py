"""Background task dispatch worker."""

import asyncio

from ..config import settings
from ..dispatcher import TaskDispatcher
from ..handlers import HandlerRegistry, load_handler_modules
from .base import PollingWorker


def build_dispatcher(registry: HandlerRegistry | None = None) -> TaskDispatcher:
    """Dispatcher with handlers loaded from ``settings.handler_modules``."""
    if registry is None:
        registry = HandlerRegistry()
        load_handler_modules(registry, settings.handler_modules)
    return TaskDispatcher(registry)


class DispatcherWorker(PollingWorker):
    name = "dispatcher"

    def __init__(self, dispatcher: TaskDispatcher, **kwargs) -> None:
        kwargs.setdefault("interval_seconds", settings.dispatcher_interval_seconds)
        kwargs.setdefault("session_factory", dispatcher.session_factory)
        super().__init__(**kwargs)
        self.dispatcher = dispatcher

    async def tick(self) -> None:
        await self.dispatcher.run_tick()


def main() -> None:
    worker = DispatcherWorker(build_dispatcher())
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
