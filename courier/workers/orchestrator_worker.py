"""Outbound message scheduling worker."""

import asyncio

from ..config import settings
from ..llm_client import LLMClient
from ..orchestrator import MessageOrchestrator
from ..relevance import LLMRelevanceProvider, RelevanceChecker
from ..render import LLMRenderer
from .base import PollingWorker


def build_orchestrator(client: LLMClient | None = None) -> MessageOrchestrator:
    """Orchestrator wired to the configured LLM provider and the outbox transport."""
    client = client or LLMClient()
    return MessageOrchestrator(
        renderer=LLMRenderer(client),
        relevance=RelevanceChecker(LLMRelevanceProvider(client)),
    )


class OrchestratorWorker(PollingWorker):
    name = "orchestrator"

    def __init__(self, orchestrator: MessageOrchestrator, **kwargs) -> None:
        kwargs.setdefault("interval_seconds", settings.orchestrator_interval_seconds)
        kwargs.setdefault("session_factory", orchestrator.session_factory)
        super().__init__(**kwargs)
        self.orchestrator = orchestrator

    async def tick(self) -> None:
        await self.orchestrator.run_tick()


def main() -> None:
    worker = OrchestratorWorker(build_orchestrator())
    asyncio.run(worker.run_forever())


if __name__ == "__main__":
    main()
