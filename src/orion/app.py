"""Wire the runtime components together from settings."""

import logging
from dataclasses import dataclass

from orion.config import Settings, get_settings
from orion.events.writer import EventSink, LogEventSink
from orion.memory.store import FileMemoryStore, SafeMemory
from orion.orchestrator.compaction import Compactor
from orion.orchestrator.loop import AgentLoop
from orion.providers.factory import build_router
from orion.providers.router import ProviderRouter
from orion.research.aggregate import Aggregator
from orion.research.knowledge import KnowledgeSource
from orion.research.orchestrator import ResearchOrchestrator
from orion.research.scoring import KeywordOverlapScorer, RelevanceScorer
from orion.research.subagent import SubagentRunner
from orion.research.tool import ResearchTool
from orion.tools.client import build_client
from orion.tools.config import ToolServerSettings, load_tool_servers
from orion.tools.health import HealthRegistry
from orion.tools.registry import ToolRegistry
from orion.tools.retry import RetryPolicy
from orion.tools.runtime import ToolRuntime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Orion:
    settings: Settings
    router: ProviderRouter
    registry: ToolRegistry
    health: HealthRegistry
    runtime: ToolRuntime
    compactor: Compactor
    memory: SafeMemory
    sink: EventSink | None
    research: ResearchTool | None = None

    def new_loop(self, *, user_id: str | None = None, system_context: str = "") -> AgentLoop:
        return AgentLoop(
            self.router,
            self.runtime,
            compactor=self.compactor,
            settings=self.settings,
            sink=self.sink,
            memory=self.memory,
            user_id=user_id,
            system_context=system_context,
        )

    async def aclose(self) -> None:
        await self.registry.aclose()


def build_registry(settings: Settings, servers: ToolServerSettings) -> ToolRegistry:
    registry = ToolRegistry(discovery_ttl_seconds=settings.tool_discovery_ttl_seconds)
    for server_id, config in servers.enabled().items():
        registry.add_client(
            build_client(
                server_id,
                config,
                connect_timeout_seconds=settings.tool_connect_timeout_seconds,
                call_timeout_seconds=settings.tool_call_timeout_seconds,
            )
        )
    return registry


def build_app(
    settings: Settings | None = None,
    *,
    router: ProviderRouter | None = None,
    servers: ToolServerSettings | None = None,
    sink: EventSink | None = None,
    scorer: RelevanceScorer | None = None,
    research: bool = True,
) -> Orion:
    settings = settings or get_settings()
    router = router or build_router(settings)
    if servers is None:
        servers = load_tool_servers(settings.tool_servers_config)
    if sink is None:
        sink = LogEventSink()
    scorer = scorer or KeywordOverlapScorer()

    registry = build_registry(settings, servers)
    health = HealthRegistry(
        failure_threshold=settings.tool_failure_threshold,
        cooldown_seconds=settings.tool_health_cooldown_seconds,
        max_servers=settings.tool_health_max_servers,
    )
    runtime = ToolRuntime(
        registry,
        health,
        retry=RetryPolicy(
            max_attempts=settings.tool_max_attempts,
            base_delay_seconds=settings.tool_retry_base_delay_seconds,
        ),
        sink=sink,
        default_timeout_seconds=settings.tool_call_timeout_seconds,
    )
    app = Orion(
        settings=settings,
        router=router,
        registry=registry,
        health=health,
        runtime=runtime,
        compactor=Compactor(
            router, sink=sink, timeout_seconds=settings.compaction_timeout_seconds
        ),
        memory=SafeMemory(FileMemoryStore(settings.memory_dir)),
        sink=sink,
    )
    if research:
        knowledge = KnowledgeSource(
            settings.knowledge_dir,
            max_files=settings.knowledge_max_files,
            max_file_bytes=settings.knowledge_max_file_bytes,
            max_depth=settings.knowledge_max_depth,
            scorer=scorer,
        )
        runner = SubagentRunner(
            router,
            runtime,
            settings=settings,
            sink=sink,
            knowledge=knowledge,
            scorer=scorer,
        )
        aggregator = Aggregator(
            router,
            scorer=scorer,
            relevance_threshold=settings.research_relevance_threshold,
            max_findings=settings.research_max_findings,
            low_quality_threshold=settings.research_low_quality_threshold,
            sink=sink,
        )
        app.research = ResearchTool(
            ResearchOrchestrator(runner.run, sink=sink),
            aggregator,
            registry,
            knowledge=knowledge,
            settings=settings,
        )
        app.research.register()
    logger.info(
        "Orion assembled servers=%s research=%s", ",".join(registry.server_ids()), research
    )
    return app
