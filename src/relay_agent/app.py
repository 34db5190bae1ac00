"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from relay_agent.ai.client import AnthropicAdapter, OpenAIAdapter, ProviderAdapter
from relay_agent.ai.compactor import ContextCompactor
from relay_agent.ai.orchestrator import StreamOrchestrator
from relay_agent.ai.tools.catalog import builtin_declarations
from relay_agent.ai.tools.registry import ToolRegistry
from relay_agent.ai.tools.summarize import SummarizeConversationTool
from relay_agent.config import AppConfig
from relay_agent.core.cancellation import CancellationRegistry
from relay_agent.core.types import StopReason
from relay_agent.executor.broker import ToolExecutionBroker
from relay_agent.log import get_logger
from relay_agent.server.websocket import ConnectionHub, RelayServer
from relay_agent.storage.conversation_repo import ConversationRepository
from relay_agent.storage.database import Database

logger = get_logger(__name__)


class RelayAgentApp:
    """Top-level application orchestrator."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.conversation_repo = ConversationRepository(self.db, config.pricing)
        self.cancellation = CancellationRegistry(self.conversation_repo)
        self.hub = ConnectionHub(config.server.max_connections)
        self.broker = ToolExecutionBroker(self.hub, config.broker.timeout)
        self.provider = self._create_provider()
        self.compactor = ContextCompactor(self.provider, self.conversation_repo)
        self.tool_registry = ToolRegistry()
        self.orchestrator = StreamOrchestrator(
            provider=self.provider,
            conversation_repo=self.conversation_repo,
            tool_registry=self.tool_registry,
            cancellation=self.cancellation,
            provider_config=config.provider,
            limits=config.limits,
        )
        self.server = RelayServer(
            config.server, self.hub, self.orchestrator, self.cancellation, self.broker
        )

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Database
        await self.db.initialize()

        # 2. Tools
        self._register_tools()

        # 3. Transport
        await self.server.start()

        logger.info(
            "relay_agent_started",
            backend=self.config.provider.backend,
            model=self.provider.model_name,
            tool_count=len(self.tool_registry),
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        stopped = await self.cancellation.stop_all(StopReason.SHUTDOWN)
        failed = self.broker.cancel_all("shutdown")
        await self.server.stop()
        await self.db.close()
        logger.info("relay_agent_stopped", turns_stopped=stopped, tool_calls_failed=failed)

    def _register_tools(self) -> None:
        declarations = builtin_declarations() if self.config.builtin_tools else []
        declarations.extend(self.config.tools)
        self.tool_registry.register_remote(declarations, self.broker)
        self.tool_registry.register(SummarizeConversationTool(self.compactor))

    def _create_provider(self) -> ProviderAdapter:
        """Create the provider adapter for the configured backend."""
        provider_cfg = self.config.provider
        match provider_cfg.backend:
            case "anthropic":
                if not self.config.anthropic:
                    raise ValueError("Backend 'anthropic' selected but no 'anthropic' section in config")
                return AnthropicAdapter(self.config.anthropic, provider_cfg)
            case "openai":
                if not self.config.openai:
                    raise ValueError("Backend 'openai' selected but no 'openai' section in config")
                return OpenAIAdapter(self.config.openai, provider_cfg)
            case _:
                raise ValueError(f"Unknown provider backend: {provider_cfg.backend}")
