"""Process-scoped container for the bridge components."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from openai import AsyncOpenAI
from sqlalchemy.ext.asyncio import AsyncEngine

from bridge.core.config import settings
from bridge.db import database
from bridge.services.conversation.store import ConversationSessionStore
from bridge.services.finalization.coordinator import FinalizationCoordinator
from bridge.services.persistence.conversations import ConversationPersistenceService
from bridge.services.realtime.bridge import RealtimeBridge
from bridge.services.registry.connections import ConnectionRegistry
from bridge.services.supervisor.breadcrumbs import BreadcrumbWriter
from bridge.services.supervisor.engine import SupervisorEngine
from bridge.services.tools.builtins import NoteStore, builtin_tools
from bridge.services.tools.registry import ToolRegistry
from bridge.services.tools.router import FunctionCallRouter

logger = logging.getLogger(__name__)


class BridgeRuntime:
    """Owns every component for the lifetime of the application."""

    def __init__(
        self,
        engine: AsyncEngine,
        registry: ConnectionRegistry,
        store: ConversationSessionStore,
        persistence: ConversationPersistenceService,
        notes: NoteStore,
        supervisor: SupervisorEngine,
        router: FunctionCallRouter,
        bridge: RealtimeBridge,
        coordinator: FinalizationCoordinator,
        breadcrumbs: BreadcrumbWriter,
    ):
        self.engine = engine
        self.registry = registry
        self.store = store
        self.persistence = persistence
        self.notes = notes
        self.supervisor = supervisor
        self.router = router
        self.bridge = bridge
        self.coordinator = coordinator
        self.breadcrumbs = breadcrumbs
        # SMS sender number -> conversation id
        self.sms_threads: Dict[str, str] = {}
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """
        Run a coroutine in the background, outliving the socket that started it.

        Turns keep running when their client disconnects.
        """
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def startup(self) -> None:
        """Create the schema if needed."""
        await database.init_db(self.engine)
        logger.info("[RUNTIME] Bridge runtime started")

    async def shutdown(self) -> None:
        """Close all upstream sessions and client transports."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        bridges = await self.bridge.close_all()
        connections = await self.registry.close_all()
        logger.info(f"[RUNTIME] Shutdown - closed {bridges} upstream sessions, {connections} connections")


def build_runtime(
    engine: Optional[AsyncEngine] = None,
    openai_client: Optional[Any] = None,
    connection_factory: Optional[Callable[[], Any]] = None,
) -> BridgeRuntime:
    """
    Wire up every component.

    Args:
        engine: Database engine (defaults to the configured one)
        openai_client: Client used by the supervisor (defaults to AsyncOpenAI)
        connection_factory: Factory for upstream realtime connections
    """
    engine = engine or database.engine
    persistence = ConversationPersistenceService(database.create_session_factory(engine))
    registry = ConnectionRegistry()
    store = ConversationSessionStore(
        persistence=persistence,
        history_limit=settings.history_window_turns,
        persistence_timeout=settings.persistence_timeout_seconds,
        finalized_cache_size=settings.finalized_cache_size,
    )
    breadcrumbs = BreadcrumbWriter(settings.runtime_data_dir, enabled=settings.breadcrumbs_enabled)

    notes = NoteStore()
    tools = ToolRegistry(builtin_tools(notes))
    if openai_client is None:
        openai_client = AsyncOpenAI(api_key=settings.openai_api_key, organization=settings.openai_organization)
    supervisor = SupervisorEngine(
        openai_client,
        tools=tools,
        registry=registry,
        breadcrumbs=breadcrumbs,
    )
    router = FunctionCallRouter(
        registry,
        store,
        tools,
        supervisor=supervisor,
        escalation_tool_name=settings.escalation_tool_name,
        tool_timeout=settings.tool_timeout_seconds,
    )
    bridge = RealtimeBridge(store, registry, router, connection_factory=connection_factory)
    coordinator = FinalizationCoordinator(
        store,
        registry,
        bridge,
        router,
        persistence=persistence,
        breadcrumbs=breadcrumbs,
        persistence_timeout=settings.persistence_timeout_seconds,
    )
    return BridgeRuntime(
        engine=engine,
        registry=registry,
        store=store,
        persistence=persistence,
        notes=notes,
        supervisor=supervisor,
        router=router,
        bridge=bridge,
        coordinator=coordinator,
        breadcrumbs=breadcrumbs,
    )
