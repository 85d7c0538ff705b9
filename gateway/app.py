from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import GatewayConfig, config as default_config

from gateway.backend import AgentBackend, ConversationConfig
from gateway.conversation_service import ConversationService
from gateway.events import EventEmitter
from gateway.http.metrics import MetricsCollector
from gateway.http.middleware import SlidingWindowLimiter, error_body, register_http_middlewares
from gateway.http.router import router as api_router


def create_app(
    backend: Optional[AgentBackend] = None,
    settings: Optional[GatewayConfig] = None,
    tool_registry=None,
    mcp_manager=None,
) -> FastAPI:
    """
    Build the gateway application.

    Without an explicit `backend` the OpenAI-backed conversation core is
    constructed at startup from `settings`. Without an explicit
    `tool_registry` the built-in tools are loaded and, when `mcp.enabled`,
    the configured MCP servers contribute theirs.
    """
    settings = settings or default_config
    metrics = MetricsCollector()
    event_emitter = EventEmitter()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_backend = None
        registry = tool_registry
        agent_backend = backend
        manager = mcp_manager
        system_prompt = settings.prompts.gateway_prompt()
        try:
            if registry is None:
                from agentkit.tools.tasks import build_default_registry

                registry = build_default_registry(event_emitter=event_emitter)
                if manager is None and settings.mcp.enabled:
                    from agentkit.mcp.mcp_manager import MCPManager

                    manager = MCPManager(settings.mcp)
            if manager is not None:
                await manager.register_tools(registry)
            logger.info("Tool registry loaded with {} tools", len(registry))

            if agent_backend is None:
                logger.info("Initializing conversation core...")
                from conversation_core import OpenAIAgentBackend

                owned_backend = agent_backend = OpenAIAgentBackend(
                    api_config=settings.api,
                    tools=registry,
                    system_prompt=system_prompt,
                )
                logger.info("Conversation core initialized (model {})", settings.api.model)

            def _conversation_config(conversation_id: str) -> ConversationConfig:
                return ConversationConfig(
                    conversation_id=conversation_id,
                    model=settings.api.model,
                    system_prompt=system_prompt,
                    streaming=True,
                )

            app.state.tool_registry = registry
            app.state.mcp_manager = manager
            app.state.heartbeat_interval_s = settings.turn.heartbeat_interval_s
            app.state.conversation_service = ConversationService(
                agent_backend,
                turn_timeout_s=settings.turn.timeout_s,
                config_factory=_conversation_config,
                event_emitter=event_emitter,
                metrics=metrics,
            )
            yield
        finally:
            logger.info("Cleaning up resources...")
            service = getattr(app.state, "conversation_service", None)
            if service is not None:
                await service.shutdown()
                app.state.conversation_service = None
            if owned_backend is not None:
                try:
                    await owned_backend.close()
                except Exception as e:
                    logger.warning(f"Backend cleanup failed: {e}")
            if manager is not None:
                await manager.clean_services()

    app = FastAPI(
        title="Epic Copilot Gateway",
        description="Streaming chat gateway in front of a conversational agent",
        version=settings.system.version,
        lifespan=lifespan,
    )
    app.state.metrics = metrics
    app.state.event_emitter = event_emitter
    app.state.conversation_service = None

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(
                "http_error", str(exc.detail), getattr(request.state, "request_id", None)
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"Invalid {field}" if field else "Invalid request body"
        return JSONResponse(
            status_code=400,
            content=error_body(
                "invalid_request", message, getattr(request.state, "request_id", None)
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on {}: {}", request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content=error_body(
                "internal_error", str(exc), getattr(request.state, "request_id", None)
            ),
        )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_http_middlewares(
        app,
        metrics,
        SlidingWindowLimiter(
            settings.server.rate_limit_requests, settings.server.rate_limit_window_s
        ),
    )

    app.include_router(api_router, prefix="/api")

    @app.get("/", response_model=Dict[str, str])
    async def root():
        return {
            "message": "Epic Copilot Gateway is running",
            "version": settings.system.version,
            "status": "running",
            "docs": "/docs",
            "chat": "/api/chat",
        }

    @app.get("/health")
    async def health_check(request: Request):
        return {
            "status": "healthy",
            "agent_ready": request.app.state.conversation_service is not None,
            "timestamp": str(asyncio.get_running_loop().time()),
        }

    return app


app = create_app()
