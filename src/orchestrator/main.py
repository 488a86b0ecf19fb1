"""MCP Host - FastAPI Application.

The host API provides:
- MCP server install/uninstall
- Tool listing for the UI
- Model downloads for the local inference backend
- Chat title generation
- OAuth token exchange and revocation through the OAuth proxy
- A websocket forwarding event bus messages
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from shared.config import Settings, get_settings
from shared.errors import MCPHostError, ValidationError
from shared.logging import get_logger, setup_logging
from shared.models import InstallRequest, ServerRecord
from tool_analysis import OllamaClient

from orchestrator.services import Services, build_services

logger = get_logger(__name__)

VERSION = "0.1.0"

# Never sent back to the UI
SECRET_RECORD_FIELDS = {"oauth_tokens", "oauth_client_info"}


# Request/Response Models
class PullModelRequest(BaseModel):
    """Request to download a model."""
    model: str = Field(..., min_length=1, description="Model name, e.g. phi3:3.8b")


class ChatTitleRequest(BaseModel):
    """Opening messages of a chat to summarize into a title."""
    messages: list[str] = Field(..., min_length=1)


class TokenExchangeRequest(BaseModel):
    """Authorization code returned by the provider's redirect."""
    code: str = Field(..., min_length=1)
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    resource: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    server_count: int
    tool_count: int


def serialize_record(record: ServerRecord) -> dict[str, Any]:
    """Server record as returned by the API, without secrets."""
    data = record.model_dump(mode="json", exclude=SECRET_RECORD_FIELDS)
    data["has_oauth_tokens"] = record.oauth_tokens is not None
    return data


def get_services(request: Request) -> Services:
    """Dependency to get the service container."""
    return request.app.state.services


def create_app(
    services_factory: Optional[Callable[[Settings], Services]] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services_factory: Builds the service container (defaults to ``build_services``)
        settings: Settings to use (defaults to ``get_settings()``)
    """
    factory = services_factory or build_services

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        app_settings = settings or get_settings()
        setup_logging(app_settings.log_level, json_output=app_settings.environment == "production")

        logger.info("Starting MCP host")
        services = factory(app_settings)
        app.state.services = services
        await services.start()

        yield

        await services.shutdown()

    app = FastAPI(
        title="MCP Host",
        description="Local host for sandboxed and remote MCP servers",
        version=VERSION,
        lifespan=lifespan
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MCPHostError)
    async def host_error_handler(request: Request, exc: MCPHostError):
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(services: Services = Depends(get_services)):
        """Health check endpoint."""
        servers = await services.orchestrator.list_servers()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            server_count=len(servers),
            tool_count=len(services.aggregator.get_all_tools()),
        )

    @app.get("/api/mcp_server", tags=["MCP Servers"])
    async def list_servers(services: Services = Depends(get_services)):
        """List installed MCP servers."""
        servers = await services.orchestrator.list_servers()
        return [serialize_record(s) for s in servers]

    @app.post("/api/mcp_server/install", tags=["MCP Servers"])
    async def install_server(
        request: InstallRequest,
        services: Services = Depends(get_services)
    ):
        """Install an MCP server. Local servers start in the background."""
        record = await services.orchestrator.install(request)
        return serialize_record(record)

    @app.delete("/api/mcp_server/{server_id}", tags=["MCP Servers"])
    async def uninstall_server(server_id: str, services: Services = Depends(get_services)):
        """Uninstall an MCP server."""
        await services.orchestrator.uninstall(server_id)
        return {"success": True}

    @app.get("/api/tools", tags=["Tools"])
    async def list_tools(services: Services = Depends(get_services)):
        """List available tools with their analysis state."""
        await services.aggregator.refresh_analysis_cache()
        return [t.model_dump(mode="json") for t in services.aggregator.available_tools()]

    @app.post("/api/ollama/pull", tags=["Ollama"])
    async def pull_model(
        request: PullModelRequest,
        background_tasks: BackgroundTasks,
        services: Services = Depends(get_services)
    ):
        """Start a model download; progress arrives over the websocket."""
        if not isinstance(services.inference, OllamaClient):
            raise ValidationError("Model downloads need the Ollama backend")

        async def _pull() -> None:
            try:
                await services.inference.pull(request.model)
            except Exception as e:
                logger.error("Model download failed", model=request.model, error=str(e))

        background_tasks.add_task(_pull)
        return {"success": True, "message": f"Downloading {request.model}"}

    @app.post("/api/chat/{chat_id}/title", tags=["Chat"])
    async def generate_chat_title(
        chat_id: str,
        request: ChatTitleRequest,
        services: Services = Depends(get_services)
    ):
        """Generate a chat title and broadcast it as chat-title-updated."""
        title = await services.inference.generate_chat_title(request.messages)
        services.events.publish("chat-title-updated", {"chat_id": chat_id, "title": title})
        return {"chat_id": chat_id, "title": title}

    @app.post("/api/oauth/{server_id}/token", tags=["OAuth"])
    async def exchange_token(
        server_id: str,
        request: TokenExchangeRequest,
        services: Services = Depends(get_services)
    ):
        """Exchange an authorization code and store the tokens on the server."""
        record = await services.orchestrator.get_server(server_id)
        if record.oauth_config is None:
            raise ValidationError(f"MCP server '{server_id}' has no OAuth config")

        tokens = await services.broker.exchange_code(
            server_id,
            record.oauth_config,
            request.model_dump(exclude_none=True),
        )
        record = await services.orchestrator.complete_oauth(server_id, tokens)
        return {"success": True, "status": record.status.value}

    @app.post("/api/oauth/{server_id}/revoke", tags=["OAuth"])
    async def revoke_token(server_id: str, services: Services = Depends(get_services)):
        """Revoke a server's tokens (best effort) and forget them."""
        await services.orchestrator.revoke_oauth(server_id)
        return {"success": True}

    @app.websocket("/ws")
    async def events_socket(websocket: WebSocket):
        """Forward event bus messages to the client."""
        services: Services = websocket.app.state.services
        await websocket.accept()
        subscription = services.events.subscribe()

        async def _watch_disconnect() -> None:
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass
            finally:
                subscription.close()

        watcher = asyncio.create_task(_watch_disconnect())
        try:
            async for message in subscription:
                await websocket.send_json(message)
        except WebSocketDisconnect:
            pass
        finally:
            subscription.close()
            watcher.cancel()

    return app


app = create_app()


def main():
    """Run the MCP host API."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
