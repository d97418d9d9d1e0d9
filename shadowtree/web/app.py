"""Web server for shadowtree: terminal page, event channel and HTTP info routes."""

import logging
import socket
import threading
import webbrowser
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from shadowtree import __version__, git_utils
from shadowtree.commands import CommandError
from shadowtree.config import Config, load_config
from shadowtree.container import ContainerRuntime
from shadowtree.github import list_pull_requests
from shadowtree.models import GitInfo
from shadowtree.orchestrator import SyncOrchestrator
from shadowtree.registry import SessionRegistry
from shadowtree.relay import SessionRelay
from shadowtree.web.channel import EventChannel

# Module-level logger for web app
logger = logging.getLogger("shadowtree.web")

BASE_DIR = Path(__file__).resolve().parent

templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))
templates.env.globals["version"] = __version__

# Shown until the shadow repository can report its own branch
BRANCH_PLACEHOLDER = "loading..."

# How many ports past the configured one to try
PORT_SEARCH_RANGE = 20


def create_app(
    config: Config,
    repo_path: Path,
    branch: Optional[str] = None,
    runtime: Optional[ContainerRuntime] = None,
) -> FastAPI:
    """Build the web app and the relay/orchestrator it drives.

    Args:
        config: shadowtree config
        repo_path: Host repository shadow repos are cloned from
        branch: Branch created in each shadow repo (config default when None)
        runtime: Container runtime adapter (created from config when None)

    Returns:
        FastAPI app; the relay, orchestrator and registry hang off `app.state`
    """
    runtime = runtime or ContainerRuntime(config.runtime, timeout=config.command_timeout_s)
    registry = SessionRegistry()
    orchestrator = SyncOrchestrator(
        registry, runtime, config, repo_path, target_branch=branch or config.shadow_branch
    )
    relay = SessionRelay(registry, runtime, config, orchestrator)
    channel = EventChannel(relay, orchestrator, registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Serving repository %s", repo_path)
        yield  # Server runs here

        channel.close()
        await relay.close()
        logger.info("Web server stopped")

    app = FastAPI(title="shadowtree", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.repo_path = repo_path
    app.state.runtime = runtime
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    app.state.relay = relay
    app.state.channel = channel

    @app.get("/", response_class=HTMLResponse)
    async def index(request: Request) -> HTMLResponse:
        return templates.TemplateResponse(request, "index.html", {"project": config.project})

    @app.get("/api/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/api/containers")
    async def containers() -> list:
        """Running sandbox containers, matched by name."""
        try:
            found = await runtime.list_containers(config.container_prefix)
        except Exception:
            logger.exception("Failed to list containers")
            raise HTTPException(status_code=500, detail="Failed to list containers")
        return [
            {"Id": c.id, "Name": c.name, "State": c.status, "Image": c.image}
            for c in found
        ]

    @app.get("/api/git/info")
    async def git_info(container_id: Optional[str] = Query(None, alias="containerId")) -> dict:
        """Current branch, web URLs and open PRs for a container's shadow repository."""
        current_branch = BRANCH_PLACEHOLDER
        shadow = registry.get_shadow_repo(container_id) if container_id else None

        try:
            if shadow is not None:
                if shadow.initialized:
                    try:
                        current_branch = await shadow.current_branch()
                    except CommandError as e:
                        logger.warning("Could not get branch from shadow repo: %s", e)
            else:
                current_branch = await git_utils.get_head_ref(repo_path)
        except CommandError:
            logger.exception("Failed to get git info")
            raise HTTPException(status_code=500, detail="Failed to get git info")

        remote_url = await git_utils.get_remote_url(repo_path)
        repo_url = git_utils.remote_to_web_url(remote_url) if remote_url else ""
        prs = await list_pull_requests(repo_path, current_branch)

        return GitInfo(
            current_branch=current_branch,
            branch_url=f"{repo_url}/tree/{current_branch}" if repo_url else "",
            repo_url=repo_url,
            prs=prs,
        ).to_event()

    @app.websocket("/ws")
    async def events(websocket: WebSocket) -> None:
        await websocket.accept()
        await channel.serve(websocket)

    return app


def is_port_available(host: str, port: int) -> bool:
    """Check if a port is available for binding."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
            return True
    except OSError:
        return False


def find_available_port(host: str, start_port: int) -> int:
    """Find the first free port at or after start_port.

    Raises:
        RuntimeError: If nothing in the search range is free
    """
    for port in range(start_port, start_port + PORT_SEARCH_RANGE):
        if is_port_available(host, port):
            return port
    raise RuntimeError(f"No free port in {start_port}-{start_port + PORT_SEARCH_RANGE - 1}")


def open_browser(url: str, delay: float = 1.0) -> None:
    """Open the UI in a browser once the server had a moment to start."""

    def _open() -> None:
        try:
            webbrowser.open(url)
        except webbrowser.Error as e:
            logger.warning("Could not open browser automatically: %s", e)

    threading.Timer(delay, _open).start()


def run_server(
    host: Optional[str] = None,
    port: Optional[int] = None,
    repo_path: Optional[Path] = None,
    branch: Optional[str] = None,
    open_in_browser: Optional[bool] = None,
    config: Optional[Config] = None,
) -> None:
    """Run the web server.

    Args:
        host: Host to bind to (config default when None)
        port: Preferred port; the next free one is used when busy
        repo_path: Repository to shadow (current directory when None)
        branch: Branch to create in shadow repos
        open_in_browser: Open the UI in a browser (config default when None)
        config: Preloaded config (loaded from repo_path when None)
    """
    repo_path = (repo_path or Path.cwd()).resolve()
    config = config or load_config(repo_path)
    host = host or config.server_host

    requested = port or config.server_port
    actual = find_available_port(host, requested)
    if actual != requested:
        logger.warning("Port %d is in use, using %d instead", requested, actual)

    app = create_app(config, repo_path, branch=branch)

    url = f"http://localhost:{actual}"
    logger.info("Web UI at %s", url)
    if config.open_browser if open_in_browser is None else open_in_browser:
        open_browser(url)

    import uvicorn
    # Single worker: sessions and shadow repos live in this process
    uvicorn.run(app, host=host, port=actual, workers=1, loop="asyncio")


if __name__ == "__main__":
    run_server()
