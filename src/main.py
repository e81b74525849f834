# -----------------------------------------------------------------------------
# SLIPWAY - WEB SERVICE
# -----------------------------------------------------------------------------
# The application the image recipes package and the template deploys.
#
# Endpoints:
# - GET  /                 : Landing page
# - POST /hello            : Greeting form
# - GET  /health           : Health check (also probed after deployment)
# - POST /hooks/ado/build  : Azure DevOps build.complete service hook
# - /static                : Static assets
# -----------------------------------------------------------------------------

import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from rich.console import Console
from rich.panel import Panel

PROJECT_ROOT = Path(__file__).parent.parent

load_dotenv(PROJECT_ROOT / ".env")

from src.hooks import HookError
from src.hooks import router as hooks_router

console = Console()

VERSION = "1.0.0"


def resolve_asset_root() -> Path:
    """
    Directory holding templates/ and static/.

    SLIPWAY_ASSET_ROOT wins; otherwise the source checkout, then the working
    directory (the image runs from /app with the assets beside the binary).
    """
    configured = os.getenv("SLIPWAY_ASSET_ROOT")
    if configured:
        return Path(configured)
    if (PROJECT_ROOT / "templates").is_dir():
        return PROJECT_ROOT
    return Path.cwd()


ASSET_ROOT = resolve_asset_root()
TEMPLATES_DIR = ASSET_ROOT / "templates"
STATIC_DIR = ASSET_ROOT / "static"


def print_banner() -> None:
    storage = os.getenv("STORAGE_ACCOUNT") or "not configured"
    console.print(
        Panel.fit(
            f"[bold cyan]SLIPWAY[/bold cyan] v{VERSION}\n"
            f"Assets:  {ASSET_ROOT}\n"
            f"Storage: {storage}",
            border_style="cyan",
        )
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    print_banner()
    console.print("[green]SLIPWAY ONLINE[/green]")

    yield

    console.print("[yellow]SLIPWAY SHUTTING DOWN[/yellow]")


app = FastAPI(
    title="Slipway",
    description="Containerized web service with Azure DevOps build hooks",
    version=VERSION,
    lifespan=lifespan,
)

app.mount("/static", StaticFiles(directory=str(STATIC_DIR), check_dir=False), name="static")
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))

app.include_router(hooks_router, prefix="/hooks")


@app.exception_handler(HookError)
async def hook_error_handler(request: Request, exc: HookError) -> JSONResponse:
    """ADO records the response body in its delivery history, so return the message."""
    console.print(f"[red][HOOK] {request.url.path}: {exc}[/red]")
    return JSONResponse(status_code=500, content={"error": str(exc)})


# =============================================================================
# ENDPOINTS
# =============================================================================


@app.get("/", response_class=HTMLResponse)
async def index(request: Request):
    """Serve the landing page."""
    return templates.TemplateResponse(request, "index.html", {"version": VERSION})


@app.post("/hello", response_class=HTMLResponse)
async def hello(request: Request, name: Annotated[str, Form(min_length=1)]):
    """Greet whoever submitted the form."""
    return templates.TemplateResponse(request, "hello.html", {"name": name})


@app.get("/health")
async def health_check():
    """Health check for Docker, App Service and post-deploy verification."""
    return {
        "status": "online",
        "service": "slipway",
        "version": VERSION,
        "storage": {
            "account_configured": bool(os.getenv("STORAGE_ACCOUNT")),
            "container_configured": bool(os.getenv("STORAGE_CONTAINER")),
        },
    }


def serve() -> None:
    """Run the service with uvicorn on $PORT (default 8000)."""
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    serve()
