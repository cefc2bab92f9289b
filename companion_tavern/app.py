import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from companion_tavern.content import FileRuleProvider
from companion_tavern.resolver import ContextFrame
from companion_tavern.routes import router
from companion_tavern.sessions import SessionRegistry
from companion_tavern.storage import Storage

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, context: ContextFrame | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    storage = Storage(resolved)

    app = FastAPI(title="Companion Tavern")
    # Rule overrides live in {data}/rules/*.md; bundled rules fill the gaps.
    app.state.registry = SessionRegistry(storage, FileRuleProvider(resolved / "rules"), context)
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
