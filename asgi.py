"""
asgi.py -- Application assembly for AuthGate.

This is the ONLY file that mounts both api/ and web/ on one app. api/main.py
knows nothing about web/; web/routes.py reuses only the shared per-IP
limiter from api/limiter.py so pages and JSON endpoints count against the
same budget.

Run with:  uvicorn asgi:app --reload
"""

from pathlib import Path

from fastapi.staticfiles import StaticFiles

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"], include_in_schema=False)
app.mount("/static", StaticFiles(directory=str(Path(__file__).parent / "web" / "static")), name="static")
