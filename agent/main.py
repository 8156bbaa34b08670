from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from agent.routes import api

app = FastAPI(title="Scene Agent Diagnostics")
app.include_router(api.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Redirect visitors to the agent status document."""
    return RedirectResponse(url="/api/status", status_code=303)
