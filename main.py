import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from db import create_db_and_tables, engine
from routers import admin, auth, donations, projects, requests, tasks, users
from services.container import Services
from services.errors import EngineError
from services.store import SqlStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="EcoWaste")


@app.on_event("startup")
async def on_startup() -> None:
    create_db_and_tables()
    app.state.services = Services(SqlStore(engine))
    await app.state.services.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await app.state.services.stop()


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.get("/")
def read_root():
    return {"app": "EcoWaste", "status": "ok"}


app.include_router(auth.router)
app.include_router(users.router, prefix="/users")
app.include_router(donations.router, prefix="/donations")
app.include_router(requests.router, prefix="/requests")
app.include_router(projects.router, prefix="/projects")
app.include_router(tasks.router, prefix="/tasks")
app.include_router(admin.router, prefix="/admin")
