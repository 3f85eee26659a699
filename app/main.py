from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import data_quality, deep_research, jobs, proposals
from app.config import settings
from app.services.database import close_pool


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_pool()


app = FastAPI(
    title="PortIntel",
    description="Port and terminal operator research pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(deep_research.router)
app.include_router(jobs.router)
app.include_router(proposals.router)
app.include_router(data_quality.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "portintel"}
