import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings
from database import engine, Base
import models  # noqa: F401  users / workout_logs tables
import coach_memory.models  # noqa: F401  behavior_events / user_tendencies / insight_history
from coach_memory.router import router as coach_memory_router

logging.basicConfig(
    level=getattr(logging, Settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)

# Create tables if they don't exist
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="Coach Memory Service",
    description="Adaptive coaching memory: behavior learning, coach summaries and proactive insights.",
    version="1.0.0"
)

origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:8000",
    "http://localhost:8081",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(coach_memory_router)


@app.get("/")
async def health_check():
    """
    Service health check
    """
    return {
        "status": "healthy",
        "service": "Coach Memory Service",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
