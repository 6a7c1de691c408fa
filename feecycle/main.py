import logging

from fastapi import FastAPI

from feecycle.config import LOG_LEVEL
from feecycle.database import Base, engine
from feecycle import models  # noqa: F401  registers every table on Base
from feecycle.routers.fees import router as fees_router

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Fee Cycle")

app.include_router(fees_router)


@app.get("/health")
def health():
    return {"status": "ok"}
