# main.py

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from db import engine
from models_evidence import Base


# --------------------------------------------------------
# Logging
# --------------------------------------------------------

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# --------------------------------------------------------
# FastAPI app & CORS
# --------------------------------------------------------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    # evidence_batches / evidence_batch_tickets
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(lifespan=lifespan)

from evidence_routes import router as evidence_router  # noqa: E402
app.include_router(evidence_router)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health():
    return {"status": "ok"}
