from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

# Load .env file BEFORE any other imports that might need env vars
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes.spreadsheets import router as spreadsheets_router
from services.xlsx_core import get_engine_settings


logging.basicConfig(
    level=os.getenv("XLSX_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="XLSX Grid Core")

# Allow any origin in local dev mode.
# This should be tightened for production.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(spreadsheets_router)

_settings = get_engine_settings()
logger.info(
    f"[API] Engine limits: unzip={_settings.unzip_size_limit} "
    f"xml={_settings.unzip_xml_size_limit} chunk={_settings.stream_chunk_size} "
    f"tmp={_settings.tmp_dir}"
)


@app.get("/")
async def root():
    return {"status": "ok"}
