# Run from project root: uvicorn citerag.main:app --reload

import logging

from fastapi import FastAPI

from citerag.api.routes import router

logging.basicConfig(level=logging.INFO)


app = FastAPI(title="Citation-accurate RAG Backend")
app.include_router(router)
