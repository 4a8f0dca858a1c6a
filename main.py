import os
import logging
from functools import lru_cache
from typing import Optional

from fastapi import FastAPI, UploadFile, File, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from processor import GeminiClient, is_allowed_mime_type, process_upload

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def disable_caching(request: Request, call_next):
    response = await call_next(request)
    response.headers.update(NO_CACHE_HEADERS)
    return response


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Failed to process the file."},
        headers=NO_CACHE_HEADERS,
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    # a "file" field that is not a file part counts as no upload
    logger.warning(f"Validation error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=400,
        content={"error": "No file uploaded."},
        headers=NO_CACHE_HEADERS,
    )


@lru_cache(maxsize=1)
def get_model_client() -> GeminiClient:
    return GeminiClient()


@app.get('/')
def index():
    return {'message': 'Server is running'}


@app.post("/api/process-file")
async def process_file(file: Optional[UploadFile] = File(None), client=Depends(get_model_client)):
    if file is None:
        return JSONResponse(status_code=400, content={"error": "No file uploaded."})

    if not is_allowed_mime_type(file.content_type):
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid file type. Please upload an Excel, PDF, or image file."},
        )

    try:
        content = await file.read()
        return await run_in_threadpool(process_upload, content, file.content_type, client)

    except Exception as e:
        logger.exception(f"Error processing file: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to process the file."})


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
