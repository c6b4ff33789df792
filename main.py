import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

import auth
import products
from cache import QueryCache
from cleanup import ImageCleanup
from config import LOG_LEVEL, MAX_UPLOAD_SIZE, PORT, QUERY_CACHE_SECONDS, UPLOAD_DIR
from database import Database
from images import ImageStore

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


# Error rendering

def _field_of(loc) -> str:
    # Drop the "body"/"query" prefix FastAPI puts in front of the field path
    parts = [str(part) for part in loc[1:]] if len(loc) > 1 else [str(part) for part in loc]
    return ".".join(parts) or "body"


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    body = {"error": exc.detail}
    details = getattr(exc, "details", None)
    if details:
        body["details"] = details
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    details = [{"field": _field_of(err.get("loc", ())), "message": err.get("msg", "")} for err in exc.errors()]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "details": details})


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    logger.info("Duplicate key on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=409, content={"error": "Resource already exists"})


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    database: Optional[Database] = None,
    image_store: Optional[ImageStore] = None,
    query_cache_seconds: Optional[float] = None,
    max_upload_size: Optional[int] = None,
) -> FastAPI:
    app = FastAPI(title="ABC Store API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    database = database or Database()
    image_store = image_store or ImageStore(UPLOAD_DIR)
    app.state.database = database
    app.state.image_store = image_store
    app.state.query_cache = QueryCache(QUERY_CACHE_SECONDS if query_cache_seconds is None else query_cache_seconds)
    app.state.image_cleanup = ImageCleanup(image_store, database)
    app.state.max_upload_size = max_upload_size or MAX_UPLOAD_SIZE

    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.include_router(auth.router)
    app.include_router(products.router)
    app.mount("/uploads", StaticFiles(directory=image_store.upload_dir, check_dir=False), name="uploads")

    @app.on_event("startup")
    def startup():
        database.connect()
        database.ensure_indexes()
        image_store.ensure_directory()
        app.state.image_cleanup.retry_pending()

    @app.on_event("shutdown")
    def shutdown():
        database.close()

    # Routes
    @app.get("/")
    def read_root():
        return {"message": "ABC Store API"}

    @app.get("/test")
    def test_database():
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": None,
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": []
        }
        try:
            db = database.connect()
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_url"] = "✅ Set" if database.url else None
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()
        except Exception as e:
            logger.warning("Database check failed: %s", e)
            response["database"] = f"❌ Error: {str(e)[:80]}"
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
