from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
import time

from querycraft.api.routes import router as api_router
from querycraft.core.config import APP_NAME, APP_VERSION, API_PREFIX, CORS_ORIGINS, DEBUG
from querycraft.core.exceptions import QueryCraftError, QueryNotFoundError, SourceNotFoundError
from querycraft.core.logging_config import configure_logging, request_id_var

# Configure logging using our custom configuration
logger = configure_logging()
logger.info(f"Starting {APP_NAME} v{APP_VERSION}")


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        # Tag log records emitted while this request is handled
        token = request_id_var.set(request_id)

        start_time = time.perf_counter()

        try:
            response = await call_next(request)

            duration = time.perf_counter() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path}",
                extra={
                    "duration": round(duration * 1000, 2),  # Convert to ms
                    "status_code": response.status_code,
                    "client_host": request.client.host if request.client else None,
                    "method": request.method,
                    "path": request.url.path
                }
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception:
            duration = time.perf_counter() - start_time
            logger.exception(
                f"Request failed: {request.method} {request.url.path}",
                extra={
                    "duration": round(duration * 1000, 2),
                    "client_host": request.client.host if request.client else None,
                    "method": request.method,
                    "path": request.url.path
                }
            )
            raise
        finally:
            request_id_var.reset(token)


app = FastAPI(
    title=APP_NAME,
    description="Natural language queries over MongoDB and relational databases, compiled with Gemini",
    version=APP_VERSION,
    debug=DEBUG
)

# Add request ID middleware
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix=API_PREFIX)


@app.exception_handler(QueryCraftError)
async def querycraft_error_handler(request: Request, exc: QueryCraftError):
    """Errors that escape a route without being mapped"""
    status_code = 404 if isinstance(exc, (SourceNotFoundError, QueryNotFoundError)) else 400
    logger.warning(f"Unhandled pipeline error on {request.url.path}: {str(exc)}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


@app.get("/")
async def root():
    """Root endpoint that points to the API documentation"""
    return {
        "message": f"Welcome to the {APP_NAME} API",
        "documentation": "/docs",
        "version": APP_VERSION
    }

if __name__ == "__main__":
    uvicorn.run("querycraft.main:app", host="0.0.0.0", port=8000, reload=DEBUG)
