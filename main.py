import uvicorn
import time
import logging
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from pipeline_runner.api.runs import router as runs_router
from pipeline_runner.api.approvals import router as approvals_router
from pipeline_runner.api.webhooks import router as webhooks_router
from pipeline_runner.core.config import API_HOST, API_PORT
from pipeline_runner.secrets.secret_store import SecretStore
from pipeline_runner.utils.logging_config import setup_logging

# Console + daily file, both masking configured secrets
setup_logging(level=logging.INFO, secrets=SecretStore.from_env())
logger = logging.getLogger("main")

app = FastAPI(title="Pipeline Runner API")

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise

app.add_middleware(LoggingMiddleware)

# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}

# Register routers
app.include_router(runs_router, tags=["Runs"])
app.include_router(approvals_router, tags=["Approvals"])
app.include_router(webhooks_router, tags=["Webhooks"])

if __name__ == "__main__":
    uvicorn.run("main:app", host=API_HOST, port=API_PORT, reload=True)
