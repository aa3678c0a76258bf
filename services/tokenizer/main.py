# services/tokenizer/main.py
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from loguru import logger

from .config import settings
from .routers import tokens
from .utils.hmac_sign import mask_secret

# ==========================================================
#  🔧 CONFIG
# ==========================================================
SERVICE_NAME = "inovio-tokenizer"
STATIC_DIR = Path(__file__).parent / "static"

logger.remove()
logger.add(sys.stderr, level=settings.LOG_LEVEL)


def log_banner() -> None:
    logger.info("=" * 50)
    logger.info("Inovio Tokenization API - Reference Server")
    logger.info("=" * 50)
    logger.info(f"Server running on port {settings.PORT}")
    logger.info(f"Web interface: http://localhost:{settings.PORT}")
    logger.info(f"Health check:  http://localhost:{settings.PORT}/health")
    logger.info(f"  Site ID:       {settings.SITE_ID}")
    logger.info(f"  API Version:   {settings.API_VERSION}")
    logger.info(f"  Service URL:   {settings.TOKEN_SERVICE_URL}")
    logger.info(f"  Secret Key:    {mask_secret(settings.SECRET_KEY)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_banner()
    yield


# ==========================================================
#  ⚙️ FASTAPI
# ==========================================================
app = FastAPI(title=SERVICE_NAME, version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins, allow_credentials=True,
    allow_methods=["*"], allow_headers=["*"],
)

app.include_router(tokens.router)


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    # malformed bodies are client errors (400), same as a missing cardPan
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": jsonable_encoder(exc.errors())})


# ==========================================================
#  🧩 ROUTES
# ==========================================================
@app.get("/", include_in_schema=False)
def root():
    return FileResponse(STATIC_DIR / "index.html")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
