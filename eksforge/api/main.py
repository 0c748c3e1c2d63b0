from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from eksforge.api.middleware import AuthMiddleware
from eksforge.api.routes import plan
from eksforge.errors import (
    CapabilityUnsupported,
    ConfigurationConflict,
    EksforgeError,
    InsufficientResources,
    InvalidSpecification,
)
from eksforge.logging import setup_logger

load_dotenv()
logger = setup_logger("eksforge.api")

app = FastAPI(title="eksforge")
app.add_middleware(AuthMiddleware)

app.include_router(plan.router)

STATUS_CODES = {
    InvalidSpecification: 422,
    ConfigurationConflict: 409,
    CapabilityUnsupported: 400,
    InsufficientResources: 400,
}


@app.exception_handler(EksforgeError)
async def eksforge_error_handler(request: Request, exc: EksforgeError):
    status = next((code for kind, code in STATUS_CODES.items() if isinstance(exc, kind)), 400)
    logger.warning(f"❌ {request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=status, content={"detail": str(exc), "error": type(exc).__name__})
