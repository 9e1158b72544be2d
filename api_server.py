"""
FastAPI server exposing the latest-mail function
"""
import asyncio
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger

from config import DEADLINE_MARGIN_SECONDS, Settings, create_settings, setup_logging
from email_fetcher import get_latest_emails
from errors import MailFunctionError
from models import ErrorResponse

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}

app = FastAPI(
    title="Latest Mail Function",
    description="Fetches the most recent messages from an IMAP inbox as JSON",
    version="1.0.0",
)


def error_response(error: BaseException, settings: Optional[Settings]) -> JSONResponse:
    """500 envelope; raw error detail only in development"""
    if isinstance(error, MailFunctionError):
        message = str(error)
    elif isinstance(error, TimeoutError):
        message = "Function deadline exceeded while fetching emails"
    else:
        message = str(error) or "Unknown error occurred"

    detail = None
    if settings is not None and settings.is_development:
        detail = f"{type(error).__name__}: {error}"

    logger.error(f"Returning error response: {message}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(message=message, error=detail).to_body(),
        headers=CORS_HEADERS,
    )


@app.get("/health")
async def health_check():
    """Liveness only; no IMAP traffic"""
    return {"status": "healthy"}


@app.get("/api/emails")
@app.get("/.netlify/functions/getLatestEmail")
async def get_latest_email():
    """Latest emails from the configured inbox, newest first"""
    logger.info("Function invoked")
    settings = None
    try:
        settings = create_settings()
        response = await asyncio.wait_for(
            get_latest_emails(settings),
            timeout=settings.function_timeout - DEADLINE_MARGIN_SECONDS,
        )
    except Exception as e:
        if isinstance(e, MailFunctionError):
            logger.error(f"Error in function: {e}")
        else:
            logger.exception(f"Unexpected error in function: {e}")
        return error_response(e, settings)

    return JSONResponse(status_code=200, content=response.to_body(), headers=CORS_HEADERS)


if __name__ == "__main__":
    import uvicorn

    settings = create_settings()
    setup_logging(settings.log_level)

    uvicorn.run(
        "api_server:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower()
    )
