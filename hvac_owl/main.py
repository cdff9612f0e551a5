"""FastAPI application for hvac-owl.

Provides REST API endpoints for:
- Thermostat compatibility analysis (/api/analyze)
- Project Owl channel analysis (/api/analysis, /api/channels, /api/post-owl)
- Project records (/api/projects)
- Health and version checks (/api/health, /api/version)

Both applications follow the same flow:
1. Validate the request
2. Call the completion model (concurrently where calls are independent)
3. Recover structured fields from the model text
4. Shape the JSON response for the frontend
"""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hvac_owl.completion_client import CompletionClient, CompletionError
from hvac_owl.config import get_settings
from hvac_owl.owl.analysis import analyze_channel_messages, generate_daily_recap
from hvac_owl.owl.schemas import (
    ChannelAnalysis,
    ChannelRecap,
    ChannelRequest,
    Project,
    ProjectCreate,
)
from hvac_owl.owl.slack_client import SlackClient, SlackError
from hvac_owl.owl.store import AnalysisStore, StoreError
from hvac_owl.thermostat.analyzer import analyze_thermostat
from hvac_owl.thermostat.prompts import IMAGE_ANALYSIS
from hvac_owl.thermostat.schemas import AnalysisDebug, AnalyzeResponse, ErrorResponse
from hvac_owl.thermostat.uploads import UploadStore, UploadValidationError, require_input

# Configure logging
logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
GENERIC_ERROR_DETAILS = "An unexpected error occurred."


class ApiError(Exception):
    """An error returned to the client as ``{error, details}``."""

    def __init__(self, status_code: int, error: str, details: Optional[str] = None):
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.details = details


def error_details(exc: Exception) -> str:
    """Exception message outside production, a generic message in production."""
    if get_settings().is_production:
        return GENERIC_ERROR_DETAILS
    return str(exc) or exc.__class__.__name__


def _error_body(error: str, details: Optional[str] = None, **extra) -> dict:
    body = {"error": error}
    if details is not None:
        body["details"] = details
    body.update(extra)
    return body


async def run_blocking(func, *args):
    """Run a blocking call (SQLite store) in the default thread pool."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


# =============================================================================
# Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    # Startup
    logger.info("Starting hvac-owl API...")

    app.state.completion_client = CompletionClient()
    app.state.slack_client = SlackClient()

    app.state.store = AnalysisStore()
    try:
        app.state.store.connect()
        app.state.store.setup_schema()
    except StoreError as e:
        logger.error(f"Failed to open analysis store: {e}")
        # Continue anyway - Project Owl routes will fail on first request

    yield

    # Shutdown
    logger.info("Shutting down hvac-owl API...")
    app.state.store.close()
    await app.state.slack_client.aclose()


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="hvac-owl",
    description="Thermostat compatibility checker and Project Owl Slack channel analysis",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(UploadValidationError)
async def upload_validation_handler(request: Request, exc: UploadValidationError):
    logger.warning(f"Rejected upload: {exc}")
    return JSONResponse(status_code=400, content=_error_body(exc.error, exc.details))


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.error, exc.details))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=_error_body("Internal server error", error_details(exc)),
    )


# =============================================================================
# Health & version
# =============================================================================

@app.get("/api/health")
async def health_check():
    """Liveness check."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/api/version")
async def get_version():
    """Return the contents of the version descriptor file."""
    path = Path(get_settings().version_file)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error(f"Could not read version info from {path}: {e}")
        return JSONResponse(status_code=500, content={"error": "Could not read version info"})


# =============================================================================
# Thermostat checker
# =============================================================================

@app.post(
    "/api/analyze",
    response_model=AnalyzeResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def analyze(
    images: Optional[List[UploadFile]] = File(None),
    description: Optional[str] = Form(None),
):
    """Analyze thermostat photos and/or a description for compatibility.

    This endpoint:
    1. Validates and stores the uploaded images
    2. Analyzes each image with the vision model (concurrently)
    3. Summarizes all analyses in one aggregation call
    4. Parses the verdict, falling back to a neutral result if needed
    """
    started_at = time.monotonic()
    files = [f for f in images or [] if f.filename]

    with UploadStore() as uploads:
        require_input(description, files)
        stored = await uploads.save_all(files)

        try:
            result = await analyze_thermostat(
                app.state.completion_client, description, stored, started_at=started_at
            )
        except Exception as e:
            logger.error(f"Error analyzing thermostat: {e}", exc_info=True)
            debug = AnalysisDebug(
                timestamp=datetime.now(timezone.utc).isoformat(),
                model=IMAGE_ANALYSIS.model,
                processing_time=int((time.monotonic() - started_at) * 1000),
                files_processed=len(stored),
                error=error_details(e),
            )
            return JSONResponse(
                status_code=500,
                content=_error_body(
                    "Error analyzing thermostat",
                    error_details(e),
                    debug=debug.model_dump(by_alias=True, exclude_none=True),
                ),
            )

    return AnalyzeResponse(
        results=[result],
        count=1,
        total_processing_time=int((time.monotonic() - started_at) * 1000),
    )


# =============================================================================
# Project Owl
# =============================================================================

@app.get("/api/analysis", response_model=ChannelRecap, response_model_exclude_none=True)
async def get_channel_recap(channel_id: Optional[str] = Query(None, alias="channelId")):
    """Daily recap of the last two weeks of a channel, generated live."""
    if not channel_id:
        raise ApiError(400, "Missing channelId parameter")

    try:
        logger.info(f"Fetching messages for channel: {channel_id}")
        messages = await app.state.slack_client.get_channel_messages(channel_id)
        return await generate_daily_recap(app.state.completion_client, messages)
    except (SlackError, CompletionError) as e:
        logger.error(f"Error in analysis route: {e}")
        raise ApiError(500, "Failed to generate analysis", error_details(e)) from e


@app.post("/api/analysis", response_model=ChannelAnalysis)
@app.post("/api/analysis/refresh", response_model=ChannelAnalysis, include_in_schema=False)
async def refresh_channel_analysis(request: ChannelRequest):
    """Re-analyze a channel and replace its stored analysis.

    This endpoint:
    1. Fetches channel info and the latest 100 messages from Slack
    2. Runs the summary, action item and risk extraction
    3. Upserts the channel and its analysis
    """
    channel_id = request.channel_id
    if not channel_id:
        raise ApiError(400, "Channel ID is required")

    slack: SlackClient = app.state.slack_client
    store: AnalysisStore = app.state.store
    logger.info(f"Starting analysis refresh for channel: {channel_id}")

    try:
        channel = await slack.channel_info(channel_id)
        messages = await slack.history(channel_id, limit=100)
        if not messages:
            logger.info(f"No messages found for channel: {channel_id}")
            raise ApiError(404, "No messages found")

        messages = await slack.enrich_messages(messages)
        insights = await analyze_channel_messages(app.state.completion_client, messages)

        await run_blocking(store.upsert_channel, channel_id, channel.get("name"))
        return await run_blocking(store.upsert_analysis, channel_id, insights)
    except (SlackError, CompletionError, StoreError) as e:
        logger.error(f"Error in analysis refresh: {e}")
        raise ApiError(500, "Failed to refresh analysis", error_details(e)) from e


@app.get("/api/analysis/stored", response_model=ChannelAnalysis)
async def get_stored_analysis(channel_id: Optional[str] = Query(None, alias="channelId")):
    """The last persisted analysis of a channel."""
    if not channel_id:
        raise ApiError(400, "Missing channelId parameter")
    analysis = await run_blocking(app.state.store.get_analysis, channel_id)
    if analysis is None:
        raise ApiError(404, "No analysis found")
    return analysis


@app.get("/api/channels")
async def list_project_channels():
    """Recent activity for every channel listed in PROJECT_CHANNELS."""
    slack: SlackClient = app.state.slack_client
    if not slack.token:
        raise ApiError(500, "SLACK_BOT_TOKEN is not set")

    channel_ids = get_settings().project_channel_ids
    return await asyncio.gather(*(slack.get_channel_summary(cid) for cid in channel_ids))


@app.post("/api/post-owl")
async def post_owl(request: ChannelRequest):
    """Post an owl emoji to a channel."""
    if not request.channel_id:
        raise ApiError(400, "Missing channelId parameter")

    try:
        await app.state.slack_client.post_owl(request.channel_id)
    except SlackError as e:
        logger.error(f"Error posting owl emoji: {e}")
        raise ApiError(500, "Failed to post owl emoji", error_details(e)) from e
    return {"success": True}


@app.get("/api/projects", response_model=List[Project])
async def list_projects():
    """All projects with the latest analysis of their channel."""
    try:
        return await run_blocking(app.state.store.list_projects)
    except StoreError as e:
        logger.error(f"Error fetching projects: {e}")
        raise ApiError(500, "Failed to fetch projects", error_details(e)) from e


@app.post("/api/projects", response_model=Project)
async def create_project(request: ProjectCreate):
    try:
        return await run_blocking(app.state.store.create_project, request.name, request.channel_id)
    except StoreError as e:
        logger.error(f"Error creating project: {e}")
        raise ApiError(500, "Failed to create project", error_details(e)) from e


# =============================================================================
# Main Entry Point
# =============================================================================

def run() -> None:
    import uvicorn
    uvicorn.run("hvac_owl.main:app", host="0.0.0.0", port=get_settings().port)


if __name__ == "__main__":
    run()
