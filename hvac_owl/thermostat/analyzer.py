from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from hvac_owl.completion_client import CompletionClient
from hvac_owl.thermostat.prompts import (
    DESCRIPTION_TEMPLATE,
    IMAGE_ANALYSIS,
    IMAGE_ANALYSIS_SYSTEM_PROMPT,
    IMAGE_ANALYSIS_USER_PROMPT,
    NO_DESCRIPTION,
    RESULTS_SUMMARY,
    RESULTS_SUMMARY_SYSTEM_PROMPT,
    RESULTS_SUMMARY_USER_TEMPLATE,
)
from hvac_owl.thermostat.response_parser import parse_compatibility
from hvac_owl.thermostat.schemas import AnalysisDebug, AnalysisResult
from hvac_owl.thermostat.uploads import StoredUpload

logger = logging.getLogger(__name__)


def build_image_analysis_messages(
    description: Optional[str], image: Optional[StoredUpload] = None
) -> List[BaseMessage]:
    """Messages for analyzing one image (or only the description)."""
    text = IMAGE_ANALYSIS_USER_PROMPT + DESCRIPTION_TEMPLATE.format(
        description=(description or "").strip() or NO_DESCRIPTION
    )
    content: list = [{"type": "text", "text": text}]
    if image is not None:
        content.append(
            {
                "type": "image_url",
                "image_url": {"url": image.data_uri(), "detail": "high"},
            }
        )
    return [SystemMessage(content=IMAGE_ANALYSIS_SYSTEM_PROMPT), HumanMessage(content=content)]


def build_summary_messages(analyses: Sequence[str]) -> List[BaseMessage]:
    """Messages for the aggregation call over all per-image analyses."""
    if len(analyses) == 1:
        joined = analyses[0]
    else:
        joined = "\n\n".join(
            f"=== Image {i} analysis ===\n{text}" for i, text in enumerate(analyses, start=1)
        )
    return [
        SystemMessage(content=RESULTS_SUMMARY_SYSTEM_PROMPT),
        HumanMessage(content=RESULTS_SUMMARY_USER_TEMPLATE.format(analyses=joined)),
    ]


async def analyze_thermostat(
    client: CompletionClient,
    description: Optional[str],
    images: Sequence[StoredUpload],
    started_at: Optional[float] = None,
) -> AnalysisResult:
    """Run the two-stage thermostat analysis.

    Each image is analyzed by its own completion call; the calls run
    concurrently. The summary call runs after all of them finished and its
    output is parsed into the final verdict.
    """
    started_at = started_at or time.monotonic()

    # Messages are built up front so image files are read before any await.
    if images:
        batches = [build_image_analysis_messages(description, image) for image in images]
    else:
        batches = [build_image_analysis_messages(description)]

    logger.info(f"Dispatching {len(batches)} image analysis calls")
    # Wait for every call to settle before raising the first failure.
    outcomes = await asyncio.gather(
        *(
            client.complete(
                messages,
                model=IMAGE_ANALYSIS.model,
                max_tokens=IMAGE_ANALYSIS.max_tokens,
                temperature=IMAGE_ANALYSIS.temperature,
            )
            for messages in batches
        ),
        return_exceptions=True,
    )
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            raise outcome
    analyses = list(outcomes)

    summary = await client.complete(
        build_summary_messages(analyses),
        model=RESULTS_SUMMARY.model,
        max_tokens=RESULTS_SUMMARY.max_tokens,
        temperature=RESULTS_SUMMARY.temperature,
    )

    info = parse_compatibility(summary)
    logger.info(
        f"Thermostat verdict: {info.compatibility} "
        f"(confidence={info.confidence:.2f}, via {info.parse_method})"
    )

    return AnalysisResult(
        thermostat_type=info.thermostat_type,
        compatibility=info.compatibility,
        confidence=info.confidence,
        recommendations=info.recommendations,
        analyses=list(analyses),
        summary=summary,
        debug=AnalysisDebug(
            timestamp=datetime.now(timezone.utc).isoformat(),
            model=IMAGE_ANALYSIS.model,
            processing_time=int((time.monotonic() - started_at) * 1000),
            files_processed=len(images),
            parse_method=info.parse_method,
        ),
    )
