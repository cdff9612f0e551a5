from __future__ import annotations

from typing import List, Optional

from pydantic import Field

from hvac_owl.thermostat.schemas import CamelModel


class ProcessedMessage(CamelModel):
    """A Slack message reduced to what the model needs."""

    text: str
    username: str
    timestamp: str


class MessageInsights(CamelModel):
    """Summary plus extracted lists for a batch of messages."""

    summary: str = ""
    decisions: List[str] = Field(default_factory=list)
    progress: List[str] = Field(default_factory=list)
    questions: List[str] = Field(default_factory=list)
    action_items: List[str] = Field(default_factory=list)
    risks: List[str] = Field(default_factory=list)


class DailyHighlight(MessageInsights):
    date: str


class ChannelRecap(CamelModel):
    highlights: List[DailyHighlight] = Field(default_factory=list)
    error: Optional[str] = None


class ChannelAnalysis(MessageInsights):
    """Persisted analysis of one channel; replaced on every refresh."""

    channel_id: str
    channel_name: Optional[str] = None
    created_at: str
    last_updated: str


class TaskCreate(CamelModel):
    """An action item parsed into an assignable task."""

    description: str
    assignee: Optional[str] = None
    due_date: Optional[str] = None


class Task(TaskCreate):
    id: int
    project_id: int
    status: str = "open"
    created_at: str


class Project(CamelModel):
    id: int
    name: str
    channel_id: str
    created_at: str
    # ts of the newest message already synced; later syncs fetch only newer ones
    last_message_ts: Optional[str] = None
    latest_analysis: Optional[ChannelAnalysis] = None
    tasks: List[Task] = Field(default_factory=list)


class ChannelRequest(CamelModel):
    channel_id: Optional[str] = None


class ProjectCreate(CamelModel):
    name: str = Field(..., min_length=1)
    channel_id: str = Field(..., min_length=1)
