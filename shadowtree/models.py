"""Pydantic models for sync results and event payloads.

Field names are snake_case in Python and camelCase on the wire, matching
what the browser client expects.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shadowtree.git_utils import DiffStats


class EventModel(BaseModel):
    """Base for models sent over the event channel."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class ChangeSummary(EventModel):
    """Whether the shadow tree differs from its last commit, and a short count."""

    has_changes: bool
    summary: str


class DiffData(EventModel):
    """Detailed view of the pending changes."""

    status: str
    diff: str
    untracked_files: list[str] = Field(default_factory=list)
    stats: DiffStats = Field(default_factory=DiffStats)


class SyncComplete(EventModel):
    """Payload of the sync-complete event."""

    has_changes: bool
    summary: str
    shadow_path: str
    diff_data: Optional[DiffData] = None
    container_id: str


class GitInfo(EventModel):
    """Branch and pull-request info for the HTTP info endpoint."""

    current_branch: str
    branch_url: str = ""
    repo_url: str = ""
    prs: list[dict[str, Any]] = Field(default_factory=list)
