from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field, model_validator

# ids end up inside storage keys; ':' and '#' are separators there
ID_PATTERN = r"^[A-Za-z0-9_.\-]{1,128}$"


class RelatedItemIn(BaseModel):
    item_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)
    source_kind: str = Field("link", description="where the item came from, e.g. link | attachment | page")
    url: Optional[str] = None
    title: str = ""
    text: Optional[str] = Field(default=None, description="inline text; fetched from url when absent")


class DocumentRequest(BaseModel):
    document_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)
    title: Optional[str] = None
    text: Optional[str] = Field(default=None, description="document text; fetched from url when absent")
    url: Optional[str] = None
    related: List[RelatedItemIn] = Field(default_factory=list)
    discover_related: bool = Field(False, description="add outbound links of the fetched page as related items")
    chunk_max_chars: Optional[int] = Field(default=None, ge=200, le=500_000)

    @model_validator(mode="after")
    def _needs_content(self) -> "DocumentRequest":
        if self.text is None and not self.url:
            raise ValueError("either text or url is required")
        return self


class StartTrigger(DocumentRequest):
    type: Literal["start"] = "start"


class TaskResultCallback(BaseModel):
    type: Literal["task_result"] = "task_result"
    task_id: str = Field(..., min_length=1, max_length=512)
    result_text: Optional[str] = ""
    item_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)
    item_kind: Optional[Literal["main", "sub"]] = None
    document_id: Optional[str] = Field(default=None, pattern=ID_PATTERN)


# tagged by `type`; the route validates it with a discriminator
HookRequest = Union[StartTrigger, TaskResultCallback]


class StatusResponse(BaseModel):
    status: str = Field(..., description="accepted | partial | dispatched | completed | finalized | duplicate | pending | conflict | not_found | failed | ok | error")
    message: str = ""
    document_id: Optional[str] = None
    item_id: Optional[str] = None
    task_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    issues: List[Dict[str, Any]] = Field(default_factory=list)


class WorkflowEvent(BaseModel):
    event_id: str
    document_id: str
    step: str
    item_id: Optional[str] = None
    status: str = Field(..., description="started | progress | completed | error")
    message: Optional[str] = None
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: Optional[Dict[str, Any]] = None
