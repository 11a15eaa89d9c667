"""Data models for the extraction queue and the page agent protocol."""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

ItemStatus = Literal["pending", "processing", "done", "error"]


class QAResult(BaseModel):
    """One extracted question/answer pair."""
    question: str
    answer: str


class QueueItem(BaseModel):
    """One unit of extraction work."""
    key: str
    marketplace_id: str
    status: ItemStatus = "pending"
    results: list[QAResult] = []
    progress: Optional[str] = None
    error: Optional[str] = None
    exhausted: bool = False
    sent_to_backend: bool = False
    backend_new_count: int = 0
    backend_error: Optional[str] = None

    def matches(self, key: str, marketplace_id: str) -> bool:
        return self.key == key and self.marketplace_id == marketplace_id

    def reset(self):
        """Return the item to a fresh pending state."""
        self.status = "pending"
        self.results = []
        self.progress = None
        self.error = None
        self.exhausted = False
        self.sent_to_backend = False
        self.backend_new_count = 0
        self.backend_error = None


class SchedulerState(BaseModel):
    """Process-wide queue state. Persisted as a single document."""
    queue: list[QueueItem] = []
    is_running: bool = False
    current_index: int = -1
    active_session_id: Optional[str] = None
    remote_poll_enabled: bool = False
    remote_poll_busy: bool = False


class QueueStats(BaseModel):
    """Queue statistics."""
    total: int
    pending: int
    processing: int
    done: int
    error: int


class JobOutcome(BaseModel):
    """Result of running a single job through a page session."""
    status: Literal["done", "error"]
    results: list[QAResult] = []
    exhausted: bool = False
    error: Optional[str] = None
    login_required: bool = False


class RemoteItem(BaseModel):
    """A job handed out by the backend's remote queue."""
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    item_id: str = Field(alias="itemId")
    key: str
    marketplace_id: str = Field(alias="marketplaceId")
    max_results: Optional[int] = Field(default=None, alias="maxResults")


# Page agent protocol: requests


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class AgentSelectors(_WireModel):
    widget_button: str = Field(alias="widgetButton")
    question_chip: str = Field(alias="questionChip")
    chat_container: str = Field(alias="chatContainer")
    question_bubble: str = Field(alias="questionBubble")
    answer_bubble: str = Field(alias="answerBubble")
    loading_indicator: str = Field(alias="loadingIndicator")


class ExtractionSettings(_WireModel):
    max_results: int = Field(alias="maxResults")
    delay_between_clicks: int = Field(alias="delayBetweenClicks")
    selectors: AgentSelectors


class PingRequest(_WireModel):
    type: Literal["PING"] = "PING"


class ExtractRequest(_WireModel):
    type: Literal["EXTRACT"] = "EXTRACT"
    settings: ExtractionSettings


class SnapshotRequest(_WireModel):
    type: Literal["EXTRACT_SNAPSHOT_ONLY"] = "EXTRACT_SNAPSHOT_ONLY"


class AbortRequest(_WireModel):
    type: Literal["ABORT"] = "ABORT"


AgentRequest = Annotated[
    Union[PingRequest, ExtractRequest, SnapshotRequest, AbortRequest],
    Field(discriminator="type"),
]


# Page agent protocol: responses


class PingResponse(_WireModel):
    alive: bool = False


class ExtractResponse(_WireModel):
    success: bool = False
    results: list[QAResult] = []
    exhausted: bool = False
    login_required: bool = Field(default=False, alias="loginRequired")
    error: Optional[str] = None


class SnapshotResponse(_WireModel):
    results: list[QAResult] = []


class AckResponse(_WireModel):
    success: bool = True
