from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


AnalysisDepth = Literal["general", "deep"]
MemoryType = Literal["fact", "preference", "pattern", "insight"]
ReferenceType = Literal["projectData", "web", "email"]


class WireModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def message_text(content: Any) -> str:
    """Text of a chat message; multimodal part lists keep only their text parts."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text" and part.get("text"):
                parts.append(str(part["text"]))
        return "\n".join(parts)
    return str(content)


def has_non_text_parts(content: Any) -> bool:
    if not isinstance(content, list):
        return False
    return any(not (isinstance(part, dict) and part.get("type") == "text") for part in content)


class ChatMessage(BaseModel):
    role: str
    content: Union[str, List[Dict[str, Any]], None] = ""

    model_config = {"extra": "allow"}

    def text(self) -> str:
        return message_text(self.content)


class AgentRequest(WireModel):
    messages: List[ChatMessage] = Field(default_factory=list)
    project_id: Optional[str] = Field(default=None, alias="projectId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    analysis_depth: AnalysisDepth = Field(default="general", alias="analysisDepth")
    selected_data_ids: List[str] = Field(default_factory=list, alias="selectedDataIds")
    enable_web_search: bool = Field(default=False, alias="enableWebSearch")
    enable_email: bool = Field(default=False, alias="enableEmail")
    enable_memory: bool = Field(default=True, alias="enableMemory")

    @field_validator("analysis_depth", mode="before")
    @classmethod
    def normalize_depth(cls, value: Any) -> Any:
        if value is None:
            return "general"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("selected_data_ids", mode="before")
    @classmethod
    def normalize_selected(cls, value: Any) -> Any:
        return value or []


class AgentPlan(WireModel):
    steps: List[str]
    tools_to_use: List[str] = Field(alias="toolsToUse")
    estimated_tool_calls: int = Field(alias="estimatedToolCalls")
    rationale: str
    needs_external_data: bool = Field(alias="needsExternalData")


class ToolExecution(WireModel):
    step: int
    tool: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    duration: int = 0
    timestamp: str
    is_error: bool = Field(default=False, alias="isError")


class Reference(WireModel):
    type: ReferenceType
    data_id: Optional[str] = Field(default=None, alias="dataId")
    url: Optional[str] = None
    title: str
    used_in_step: int = Field(alias="usedInStep")
    tool_call: str = Field(alias="toolCall")
    score: Optional[float] = None


class ConversationRecord(WireModel):
    id: Optional[int] = None
    project_id: str = Field(alias="projectId")
    session_id: str = Field(alias="sessionId")
    role: Literal["user", "assistant"]
    content: str
    timestamp: str
    content_cleaned: bool = Field(default=False, alias="contentCleaned")
    plan: Optional[AgentPlan] = None
    tool_executions: Optional[List[ToolExecution]] = Field(default=None, alias="toolExecutions")
    references: Optional[List[Reference]] = None


# Tool inputs. Field names are the camelCase names the model sees.


class PlanQueryInput(BaseModel):
    steps: List[str] = Field(description="List of logical steps to answer the query")
    toolsToUse: List[str] = Field(description='Tools you plan to use (e.g., ["searchProjectData", "analyzeImage"])')
    estimatedToolCalls: int = Field(description="Estimated number of tool calls needed")
    rationale: str = Field(description="Brief explanation of your approach")
    needsExternalData: bool = Field(description="Whether web search or external data is needed")

    model_config = {"extra": "forbid"}


MAX_RESULTS_CAP = 10


def clamp_max_results(value: Optional[int], default: int) -> int:
    if value is None:
        return default
    return min(max(value, 1), MAX_RESULTS_CAP)


class SearchProjectDataInput(BaseModel):
    query: str = Field(description="The search query")
    maxResults: Optional[int] = Field(
        default=2, description="Maximum number of results to return (default: 2, max: 10)"
    )
    useAnalysis: Optional[bool] = Field(
        default=None,
        description="If true, prioritize items with analysis.description and consider tags when summarizing",
    )

    model_config = {"extra": "forbid"}

    @field_validator("maxResults")
    @classmethod
    def clamp(cls, value: Optional[int]) -> int:
        return clamp_max_results(value, 2)


class SearchSimilarItemsInput(BaseModel):
    dataId: str = Field(description="The ID of the item to find similar items for")
    maxResults: Optional[int] = Field(
        default=3, description="Maximum number of similar items to return (default: 3, max: 10)"
    )

    model_config = {"extra": "forbid"}

    @field_validator("maxResults")
    @classmethod
    def clamp(cls, value: Optional[int]) -> int:
        return clamp_max_results(value, 3)


class DataIdInput(BaseModel):
    dataId: str = Field(description="The ID of the project data item")

    model_config = {"extra": "forbid"}


class RememberContextInput(BaseModel):
    content: str = Field(description="The information to remember")
    type: MemoryType = Field(description="Type of memory")
    tags: Optional[List[str]] = Field(default=None, description="Tags to categorize this memory")

    model_config = {"extra": "forbid"}


class RecallMemoryInput(BaseModel):
    query: str = Field(description="What to search for in memories")
    limit: Optional[int] = Field(default=None, description="Maximum number of memories to retrieve (default: 5)")
    type: Optional[MemoryType] = Field(default=None, description="Filter by memory type")

    model_config = {"extra": "forbid"}


class SearchWebInput(BaseModel):
    query: str = Field(description="The web search query")

    model_config = {"extra": "forbid"}


class SendEmailInput(BaseModel):
    to: str = Field(description="Email address to send to")
    subject: str = Field(description="Email subject")
    body: str = Field(description="Email body content (markdown supported)")
    confirmed: bool = Field(
        description="Set to true only after the user explicitly confirmed recipient, subject and body in this chat"
    )

    model_config = {"extra": "forbid"}
