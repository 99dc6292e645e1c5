from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(..., max_length=1000)
    language: Optional[Literal["en", "fr"]] = None
    resource_id: Optional[int] = Field(None, alias="resourceId", ge=1)
    # dict turns and string notes; other items are ignored downstream
    context: List[Any] = Field(default_factory=list)
    session_id: Optional[str] = Field(None, alias="sessionId", min_length=1, max_length=64)

    @field_validator("message", mode="before")
    @classmethod
    def _trim(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v:
            raise ValueError("The message cannot be empty.")
        return v

    def context_items(self) -> list:
        return list(self.context)


class SuggestionRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)


class ChatResponse(BaseModel):
    success: bool = True
    response: str
    cached: bool = False
    timestamp: str
    session_id: str = Field(serialization_alias="sessionId")
    is_frequent: bool = Field(False, serialization_alias="isFrequent")


class ResourceItem(BaseModel):
    id: int
    title: str
    description: str
    url: str


class ResourceList(BaseModel):
    data: List[ResourceItem]


class ResourceContent(BaseModel):
    id: int
    title: str
    url: str
    content: str


class ResourceDetail(BaseModel):
    data: ResourceContent


class EnrichedResource(BaseModel):
    id: int
    title: str
    url: str
    organization: str
    domain: str
    year: str
    status: str
    type: str


class EnrichedList(BaseModel):
    data: List[EnrichedResource]


class RelatedItem(BaseModel):
    id: int
    title: str
    url: str


class RelatedList(BaseModel):
    related: List[RelatedItem]
