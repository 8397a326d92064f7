from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any


class RecordRequest(BaseModel):
    input: str
    result: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('input')
    @classmethod
    def input_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('input cannot be empty')
        return v

    @field_validator('result')
    @classmethod
    def result_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('result cannot be empty')
        return v


class BatchRequest(BaseModel):
    records: List[RecordRequest]


class RecordResponse(BaseModel):
    id: str
    input: str
    result: str
    data: Dict[str, Any]


class BatchResponse(BaseModel):
    added: int
    ids: List[str]


class DeleteResponse(BaseModel):
    success: bool
    id: str


class SearchResult(BaseModel):
    distance: float
    id: str
    input: str
    result: str
    data: Dict[str, Any]


class SearchResponse(BaseModel):
    query: str
    results: List[SearchResult]
    elapsed_ms: float


class ToolSearchRequest(BaseModel):
    text: str
    numberOfResults: Optional[int] = None


class ToolContent(BaseModel):
    type: str = "text"
    text: str


class ToolSearchResponse(BaseModel):
    content: List[ToolContent]


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    records: int
    nodes: int
    max_level: int


class NukeResponse(BaseModel):
    success: bool
    db_path: str
