from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: list[dict] = Field(default_factory=list)


class PageMeta(BaseModel):
    limit: int
    offset: int
    total: int
