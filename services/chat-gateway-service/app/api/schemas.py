from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    system_prompt: Optional[str] = Field(default="", alias="systemPrompt")
    user_message: Any = Field(default=None, alias="userMessage")
    # entries are {role, content}; assistant content may be a payload object
    message_history: Optional[List[Any]] = Field(default=None, alias="messageHistory")
    character_id: Optional[str] = Field(default="", alias="characterId")
    cached_content: Any = Field(default=None, alias="cachedContent")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    cached_content: Optional[str] = Field(default=None, alias="cachedContent")
    error_code: Optional[str] = None

    def to_body(self) -> dict:
        body = self.model_dump(by_alias=True)
        if body.get("error_code") is None:
            body.pop("error_code", None)
        return body


class ErrorResponse(BaseModel):
    error: str
    error_code: Optional[str] = None
    details: Optional[str] = None

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)
