from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# Minimal OpenAI chat-completions request; only the fields forwarded upstream are typed


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: List[Any] = Field(default_factory=list)
    stream: Optional[bool] = False
    max_tokens: Optional[int] = None

    def upstream_payload(self, messages: Optional[List[Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.messages if messages is None else messages,
            "stream": bool(self.stream),
        }
        # Only forward max_tokens when the caller actually sent it
        if "max_tokens" in self.model_fields_set:
            payload["max_tokens"] = self.max_tokens
        return payload


class ErrorResponse(BaseModel):
    error: Literal[True] = True
    message: str
