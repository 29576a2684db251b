from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AnalysisType = Literal["general", "code", "design", "content"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant", "function"]
    content: str
    name: Optional[str] = None


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    messages: List[ChatMessage] = Field(min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, gt=0, alias="maxTokens")
    image: Optional[str] = None

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            raise ValueError("model must be a non-empty string when provided")
        return stripped


class AnalyzeImageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    image: str = Field(min_length=1)
    prompt: Optional[str] = None
    analysis_type: AnalysisType = Field(default="general", alias="analysisType")
    model: Optional[str] = None
    max_tokens: Optional[int] = Field(default=None, gt=0, alias="maxTokens")


class ProviderUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ProviderChatResponse(BaseModel):
    status_code: int = 200
    model: str
    content: str | None = None
    finish_reason: str | None = None
    usage: ProviderUsage | None = None


class ProviderStreamChunk(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delta_content: str | None = None
    finish_reason: str | None = None
    usage: ProviderUsage | None = None


def usage_from_payload(payload: Any) -> ProviderUsage | None:
    if not isinstance(payload, dict):
        return None
    prompt_tokens = payload.get("prompt_tokens")
    completion_tokens = payload.get("completion_tokens")
    total_tokens = payload.get("total_tokens")
    if not any(isinstance(value, int) for value in (prompt_tokens, completion_tokens, total_tokens)):
        return None
    prompt = prompt_tokens if isinstance(prompt_tokens, int) else 0
    completion = completion_tokens if isinstance(completion_tokens, int) else 0
    total = total_tokens if isinstance(total_tokens, int) else prompt + completion
    return ProviderUsage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def message_text(content: Union[str, List[Dict[str, Any]], None]) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for item in content:
        if isinstance(item, dict):
            text = item.get("text")
            if isinstance(text, str):
                parts.append(text)
    return "".join(parts)


REQUIRED_CONFIG_FIELDS = frozenset(
    {"name", "endpoint", "deployment_name", "api_version", "api_key", "is_primary", "is_active"}
)


def _normalize_endpoint(value: str) -> str:
    stripped = value.strip().rstrip("/")
    if not stripped.startswith(("https://", "http://")):
        raise ValueError("endpoint must be an http(s) URL")
    return stripped


class ProviderConfigCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(min_length=1, max_length=255)
    endpoint: str = Field(min_length=1)
    deployment_name: str = Field(min_length=1, alias="deploymentName")
    api_version: str = Field(min_length=1, alias="apiVersion")
    api_key: str = Field(min_length=1, alias="apiKey")
    is_primary: bool = Field(default=False, alias="isPrimary")
    is_active: bool = Field(default=True, alias="isActive")
    max_tokens: Optional[int] = Field(default=None, gt=0, alias="maxTokens")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    rate_limit_rpm: Optional[int] = Field(default=None, gt=0, alias="rateLimitRpm")
    rate_limit_tpd: Optional[int] = Field(default=None, gt=0, alias="rateLimitTpd")

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: str) -> str:
        return _normalize_endpoint(value)


class ProviderConfigUpdate(BaseModel):
    """Partial update; only the fields present in the body are written."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    endpoint: Optional[str] = Field(default=None, min_length=1)
    deployment_name: Optional[str] = Field(default=None, min_length=1, alias="deploymentName")
    api_version: Optional[str] = Field(default=None, min_length=1, alias="apiVersion")
    api_key: Optional[str] = Field(default=None, min_length=1, alias="apiKey")
    is_primary: Optional[bool] = Field(default=None, alias="isPrimary")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    max_tokens: Optional[int] = Field(default=None, gt=0, alias="maxTokens")
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    rate_limit_rpm: Optional[int] = Field(default=None, gt=0, alias="rateLimitRpm")
    rate_limit_tpd: Optional[int] = Field(default=None, gt=0, alias="rateLimitTpd")

    @field_validator("endpoint")
    @classmethod
    def _check_endpoint(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_endpoint(value) if value is not None else None

    @model_validator(mode="after")
    def _check_required_not_null(self) -> "ProviderConfigUpdate":
        for field in REQUIRED_CONFIG_FIELDS & self.model_fields_set:
            if getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)
