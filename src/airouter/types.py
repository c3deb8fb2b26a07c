from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class AIProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    MISTRAL = "mistral"
    COHERE = "cohere"

    def __str__(self) -> str:
        return self.value


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Literal["system", "user", "assistant", "tool"]
    content: str


class GenerationParams(BaseModel):
    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=32000)
    model: Optional[str] = None


class RoutingParams(GenerationParams):
    provider: Optional[AIProvider] = None
    fallback_providers: List[AIProvider] = Field(default_factory=list)
    use_smart_routing: bool = False


class ProviderChatResponse(BaseModel):
    model: str
    content: Optional[str] = None
    finish_reason: Optional[str] = None
    usage_prompt_tokens: int = 0
    usage_completion_tokens: int = 0


class Capability(BaseModel):
    supported_features: List[str]
    max_tokens: int
    supports_streaming: bool = True
    supports_tools: bool = False
    cost_per_1k_tokens: Optional[float] = None


class ProviderStatus(BaseModel):
    provider: AIProvider
    model: str
    status: Literal["available", "error"]
    error: Optional[str] = None
    last_checked: Optional[str] = None


class ProviderUsage(BaseModel):
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0


class ResponseTimeStats(BaseModel):
    average: float
    min: float
    max: float


class ProviderStats(BaseModel):
    total_providers: int
    active_providers: int
    provider_health: Dict[AIProvider, bool]
    recommended_provider: AIProvider
    usage_stats: Dict[AIProvider, ProviderUsage] = Field(default_factory=dict)
    response_time_stats: Dict[AIProvider, ResponseTimeStats] = Field(default_factory=dict)


class ModelInfo(BaseModel):
    provider: AIProvider
    models: List[str]
    capabilities: List[str]
    max_tokens: int
    cost_per_1k_tokens: Optional[float] = None


class ComparisonResult(BaseModel):
    provider: AIProvider
    response: Optional[str] = None
    execution_time_ms: int = 0
    tokens_used: int = 0
    status: Literal["success", "error"]
    error: Optional[str] = None


class ComparisonSummary(BaseModel):
    successful: int
    failed: int
    average_execution_time_ms: float


class ComparisonReport(BaseModel):
    prompt: str
    results: List[ComparisonResult]
    total_execution_time_ms: int
    summary: ComparisonSummary
