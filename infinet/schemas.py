"""Pydantic schemas for API request/response validation"""

from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field
from enum import Enum


class PaidTier(str, Enum):
    """Tiers purchasable through checkout"""
    STARTER = "starter"
    PREMIUM = "premium"
    LIMITLESS = "limitless"


class AdminTier(str, Enum):
    """Tiers an operator may assign"""
    FREE = "free"
    STARTER = "starter"
    PREMIUM = "premium"
    LIMITLESS = "limitless"
    TRIAL = "trial"


# ============ Chat Schemas ============

class ChatMessage(BaseModel):
    role: str = Field(..., pattern="^(system|user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(None, ge=1)
    stream: bool = True
    chat_id: Optional[str] = None
    message_id: Optional[str] = None  # Client-generated; makes accounting retries idempotent

    @property
    def user_text(self) -> str:
        """The latest user message, which is what the request is billed for."""
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""


class ChatResponse(BaseModel):
    content: str
    model: str
    usage: Dict[str, Any]


# ============ Image Schemas ============

class ImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    model: Optional[str] = None
    width: int = Field(1024, ge=64, le=2048)
    height: int = Field(1024, ge=64, le=2048)
    steps: Optional[int] = Field(None, ge=1, le=100)
    style_preset: Optional[str] = None
    negative_prompt: Optional[str] = None
    chat_id: Optional[str] = None
    message_id: Optional[str] = None


class ImageResponse(BaseModel):
    images: List[Any]
    model: str
    usage: Dict[str, Any]


# ============ Usage Schemas ============

class UsageResponse(BaseModel):
    tier: str
    status: str
    periodStart: str
    periodEnd: str
    tokensUsed: int
    tokenLimit: Optional[int]
    tokensRemaining: Optional[int]
    percentUsed: float
    usageStatus: str
    daysUntilReset: int
    recommendedDailyPace: Optional[int] = None
    totalRequests: int
    requestsToday: int
    dailyRequestLimit: Optional[int]


# ============ Billing Schemas ============

class SubscribeRequest(BaseModel):
    tier: PaidTier
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutResponse(BaseModel):
    session_id: str
    url: str


class PortalRequest(BaseModel):
    return_url: Optional[str] = None


class PortalResponse(BaseModel):
    url: str
