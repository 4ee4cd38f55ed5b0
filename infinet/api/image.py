"""Image generation API - metered with the flat image surcharge"""

import logging

from fastapi import APIRouter, Depends

from infinet.api.deps import require_entitlement
from infinet.config import settings
from infinet.db import async_session_maker, RequestKind
from infinet.schemas import ImageRequest, ImageResponse
from infinet.services import token_estimator
from infinet.services.accounting import UsageAccountant
from infinet.services.entitlement_gate import Allow
from infinet.services.model_client import ModelBackendClient, get_model_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/image", tags=["image"])


@router.post("/generate", response_model=ImageResponse)
async def generate_image(
    request: ImageRequest,
    decision: Allow = Depends(require_entitlement("/api/image/generate")),
    model_client: ModelBackendClient = Depends(get_model_client),
):
    """Generate images from a prompt. Charged as prompt tokens plus the image surcharge."""
    model = request.model or settings.default_image_model
    tokens_estimated = token_estimator.estimate(request.prompt, includes_image=True)

    generated = await model_client.generate_image(
        prompt=request.prompt,
        model=model,
        width=request.width,
        height=request.height,
        steps=request.steps,
        style_preset=request.style_preset,
        negative_prompt=request.negative_prompt,
    )
    logger.info(f"Generated {len(generated['images'])} image(s) for {decision.snapshot.user_id}")

    async with async_session_maker() as session:
        result = await UsageAccountant(session).record(
            decision.snapshot,
            user_text=request.prompt,
            response_text="",
            tokens_estimated=tokens_estimated,
            kind=RequestKind.IMAGE,
            model=model,
            chat_id=request.chat_id,
            message_id=request.message_id,
            includes_image=True,
        )

    return ImageResponse(images=generated["images"], model=generated["model"], usage=result.to_frame())
