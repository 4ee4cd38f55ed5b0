"""
Chat API - metered chat completions

Flow per request:
1. Entitlement gate (dependency) - denies with a paywall payload
2. Pre-flight estimate of the user's message
3. Model backend call (SSE stream or single completion)
4. Post-hoc accounting of the full exchange
5. Trailing usage frame so the client can update its quota display

A client that disconnects mid-stream is still charged for what was
generated so far; that accounting runs in the background.
"""

import asyncio
import json
import logging
from typing import Optional, Set

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from infinet.api.deps import require_entitlement
from infinet.config import settings
from infinet.db import async_session_maker, RequestKind
from infinet.errors import AccountingError, ModelBackendError, ModelBackendTimeout
from infinet.schemas import ChatRequest, ChatResponse
from infinet.services import token_estimator
from infinet.services.accounting import UsageAccountant, AccountingResult
from infinet.services.entitlement_gate import Allow
from infinet.services.model_client import ChatStream, ModelBackendClient, get_model_client
from infinet.services.subscription_service import SubscriptionSnapshot

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/chat", tags=["chat"])

# Partial-accounting tasks for aborted streams; held so they are not garbage collected
_background_tasks: Set[asyncio.Task] = set()


def _sse(payload) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def account_usage(
    snapshot: SubscriptionSnapshot,
    request: ChatRequest,
    response_text: str,
    tokens_estimated: int,
    model: str,
) -> AccountingResult:
    """Record the exchange in a session of its own (the request's session may be gone)."""
    async with async_session_maker() as session:
        return await UsageAccountant(session).record(
            snapshot,
            user_text=request.user_text,
            response_text=response_text,
            tokens_estimated=tokens_estimated,
            kind=RequestKind.CHAT,
            model=model,
            chat_id=request.chat_id,
            message_id=request.message_id,
        )


async def _account_partial(
    snapshot: SubscriptionSnapshot,
    request: ChatRequest,
    response_text: str,
    tokens_estimated: int,
    model: str,
) -> None:
    try:
        result = await account_usage(snapshot, request, response_text, tokens_estimated, model)
        logger.info(f"Accounted aborted stream for {snapshot.user_id}: {result.tokens_used} tokens")
    except AccountingError as e:
        logger.error(f"Failed to account aborted stream for {snapshot.user_id}: {e}")


def _schedule_partial_accounting(*args) -> None:
    task = asyncio.create_task(_account_partial(*args))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@router.post("")
async def chat(
    request: ChatRequest,
    decision: Allow = Depends(require_entitlement("/api/chat")),
    model_client: ModelBackendClient = Depends(get_model_client),
):
    """
    Send a conversation to the model and get the assistant's reply.

    - `stream: true` (default): Server-Sent Events. `{"content": ...}` frames,
      then `{"type": "usage", ...}`, then `[DONE]`.
    - `stream: false`: a single JSON body with `content` and `usage`.
    """
    snapshot = decision.snapshot
    model = request.model or settings.default_model
    messages = [m.model_dump() for m in request.messages]
    tokens_estimated = token_estimator.estimate(request.user_text)

    if not request.stream:
        content = await model_client.complete(
            messages=messages,
            model=model,
            temperature=request.temperature,
            max_tokens=request.max_tokens,
        )
        result = await account_usage(snapshot, request, content, tokens_estimated, model)
        return ChatResponse(content=content, model=model, usage=result.to_frame())

    # Open before responding so backend errors keep their status code
    stream = await model_client.open_chat_stream(
        messages=messages,
        model=model,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )
    return StreamingResponse(
        _generate_stream(stream, snapshot, request, tokens_estimated, model),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable nginx buffering
        }
    )


async def _generate_stream(
    stream: ChatStream,
    snapshot: SubscriptionSnapshot,
    request: ChatRequest,
    tokens_estimated: int,
    model: str,
):
    full_response = ""
    try:
        async for delta in stream.deltas():
            full_response += delta
            yield _sse({"content": delta})
    except ModelBackendError as e:
        # Nothing is recorded for a failed generation
        logger.warning(f"Model stream failed for {snapshot.user_id}: {e}")
        yield _sse({
            "type": "error",
            "code": "BACKEND_TIMEOUT" if isinstance(e, ModelBackendTimeout) else "BACKEND_ERROR",
            "message": "The AI service could not complete this request. Please try again.",
            "retryable": True,
        })
        yield "data: [DONE]\n\n"
        return
    except (asyncio.CancelledError, GeneratorExit):
        logger.info(f"Client aborted stream for {snapshot.user_id} after {len(full_response)} chars")
        _schedule_partial_accounting(snapshot, request, full_response, tokens_estimated, model)
        raise
    finally:
        await stream.aclose()

    try:
        result = await account_usage(snapshot, request, full_response, tokens_estimated, model)
    except AccountingError as e:
        logger.error(f"Usage accounting failed for {snapshot.user_id}: {e}")
        yield _sse({
            "type": "error",
            "code": "ACCOUNTING_FAILED",
            "message": "Your request could not be recorded. Please try again.",
            "retryable": True,
        })
        yield "data: [DONE]\n\n"
        return

    yield _sse(result.to_frame())
    yield "data: [DONE]\n\n"
