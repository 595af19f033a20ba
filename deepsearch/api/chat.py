# pyright: reportMissingImports=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response, StreamingResponse

from deepsearch.api.deps import get_chat_pipeline
from deepsearch.core.errors import ChatPipelineError, TooManyRequests
from deepsearch.core.logging import request_id_ctx_var
from deepsearch.services.chat_pipeline import ChatPipeline
from deepsearch.services.data_stream import DATA_STREAM_HEADERS


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])


def _error_response(e: ChatPipelineError) -> Response:
    if e.status_code >= 500:
        logger.error("chat request failed [%s]: %s", e.tag, e.message, exc_info=e.__cause__)
    else:
        logger.info("chat request rejected [%s]: %s", e.tag, e.message)
    headers: dict[str, str] = {}
    if isinstance(e, TooManyRequests) and e.retry_after_seconds is not None:
        headers["Retry-After"] = str(max(0, int(e.retry_after_seconds)))
    return PlainTextResponse(e.public_message, status_code=e.status_code, headers=headers)


@router.post("/chat", operation_id="chat_stream")
async def chat_stream(
    request: Request,
    pipeline: ChatPipeline = Depends(get_chat_pipeline),
) -> Response:
    try:
        prepared = await pipeline.prepare(
            authorization=request.headers.get("authorization"),
            read_body=request.json,
            trace_id=request_id_ctx_var.get(),
        )
    except ChatPipelineError as e:
        return _error_response(e)

    return StreamingResponse(
        pipeline.stream(prepared),
        media_type="text/plain; charset=utf-8",
        headers=DATA_STREAM_HEADERS,
    )
