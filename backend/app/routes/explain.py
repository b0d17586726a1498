import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.core.api_events import ApiEventRecorder
from app.core.client_key import get_client_key
from app.core.llm import (
    LLMConfigurationError,
    LLMQuotaExceededError,
    LLMResponseError,
    llm_completion_json,
)
from app.core.quiz import build_explanation_prompt
from app.core.rate_limit import API_LIMIT_ERROR_CODE, rate_limit
from app.models.schemas import ExplainRequest, ExplanationResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["quiz"])

ROUTE = "/api/explain"
ACTION = "explain_answer"


@router.post(
    "/explain",
    response_model=ExplanationResponse,
    dependencies=[Depends(rate_limit(ROUTE, action=ACTION))],
)
async def explain_answer(body: ExplainRequest, request: Request):
    recorder = ApiEventRecorder(ROUTE, ACTION, get_client_key(request))

    if not body.topic or not body.question or not body.answer:
        message = "Topic, question, and answer are required"
        await recorder.record(status.HTTP_400_BAD_REQUEST, error_message=message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    prompt = build_explanation_prompt(body.topic, body.question, body.answer, body.language)
    try:
        result = await llm_completion_json(prompt)
        explanation = result.data.get("explanation")
        if not isinstance(explanation, str) or not explanation.strip():
            raise LLMResponseError("Model response has no explanation")
    except LLMConfigurationError as exc:
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    except LLMQuotaExceededError as exc:
        await recorder.record(status.HTTP_429_TOO_MANY_REQUESTS, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "The AI provider is over its usage limit. Please try again later.",
                "code": API_LIMIT_ERROR_CODE,
            },
        )
    except LLMResponseError as exc:
        logger.warning("Rejected explanation: %s", exc)
        await recorder.record(status.HTTP_502_BAD_GATEWAY, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The explanation could not be generated. Please try again.",
        )
    except Exception as exc:
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise

    await recorder.record(status.HTTP_200_OK, metadata=result.usage)
    return ExplanationResponse(explanation=explanation)
