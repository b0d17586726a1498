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
from app.core.quiz import (
    InvalidPaperError,
    build_generation_prompt,
    validate_generate_request,
    validate_generated_paper,
)
from app.core.rate_limit import API_LIMIT_ERROR_CODE, rate_limit
from app.models.schemas import GenerateRequest, QuestionPaper

logger = logging.getLogger(__name__)

router = APIRouter(tags=["quiz"])

ROUTE = "/api/generate"
ACTION = "generate_quiz"


@router.post(
    "/generate",
    response_model=QuestionPaper,
    dependencies=[Depends(rate_limit(ROUTE, action=ACTION))],
)
async def generate_quiz(body: GenerateRequest, request: Request):
    recorder = ApiEventRecorder(ROUTE, ACTION, get_client_key(request))

    error = validate_generate_request(body)
    if error:
        await recorder.record(status.HTTP_400_BAD_REQUEST, error_message=error)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error)

    try:
        result = await llm_completion_json(build_generation_prompt(body))
        validate_generated_paper(result.data, body.test_type, body.num_questions)
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
    except (LLMResponseError, InvalidPaperError) as exc:
        logger.warning("Rejected generated paper: %s", exc)
        await recorder.record(status.HTTP_502_BAD_GATEWAY, error_message=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="The generated test was malformed. Please try again.",
        )
    except Exception as exc:
        await recorder.record(status.HTTP_500_INTERNAL_SERVER_ERROR, error_message=str(exc))
        raise

    await recorder.record(
        status.HTTP_200_OK,
        metadata={
            **result.usage,
            "test_type": body.test_type,
            "difficulty": body.difficulty,
            "num_questions": body.num_questions,
        },
    )
    return result.data
