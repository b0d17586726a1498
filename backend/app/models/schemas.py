from __future__ import annotations

import datetime
from typing import Any

from pydantic import BaseModel


# -- Request schemas --

class PreviousQuestion(BaseModel):
    question: str
    answer: str


class GenerateRequest(BaseModel):
    topic: str = ""
    selected_topics: list[str] = []
    language: str = "english"
    test_type: str = "multiple-choice"
    num_questions: int = 10
    difficulty: str = "intermediate"
    topic_context: str | None = None
    exam_name: str | None = None
    syllabus_focus: list[str] = []
    previous_questions: list[PreviousQuestion] = []
    test_mode: str = "quiz-practice"
    objective_only: bool = False


class ExplainRequest(BaseModel):
    topic: str = ""
    question: str = ""
    answer: str = ""
    language: str | None = None


class CreateTestRequest(BaseModel):
    test: dict[str, Any] | None = None
    request_params: dict[str, Any] = {}


class GoogleCredentialRequest(BaseModel):
    credential: str | None = None


# -- Response schemas --

class Question(BaseModel):
    question: str
    options: list[str]
    answer: str


class QuestionPaper(BaseModel):
    topic: str
    questions: list[Question]


class ExplanationResponse(BaseModel):
    explanation: str


class CreateTestResponse(BaseModel):
    message: str
    id: int


class TestSummary(BaseModel):
    id: int
    topic: str
    test_type: str | None = None
    difficulty: str | None = None
    language: str | None = None
    num_questions: int | None = None
    created_at: datetime.datetime

    model_config = {"from_attributes": True}


class TestListResponse(BaseModel):
    tests: list[TestSummary]


class TestDetail(TestSummary):
    test: dict[str, Any]


class UserResponse(BaseModel):
    id: str
    email: str
    name: str | None = None
    picture_url: str | None = None
    locale: str | None = None
    created_at: datetime.datetime | None = None
    last_login_at: datetime.datetime | None = None

    model_config = {"from_attributes": True}


class AuthResponse(BaseModel):
    user: UserResponse | None = None



# -- Per-user state --

class AttemptIn(BaseModel):
    test_id: int
    user_answers: dict[str, Any] = {}
    score: int | None = None
    total_questions: int | None = None
    time_taken: int | None = None
    submitted_at: datetime.datetime | None = None
    metadata: dict[str, Any] = {}


class UserStateUpdate(BaseModel):
    # Malformed parts are dropped, not rejected
    storage: Any = None
    attempts: Any = None


class AttemptOut(BaseModel):
    test_id: int
    user_answers: dict[str, Any] = {}
    score: int | None = None
    total_questions: int | None = None
    time_taken: int | None = None
    submitted_at: datetime.datetime | None = None
    metadata: dict[str, Any] = {}
    test: dict[str, Any] | None = None
    test_created_at: datetime.datetime | None = None


class UserStateResponse(BaseModel):
    storage: dict[str, Any]
    attempts: list[AttemptOut]


class UserStateUpdateResponse(BaseModel):
    success: bool
    stored_keys: int
    stored_attempts: int
