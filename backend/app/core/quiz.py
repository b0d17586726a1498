"""Quiz request validation, generated paper validation and prompt builders."""

from __future__ import annotations

from typing import Any

from app.models.schemas import GenerateRequest, PreviousQuestion

VALID_LANGUAGES = ("english", "hindi", "spanish")
VALID_TEST_TYPES = ("multiple-choice", "true-false", "coding", "mixed", "speed-challenge")
VALID_DIFFICULTIES = ("beginner", "intermediate", "advanced", "expert")
MIN_QUESTIONS = 1
MAX_QUESTIONS = 200

FOUR_OPTION_TYPES = frozenset({"multiple-choice", "speed-challenge"})


class InvalidPaperError(Exception):
    """Raised when model output does not form a usable question paper."""


def validate_generate_request(req: GenerateRequest) -> str | None:
    """Return a user-facing error message, or None when the request is valid."""
    if not req.topic.strip() and not req.selected_topics:
        return "Topic or selected topics are required"
    if req.language.lower() not in VALID_LANGUAGES:
        return "Invalid language selection"
    if req.test_type not in VALID_TEST_TYPES:
        return "Invalid test type"
    if not MIN_QUESTIONS <= req.num_questions <= MAX_QUESTIONS:
        return f"Number of questions must be between {MIN_QUESTIONS} and {MAX_QUESTIONS}"
    if req.difficulty not in VALID_DIFFICULTIES:
        return "Invalid difficulty level"
    return None


def validate_generated_paper(paper: Any, test_type: str, num_questions: int) -> None:
    if not isinstance(paper, dict) or not paper.get("topic") or not isinstance(paper.get("questions"), list):
        raise InvalidPaperError("Invalid response structure")

    questions = paper["questions"]
    for index, q in enumerate(questions):
        if (
            not isinstance(q, dict)
            or not q.get("question")
            or not isinstance(q.get("options"), list)
            or not q.get("answer")
        ):
            raise InvalidPaperError(f"Invalid question structure at index {index}")

        options = q["options"]
        if test_type in FOUR_OPTION_TYPES and len(options) != 4:
            raise InvalidPaperError(f"Question {index + 1} must have exactly 4 options")
        if test_type == "true-false" and len(options) != 2:
            raise InvalidPaperError(
                f"Question {index + 1} must have exactly 2 options for true/false format"
            )
        if q["answer"] not in options:
            raise InvalidPaperError(f"Question {index + 1} answer must match one of the options")

    if len(questions) != num_questions:
        raise InvalidPaperError(f"Expected {num_questions} questions but got {len(questions)}")


# ── Prompts ──────────────────────────────────────────────────────────────────

_TYPE_INSTRUCTIONS = {
    "multiple-choice": (
        "- Create challenging multiple-choice questions with 4 options each\n"
        "- Make distractors plausible and educational\n"
        "- Show short code snippets in fenced blocks for code questions"
    ),
    "true-false": (
        "- Create nuanced true/false statements that test deep understanding\n"
        "- Use exactly 2 options with localized true/false wording\n"
        "- Focus on common misconceptions"
    ),
    "coding": (
        "- Create practical coding problems using fenced code blocks\n"
        "- Mix debugging, completing partial code and optimisation tasks\n"
        "- Show expected inputs and outputs"
    ),
    "speed-challenge": (
        "- Create fast-response multiple-choice questions with exactly 4 options\n"
        "- Keep question stems short and direct\n"
        "- Favour quick reasoning over long derivations"
    ),
    "mixed": (
        "- Mix question styles for a comprehensive assessment\n"
        "- Balance theory with practical application"
    ),
}

_DIFFICULTY_INSTRUCTIONS = {
    "beginner": "- Focus on fundamentals with simple, clear language",
    "intermediate": "- Mix basic and advanced concepts with practical application",
    "advanced": "- Focus on complex scenarios, edge cases and problem solving",
    "expert": "- Test mastery: optimisation, best practices and intricate details",
}


def _format_previous(previous: list[PreviousQuestion]) -> str:
    if not previous:
        return "No previous questions."
    return "\n\n".join(f"Q: {p.question}\nA: {p.answer}" for p in previous)


def build_generation_prompt(req: GenerateRequest) -> str:
    topic = req.topic.strip() or ", ".join(req.selected_topics)
    exam_mode = (
        f"Generate this as an exam-style paper for {req.exam_name}." if req.exam_name else "General quiz mode"
    )
    syllabus = ", ".join(req.syllabus_focus) if req.syllabus_focus else "Use the full provided topic context"
    mode_rule = (
        "Generate a full-length exam paper for objective testing."
        if req.test_mode == "full-exam"
        else "Generate a concise quiz-practice paper."
    )

    return f"""You are an expert quiz generator. Generate a {req.difficulty}-level {req.test_type} quiz with {req.num_questions} questions.

LANGUAGE: {req.language}
TEST MODE: {req.test_mode}
EXAM MODE: {exam_mode}
OBJECTIVE ONLY: {"Yes" if req.objective_only else "No"}
SYLLABUS COVERAGE: {syllabus}

OUTPUT FORMAT:
Respond with a single JSON object of this exact shape:
{{
  "topic": "A clear topic description",
  "questions": [
    {{"question": "Question text", "options": ["A", "B", "C", "D"], "answer": "Must match exactly one option"}}
  ]
}}

RULES:
1. Output only the JSON object.
2. Multiple choice questions have exactly 4 options; true/false questions exactly 2.
3. Every answer matches exactly one of its options.
4. Do not repeat previous questions.
5. Do not include explanation fields.
6. {mode_rule}

QUIZ TYPE:
{_TYPE_INSTRUCTIONS.get(req.test_type, _TYPE_INSTRUCTIONS["mixed"])}

DIFFICULTY ({req.difficulty}):
{_DIFFICULTY_INSTRUCTIONS.get(req.difficulty, _DIFFICULTY_INSTRUCTIONS["expert"])}

FORMATTING:
- Markdown for emphasis, LaTeX for math ($E = mc^2$), fenced blocks for code.

TOPIC INFORMATION:
{req.topic_context or topic}

Topic:
---
{topic}
---

PREVIOUS QUESTIONS TO AVOID:
{_format_previous(req.previous_questions)}
"""


def build_explanation_prompt(topic: str, question: str, answer: str, language: str | None = None) -> str:
    language = language or "English"
    return f"""Generate an accurate explanation for why the answer is correct.

Topic: {topic}
Explanation Language: {language}
Question: {question}
Correct Answer: {answer}

Respond with a single JSON object of this exact shape:
{{"explanation": "Markdown explanation text"}}

REQUIREMENTS:
1. Write in {language}.
2. Keep it educational and under 220 words.
3. Explain clearly why the correct answer is right.
4. Include one concrete example on a separate line starting with "**Example:**".
5. Do not include extra keys or any text outside the JSON object.
"""
