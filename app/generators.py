"""
Content generators: the long-running work behind publish and generate-questions jobs.

A generator is any object with `async generate(work, on_progress) -> result`.
It reports through `on_progress(percentage, text)` and awaits between steps so
status updates reach stream consumers while it runs. These built-ins draft and
check questions from templates; an AI-backed generator plugs in the same way.
"""

import asyncio
import re
import time
import uuid
from typing import Any, Callable, Dict, List, Protocol

from app.schemas import GenerateQuestionsRequest, PublishAssignmentRequest, QuestionIn

ProgressCallback = Callable[[int, str], None]

CHOICE_TYPES = {"MULTIPLE_CORRECT", "SINGLE_CORRECT", "TRUE_FALSE"}

# field on QuestionsToGenerate -> stored question type
QUESTION_TYPES = {
    "multiple_choice": "MULTIPLE_CORRECT",
    "single_correct": "SINGLE_CORRECT",
    "true_false": "TRUE_FALSE",
    "text_response": "TEXT",
    "url": "URL",
    "upload": "UPLOAD",
}


class GenerationError(Exception):
    pass


class ContentGenerator(Protocol):
    async def generate(self, work: Any, on_progress: ProgressCallback) -> Any:
        ...


def _now_ms() -> int:
    return int(time.time() * 1000)


def default_rubric(points: int) -> Dict[str, Any]:
    top = max(points, 1)
    return {
        "type": "CRITERIA_BASED",
        "rubrics": [{
            "rubricQuestion": "Does the response answer the question?",
            "criteria": [
                {"description": "Excellent - complete and accurate", "points": top},
                {"description": "Partial - some key elements missing", "points": top // 2},
                {"description": "Insufficient - off topic or missing", "points": 0},
            ],
        }],
    }


def _topics(source: str, objectives: str | None) -> List[str]:
    found = []
    for chunk in re.split(r"[\n;]+|(?<=\.)\s+", (objectives or "") + "\n" + source):
        chunk = chunk.strip(" -*\t.")
        if 3 <= len(chunk) <= 120:
            found.append(chunk)
    return found or ["the course material"]


def _draft(number: int, qtype: str, topic: str) -> Dict[str, Any]:
    points = 1 if qtype in CHOICE_TYPES else 5
    choices = None
    if qtype == "TRUE_FALSE":
        text = f"True or false: {topic}."
        choices = [{"choice": "True", "isCorrect": True, "points": 1}, {"choice": "False", "isCorrect": False, "points": 0}]
    elif qtype in CHOICE_TYPES:
        text = f"Which of the following best describes {topic}?"
        choices = [
            {"choice": f"A correct statement about {topic}", "isCorrect": True, "points": 1},
            {"choice": f"A common misconception about {topic}", "isCorrect": False, "points": 0},
            {"choice": "None of the above", "isCorrect": False, "points": 0},
        ]
    elif qtype == "URL":
        text = f"Share a link to a resource that explains {topic} and summarise it."
    elif qtype == "UPLOAD":
        text = f"Upload a short document demonstrating your understanding of {topic}."
    else:
        text = f"In your own words, explain {topic}."
    return {
        "id": None,
        # stored ids come from the database; drafts are keyed on their own
        "draftId": uuid.uuid4().hex,
        "question": text,
        "type": qtype,
        "totalPoints": points,
        "choices": choices,
        "scoring": None if qtype in CHOICE_TYPES else default_rubric(points),
        "updatedAt": _now_ms(),
    }


class QuestionDraftGenerator:
    def __init__(self, step_delay: float = 0.2):
        self._delay = step_delay

    async def generate(self, work: GenerateQuestionsRequest, on_progress: ProgressCallback) -> List[Dict[str, Any]]:
        wanted = work.questions_to_generate
        total = wanted.total()
        if total == 0:
            raise GenerationError("No questions requested")

        source = ""
        if work.file_contents:
            on_progress(5, "Organizing the notes: merging file contents")
            source = "\n".join(f.content for f in work.file_contents)
            await asyncio.sleep(self._delay)

        topics = _topics(source, work.learning_objectives)
        questions: List[Dict[str, Any]] = []
        for field, qtype in QUESTION_TYPES.items():
            for _ in range(getattr(wanted, field)):
                number = len(questions) + 1
                questions.append(_draft(number, qtype, topics[(number - 1) % len(topics)]))
                on_progress(10 + (80 * number) // total, f"Generating question {number} of {total}")
                await asyncio.sleep(self._delay)

        on_progress(95, "Reviewing generated questions")
        return questions


def validate_question(q: QuestionIn) -> List[str]:
    problems = []
    if not q.question.strip():
        problems.append("question text is empty")
    if q.total_points <= 0:
        problems.append("points must be positive")
    if q.type in CHOICE_TYPES and not q.choices:
        problems.append("choice question has no choices")
    return problems


class PublishGenerator:
    """Checks every question of an assignment being published and fills in missing rubrics."""

    def __init__(self, step_delay: float = 0.2):
        self._delay = step_delay

    async def generate(self, work: PublishAssignmentRequest, on_progress: ProgressCallback) -> List[Dict[str, Any]]:
        questions = work.questions or []
        total = len(questions)
        on_progress(5, "Initializing assignment publishing...")
        await asyncio.sleep(self._delay)

        published = []
        for number, q in enumerate(questions, start=1):
            problems = validate_question(q)
            if problems:
                raise GenerationError(f"Question {number}: {', '.join(problems)}")
            data = q.model_dump(by_alias=True)
            if not data.get("scoring") and q.type not in CHOICE_TYPES:
                data["scoring"] = default_rubric(q.total_points)
            published.append(data)
            on_progress(5 + (85 * number) // total, f"Checked question {number} of {total}")
            await asyncio.sleep(self._delay)

        on_progress(95, "Saving questions")
        return published
