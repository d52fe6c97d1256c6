import pytest

from app.generators import GenerationError, PublishGenerator, QuestionDraftGenerator
from app.schemas import GenerateQuestionsRequest, PublishAssignmentRequest


def recorder():
    calls = []
    return calls, lambda pct, text: calls.append((pct, text))


@pytest.mark.asyncio
async def test_drafts_cover_every_requested_type():
    calls, on_progress = recorder()
    work = GenerateQuestionsRequest.model_validate({
        "questionsToGenerate": {"singleCorrect": 1, "url": 1, "upload": 1},
        "learningObjectives": "Cells divide by mitosis",
    })

    drafts = await QuestionDraftGenerator(step_delay=0).generate(work, on_progress)

    assert [d["type"] for d in drafts] == ["SINGLE_CORRECT", "URL", "UPLOAD"]
    assert all(d["id"] is None for d in drafts)
    assert len({d["draftId"] for d in drafts}) == 3
    assert drafts[0]["choices"] and drafts[0]["scoring"] is None
    assert drafts[1]["scoring"]["type"] == "CRITERIA_BASED"
    percentages = [pct for pct, _ in calls]
    assert percentages == sorted(percentages)
    assert percentages[-1] == 95


@pytest.mark.asyncio
async def test_drafts_need_a_question_count():
    work = GenerateQuestionsRequest.model_validate({"questionsToGenerate": {}})

    with pytest.raises(GenerationError):
        await QuestionDraftGenerator(step_delay=0).generate(work, lambda pct, text: None)


@pytest.mark.asyncio
async def test_publish_fills_missing_rubrics():
    calls, on_progress = recorder()
    work = PublishAssignmentRequest.model_validate({
        "questions": [
            {"question": "Explain osmosis.", "totalPoints": 4},
            {"question": "Pick one", "type": "SINGLE_CORRECT", "choices": [{"choice": "A", "isCorrect": True}]},
        ],
    })

    published = await PublishGenerator(step_delay=0).generate(work, on_progress)

    assert published[0]["scoring"]["rubrics"][0]["criteria"][0]["points"] == 4
    assert published[0]["totalPoints"] == 4
    assert published[1]["scoring"] is None
    assert [pct for pct, _ in calls] == [5, 47, 90, 95]


@pytest.mark.asyncio
async def test_publish_rejects_choice_question_without_choices():
    work = PublishAssignmentRequest.model_validate({"questions": [{"question": "Pick one", "type": "TRUE_FALSE"}]})

    with pytest.raises(GenerationError, match="Question 1: choice question has no choices"):
        await PublishGenerator(step_delay=0).generate(work, lambda pct, text: None)
