"""
Pydantic models for the assignment job API and its status stream.
Field aliases follow the camelCase wire format the editor frontend speaks.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class QuestionIn(WireModel):
    id: Optional[int] = None
    question: str
    type: str = "TEXT"
    total_points: int = Field(1, alias="totalPoints")
    choices: Optional[List[Dict[str, Any]]] = None
    scoring: Optional[Dict[str, Any]] = None


class AssignmentCreate(WireModel):
    name: str
    introduction: Optional[str] = None


class AssignmentOut(WireModel):
    id: int
    name: str
    introduction: Optional[str] = None
    published: bool
    questions: List[Dict[str, Any]] = []


class PublishAssignmentRequest(WireModel):
    """Body of PUT /{id}/publish: the assignment fields plus the edited question list."""
    introduction: Optional[str] = None
    questions: Optional[List[QuestionIn]] = None


class QuestionsToGenerate(WireModel):
    multiple_choice: int = Field(0, alias="multipleChoice", ge=0)
    single_correct: int = Field(0, alias="singleCorrect", ge=0)
    true_false: int = Field(0, alias="trueFalse", ge=0)
    text_response: int = Field(0, alias="textResponse", ge=0)
    url: int = Field(0, ge=0)
    upload: int = Field(0, ge=0)

    def total(self) -> int:
        return sum(self.model_dump().values())


class FileContent(WireModel):
    filename: str
    content: str


class GenerateQuestionsRequest(WireModel):
    assignment_type: str = Field("Practice", alias="assignmentType")
    questions_to_generate: QuestionsToGenerate = Field(alias="questionsToGenerate")
    file_contents: Optional[List[FileContent]] = Field(None, alias="fileContents")
    learning_objectives: Optional[str] = Field(None, alias="learningObjectives")


class JobCreatedResponse(WireModel):
    job_id: int = Field(alias="jobId")
    message: str


class JobStatusResponse(WireModel):
    status: str
    progress: str
    questions: Optional[List[Dict[str, Any]]] = None


class StatusEvent(WireModel):
    """Payload of one `update` / `finalize` frame on the status stream."""
    status: str
    progress: str
    percentage: Optional[int] = None
    result: Optional[str] = None  # JSON-encoded payload
    done: bool = False
    timestamp: str
    message: Optional[str] = None
