from typing import Any, Dict, List, Optional

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from app.models import Assignment, Question, as_utc, utcnow


class AssignmentNotFound(Exception):
    def __init__(self, assignment_id: int):
        super().__init__(f"Assignment {assignment_id} not found")
        self.assignment_id = assignment_id


def question_to_dict(q: Question) -> Dict[str, Any]:
    return {
        "id": q.id,
        "assignmentId": q.assignment_id,
        "question": q.question,
        "type": q.type,
        "totalPoints": q.total_points,
        "choices": q.choices,
        "scoring": q.scoring,
        # milliseconds, the unit the editor store stamps its own edits with
        "updatedAt": int(as_utc(q.updated_at).timestamp() * 1000),
    }


class AssignmentRepository:
    """Assignment and question records; the job runner persists finished results through save()."""

    def __init__(self, engine: Engine):
        self._engine = engine

    def create(self, name: str, introduction: Optional[str] = None) -> Assignment:
        with Session(self._engine) as s:
            assignment = Assignment(name=name, introduction=introduction)
            s.add(assignment)
            s.commit()
            s.refresh(assignment)
            return assignment

    def get(self, assignment_id: int) -> Assignment:
        with Session(self._engine) as s:
            assignment = s.get(Assignment, assignment_id)
            if assignment is None:
                raise AssignmentNotFound(assignment_id)
            return assignment

    def update(self, assignment_id: int, **fields) -> Assignment:
        with Session(self._engine) as s:
            assignment = s.get(Assignment, assignment_id)
            if assignment is None:
                raise AssignmentNotFound(assignment_id)
            for k, v in fields.items():
                setattr(assignment, k, v)
            assignment.updated_at = utcnow()
            s.add(assignment)
            s.commit()
            s.refresh(assignment)
            return assignment

    def list_questions(self, assignment_id: int) -> List[Dict[str, Any]]:
        with Session(self._engine) as s:
            stmt = select(Question).where(Question.assignment_id == assignment_id).order_by(col(Question.position))
            return [question_to_dict(q) for q in s.exec(stmt).all()]

    def save(self, assignment_id: int, questions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Replace the assignment's question list in one transaction and return the stored rows.
        Accepts camelCase or snake_case keys.
        """
        with Session(self._engine) as s:
            if s.get(Assignment, assignment_id) is None:
                raise AssignmentNotFound(assignment_id)
            for old in s.exec(select(Question).where(Question.assignment_id == assignment_id)).all():
                s.delete(old)
            rows = []
            for position, data in enumerate(questions):
                row = Question(
                    assignment_id=assignment_id,
                    position=position,
                    question=data["question"],
                    type=data.get("type", "TEXT"),
                    total_points=data.get("totalPoints", data.get("total_points", 1)),
                    choices=data.get("choices"),
                    scoring=data.get("scoring"),
                )
                s.add(row)
                rows.append(row)
            s.commit()
            for row in rows:
                s.refresh(row)
            return [question_to_dict(row) for row in rows]
