import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

UPDATED_AT = "updatedAt"
DRAFT_ID = "draftId"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class EditableState:
    questions: Tuple[Dict[str, Any], ...] = ()
    slices: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    job_started_at: Optional[int] = None


def _edited_since(local: Mapping[str, Any], started_at: Optional[int]) -> bool:
    ts = local.get(UPDATED_AT)
    if ts is None:
        return False
    return started_at is None or ts > started_at


def _keep_local(local: Mapping[str, Any], remote: Mapping[str, Any], started_at: Optional[int]) -> bool:
    # ties go to the server
    return _edited_since(local, started_at) and local[UPDATED_AT] > remote[UPDATED_AT]


def _key(question: Mapping[str, Any]) -> Optional[Tuple[str, Any]]:
    # stored rows and unsaved drafts live in separate key spaces
    if question.get("id") is not None:
        return ("id", question["id"])
    if question.get(DRAFT_ID) is not None:
        return ("draft", question[DRAFT_ID])
    return None


def _stamp(value: Mapping[str, Any], ts: int) -> Dict[str, Any]:
    out = dict(value)
    if out.get(UPDATED_AT) is None:
        out[UPDATED_AT] = ts
    return out


def _merge_questions(
    local: Tuple[Dict[str, Any], ...],
    streamed: List[Dict[str, Any]],
    started_at: Optional[int],
) -> Tuple[Dict[str, Any], ...]:
    local_by_key = {_key(q): q for q in local if _key(q) is not None}
    merged = []
    seen = set()
    for remote in streamed:
        key = _key(remote)
        current = local_by_key.get(key) if key is not None else None
        if current is not None and _keep_local(current, remote, started_at):
            merged.append(dict(current))
        else:
            merged.append(remote)
        if key is not None:
            seen.add(key)
    # questions the author added while the job ran are not the server's to drop
    for q in local:
        if (_key(q) is None or _key(q) not in seen) and _edited_since(q, started_at):
            merged.append(dict(q))
    return tuple(merged)


def merge_streamed_result(state: EditableState, streamed: Any, received_at: Optional[int] = None) -> EditableState:
    """
    Return a new state with a streamed job result folded in.

    `streamed` is either a question list or a mapping of slice name to value
    (`questions` inside the mapping is again a list). The payload is checked in
    full before anything is merged, so a bad payload leaves no half-applied
    state behind. The given state is never modified.
    """
    ts = received_at if received_at is not None else _now_ms()
    if isinstance(streamed, (list, tuple)):
        updates: Dict[str, Any] = {"questions": streamed}
    elif isinstance(streamed, Mapping):
        updates = dict(streamed)
    else:
        raise TypeError(f"Cannot merge a streamed result of type {type(streamed).__name__}")

    prepared: Dict[str, Any] = {}
    for name, value in updates.items():
        if name == "questions":
            if not isinstance(value, (list, tuple)) or not all(isinstance(q, Mapping) for q in value):
                raise ValueError("Streamed questions must be a list of objects")
            prepared[name] = [_stamp(q, ts) for q in value]
        else:
            if not isinstance(value, Mapping):
                raise ValueError(f"Streamed slice {name!r} must be an object")
            prepared[name] = _stamp(value, ts)

    questions = state.questions
    slices = dict(state.slices)
    for name, value in prepared.items():
        if name == "questions":
            questions = _merge_questions(state.questions, value, state.job_started_at)
            continue
        current = slices.get(name)
        slices[name] = dict(current) if current is not None and _keep_local(current, value, state.job_started_at) else value
    return replace(state, questions=questions, slices=slices)


class QuestionEditorStore:
    """
    Local editing state for one assignment. apply_progress and apply_result
    have the shapes a JobSubscription expects for its callbacks.
    """

    def __init__(
        self,
        questions: Iterable[Mapping[str, Any]] = (),
        slices: Optional[Mapping[str, Mapping[str, Any]]] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._clock = clock or _now_ms
        self.state = EditableState(
            questions=tuple(dict(q) for q in questions),
            slices={k: dict(v) for k, v in (slices or {}).items()},
        )
        self.percentage: Optional[int] = None
        self.progress_text: Optional[str] = None

    @property
    def questions(self) -> List[Dict[str, Any]]:
        return [dict(q) for q in self.state.questions]

    def begin_job(self) -> int:
        started = self._clock()
        self.state = replace(self.state, job_started_at=started)
        self.percentage = None
        self.progress_text = None
        return started

    def finish_job(self) -> None:
        self.state = replace(self.state, job_started_at=None)

    def add_question(self, question: Mapping[str, Any]) -> None:
        stamped = {**question, UPDATED_AT: self._clock()}
        self.state = replace(self.state, questions=self.state.questions + (stamped,))

    def edit_question(self, question_id: Any, **fields) -> None:
        """Edit by stored id, or by draftId for a draft that has not been saved yet."""
        if question_id is None:
            raise KeyError(question_id)
        edited = []
        found = False
        for q in self.state.questions:
            if question_id in (q.get("id"), q.get(DRAFT_ID)):
                q = {**q, **fields, UPDATED_AT: self._clock()}
                found = True
            edited.append(q)
        if not found:
            raise KeyError(question_id)
        self.state = replace(self.state, questions=tuple(edited))

    def edit_slice(self, name: str, **fields) -> None:
        slices = dict(self.state.slices)
        slices[name] = {**slices.get(name, {}), **fields, UPDATED_AT: self._clock()}
        self.state = replace(self.state, slices=slices)

    def apply_progress(self, percentage: int, text: Optional[str] = None) -> None:
        if self.percentage is None or percentage >= self.percentage:
            self.percentage = percentage
        self.progress_text = text

    def apply_result(self, result: Any) -> None:
        self.state = merge_streamed_result(self.state, result, self._clock())
