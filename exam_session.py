"""
Timed test session – in-memory state machine behind the /test page.

States:
    not_started → in_progress ⇄ paused → submitted

The countdown and auto-save intervals live in session_runner.py; this module
only knows how to react to a tick, a user action, or a key press.  Time is
measured with an injectable clock so per-question accounting is testable.

Scoring rules:
    +marks            correct answer
    -negative_marks   wrong answer (only when negative marking is enabled)
     0                unattempted
Obtained marks are floored at 0.
"""

import random
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel, Field

from config import DEFAULT_AUTO_SAVE_INTERVAL, LOW_TIME_THRESHOLD

NOT_STARTED = "not_started"
IN_PROGRESS = "in_progress"
PAUSED      = "paused"
SUBMITTED   = "submitted"

OPTION_KEYS = ("1", "2", "3", "4")


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


# ──────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────

class SessionError(Exception):
    status_code = 400


class InvalidAction(SessionError):
    """The request is malformed for this session (bad index, foreign option…)."""
    status_code = 400


class InvalidTransition(SessionError):
    """The action is not allowed in the session's current state."""
    status_code = 409


class SessionClosed(SessionError):
    """The session has been submitted; it no longer accepts changes."""
    status_code = 409


# ──────────────────────────────────────────────
# Models
# ──────────────────────────────────────────────

class QuestionOption(BaseModel):
    id: str
    key: str = ""           # upstream option label, e.g. "A"
    text: str
    is_correct: bool = False


class Question(BaseModel):
    id: str
    question_number: int
    text: str
    type: str = "mcq"
    options: list[QuestionOption] = []
    difficulty: str = "medium"
    subject: str = "General"
    topic: str = ""
    marks: float = 1.0
    negative_marks: float = 0.0
    explanation: Optional[str] = None


class UserResponse(BaseModel):
    question_id: str
    selected_option_id: Optional[str] = None
    is_marked_for_review: bool = False
    time_spent: int = 0
    timestamp: str = Field(default_factory=_now_iso)
    is_answered: bool = False
    is_visited: bool = False


class TestSettings(BaseModel):
    shuffle_questions: bool = False
    shuffle_options: bool = False
    show_question_numbers: bool = True
    allow_back_navigation: bool = True
    auto_save_interval: int = DEFAULT_AUTO_SAVE_INTERVAL   # seconds; 0 disables
    warning_before_submit: bool = True
    keyboard_shortcuts_enabled: bool = True


class TestProgress(BaseModel):
    answered: int
    not_answered: int
    marked_for_review: int
    not_visited: int
    total_questions: int


class SubjectAnalysis(BaseModel):
    subject: str
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    unattempted: int
    marks: float
    percentage: float


class TestResult(BaseModel):
    session_id: str
    total_marks: float
    obtained_marks: float
    percentage: float
    time_taken: float          # minutes
    correct_answers: int
    incorrect_answers: int
    unattempted: int
    subject_wise_analysis: list[SubjectAnalysis]
    performance: str
    is_auto_submit: bool = False
    completed_at: str


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def format_time(seconds: int) -> str:
    """Render a second count as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hrs  = seconds // 3600
    mins = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hrs:02d}:{mins:02d}:{secs:02d}"


def performance_band(percentage: float) -> str:
    if percentage >= 90:
        return "Excellent"
    if percentage >= 80:
        return "Very Good"
    if percentage >= 70:
        return "Good"
    if percentage >= 60:
        return "Fair"
    return "Needs Improvement"


def _difficulty_label(value) -> str:
    if isinstance(value, str) and value.lower() in ("easy", "medium", "hard"):
        return value.lower()
    try:
        level = float(value)
    except (TypeError, ValueError):
        return "medium"
    if level <= 1:
        return "easy"
    if level >= 3:
        return "hard"
    return "medium"


def question_from_backend(
    raw: dict,
    number: int,
    marks: float = 1.0,
    negative_marks: float = 0.0,
) -> Question:
    """Convert a backend question row into the session's Question model.

    Backend rows carry ``options`` as ``{"A": text, ...}`` (or a plain list)
    and the correct label in ``correct_answer``.
    """
    qid = str(raw.get("id", number))
    raw_options = raw.get("options") or {}
    if isinstance(raw_options, dict):
        pairs = [(str(k), v) for k, v in raw_options.items()]
    else:
        pairs = [(chr(ord("A") + i), v) for i, v in enumerate(raw_options)]

    correct = str(raw.get("correct_answer") or "").strip().lower()
    options = []
    for key, value in pairs:
        text = value.get("text", "") if isinstance(value, dict) else value
        options.append(QuestionOption(
            id=f"{qid}-{key}",
            key=key,
            text=str(text),
            is_correct=key.lower() == correct,
        ))

    return Question(
        id=qid,
        question_number=number,
        text=str(raw.get("question") or raw.get("text") or ""),
        type=str(raw.get("question_type") or ("true-false" if len(options) == 2 else "mcq")),
        options=options,
        difficulty=_difficulty_label(raw.get("difficulty")),
        subject=str(raw.get("subject") or "General"),
        topic=str(raw.get("topic") or ""),
        marks=float(raw.get("marks") or marks),
        negative_marks=float(raw.get("negative_marks") or negative_marks),
        explanation=raw.get("explanation"),
    )


# ──────────────────────────────────────────────
# Session
# ──────────────────────────────────────────────

class TestSession:
    def __init__(
        self,
        session_id: str,
        user_id: str,
        title: str,
        questions: list[Question],
        duration: int,
        *,
        test_id: str = "",
        exam_category: str = "",
        subject: Optional[str] = None,
        description: str = "",
        settings: Optional[TestSettings] = None,
        negative_marking_enabled: bool = True,
        allow_review: bool = True,
        allow_question_navigation: bool = True,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        if not questions:
            raise InvalidAction("A test session needs at least one question.")
        if duration <= 0:
            raise InvalidAction("duration must be a positive number of minutes.")

        self.id            = str(session_id)
        self.user_id       = str(user_id)
        self.test_id       = str(test_id)
        self.title         = title
        self.description   = description
        self.exam_category = exam_category
        self.subject       = subject
        self.duration      = duration              # minutes
        self.settings      = settings or TestSettings()

        self.negative_marking_enabled  = negative_marking_enabled
        self.allow_review              = allow_review
        self.allow_question_navigation = allow_question_navigation

        self._clock = clock
        rng = rng or random.Random()

        ordered = [q.model_copy(deep=True) for q in questions]
        if self.settings.shuffle_questions:
            rng.shuffle(ordered)
        for num, q in enumerate(ordered, start=1):
            q.question_number = num
            if self.settings.shuffle_options:
                rng.shuffle(q.options)

        self.questions = ordered
        self.responses = [UserResponse(question_id=q.id) for q in ordered]
        self._index_by_id = {q.id: i for i, q in enumerate(ordered)}

        self.status                 = NOT_STARTED
        self.current_question_index = 0
        self.time_remaining         = duration * 60
        self.start_time: Optional[str] = None
        self.end_time: Optional[str]   = None
        self.is_auto_submit         = False
        self.result: Optional[TestResult] = None

        self._question_started: Optional[float] = None
        self._unsaved: set[str] = set()

    # ── Derived values ────────────────────────

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def total_marks(self) -> float:
        return sum(q.marks for q in self.questions)

    @property
    def current_question(self) -> Question:
        return self.questions[self.current_question_index]

    @property
    def current_response(self) -> UserResponse:
        return self.responses[self.current_question_index]

    @property
    def expired(self) -> bool:
        return self.time_remaining <= 0

    @property
    def time_taken_seconds(self) -> int:
        return self.duration * 60 - self.time_remaining

    # ── State transitions ─────────────────────

    def start(self) -> None:
        if self.status != NOT_STARTED:
            raise InvalidTransition(f"Cannot start a session that is {self.status}.")
        self.status = IN_PROGRESS
        self.start_time = _now_iso()
        self.current_response.is_visited = True
        self._question_started = self._clock()

    def pause(self) -> None:
        self._ensure_open()
        if self.status != IN_PROGRESS:
            raise InvalidTransition(f"Cannot pause a session that is {self.status}.")
        self._accrue_question_time()
        self._question_started = None
        self.status = PAUSED

    def resume(self) -> None:
        self._ensure_open()
        if self.status != PAUSED:
            raise InvalidTransition(f"Cannot resume a session that is {self.status}.")
        self.status = IN_PROGRESS
        self._question_started = self._clock()

    def tick(self, seconds: int = 1) -> bool:
        """Advance the countdown. Returns True once time has run out."""
        if self.status != IN_PROGRESS:
            return False
        self.time_remaining = max(0, self.time_remaining - seconds)
        return self.expired

    def submit(self, auto: bool = False) -> TestResult:
        """Lock the session and compute its result."""
        self._ensure_open()
        if self.status == NOT_STARTED:
            raise InvalidTransition("Cannot submit a session that has not started.")
        if self.status == IN_PROGRESS:
            self._accrue_question_time()
        self._question_started = None
        self.status = SUBMITTED
        self.end_time = _now_iso()
        self.is_auto_submit = auto
        self.result = self.compute_result()
        return self.result

    # ── Navigation ────────────────────────────

    def navigate(self, index: int, direct: bool = True) -> None:
        self._require_active()
        if direct and not self.allow_question_navigation:
            raise InvalidAction("Direct question navigation is disabled for this test.")
        if index < 0 or index >= self.total_questions:
            raise InvalidAction(
                f"Question index must be between 0 and {self.total_questions - 1}."
            )
        self._accrue_question_time()
        self.current_question_index = index
        self.current_response.is_visited = True

    def next_question(self) -> bool:
        self._require_active()
        if self.current_question_index >= self.total_questions - 1:
            return False
        self.navigate(self.current_question_index + 1, direct=False)
        return True

    def previous_question(self) -> bool:
        self._require_active()
        if self.current_question_index <= 0 or not self.settings.allow_back_navigation:
            return False
        self.navigate(self.current_question_index - 1, direct=False)
        return True

    # ── Responses ─────────────────────────────

    def answer(self, option_id: str, question_id: Optional[str] = None) -> UserResponse:
        self._require_active()
        question, response = self._lookup(question_id)
        if option_id not in {opt.id for opt in question.options}:
            raise InvalidAction(f"Option {option_id!r} does not belong to question {question.id!r}.")
        response.selected_option_id = option_id
        response.is_answered = True
        response.timestamp = _now_iso()
        self._unsaved.add(question.id)
        return response

    def clear_answer(self, question_id: Optional[str] = None) -> UserResponse:
        self._require_active()
        question, response = self._lookup(question_id)
        response.selected_option_id = None
        response.is_answered = False
        response.timestamp = _now_iso()
        self._unsaved.discard(question.id)
        return response

    def toggle_review(self, question_id: Optional[str] = None) -> bool:
        self._require_active()
        if not self.allow_review:
            raise InvalidAction("Marking for review is disabled for this test.")
        _, response = self._lookup(question_id)
        response.is_marked_for_review = not response.is_marked_for_review
        return response.is_marked_for_review

    # ── Keyboard shortcuts ────────────────────

    def handle_key(
        self,
        key: str,
        ctrl: bool = False,
        meta: bool = False,
        in_text_input: bool = False,
    ) -> Optional[str]:
        """Apply a keyboard shortcut and return the action name, or None.

        ``save`` is returned but not performed here; saving is I/O and belongs
        to the caller.
        """
        if not self.settings.keyboard_shortcuts_enabled or in_text_input:
            return None

        if key == "ArrowLeft":
            self.previous_question()
            return "previous"
        if key == "ArrowRight":
            self.next_question()
            return "next"
        if key in OPTION_KEYS:
            option_index = int(key) - 1
            options = self.current_question.options
            if option_index < len(options):
                self.answer(options[option_index].id)
                return "answer"
            return None
        if key == "r":
            self.toggle_review()
            return "review"
        if key == "s" and (ctrl or meta):
            return "save"
        return None

    # ── Progress & palette ────────────────────

    def progress(self) -> TestProgress:
        answered = sum(1 for r in self.responses if r.is_answered)
        return TestProgress(
            answered=answered,
            not_answered=self.total_questions - answered,
            marked_for_review=sum(1 for r in self.responses if r.is_marked_for_review),
            not_visited=sum(1 for r in self.responses if not r.is_visited),
            total_questions=self.total_questions,
        )

    def question_status(self, question_id: str) -> str:
        _, response = self._lookup(question_id)
        if not response.is_visited:
            return "not-visited"
        if response.is_answered and response.is_marked_for_review:
            return "answered-marked"
        if response.is_answered:
            return "answered"
        if response.is_marked_for_review:
            return "marked"
        return "visited"

    def palette(self) -> list[dict]:
        return [
            {
                "question_number": q.question_number,
                "question_id":     q.id,
                "status":          self.question_status(q.id),
            }
            for q in self.questions
        ]

    # ── Saving ────────────────────────────────

    def pending_answers(self) -> list[dict]:
        """Answers changed since the last successful save, in backend form."""
        pending = []
        for qid in sorted(self._unsaved, key=self._index_by_id.__getitem__):
            question, response = self._lookup(qid)
            option = next(
                (o for o in question.options if o.id == response.selected_option_id), None
            )
            if option is None:
                continue
            pending.append({"question_id": qid, "selected_answer": option.key or option.id})
        return pending

    def mark_saved(self, items: list[dict]) -> None:
        """Forget pushed answers, unless they changed again while in flight."""
        current = {p["question_id"]: p["selected_answer"] for p in self.pending_answers()}
        for item in items:
            if current.get(item["question_id"]) == item["selected_answer"]:
                self._unsaved.discard(item["question_id"])

    def sync_question_time(self) -> None:
        """Fold the running question clock into time_spent (before a save)."""
        if self.status == IN_PROGRESS:
            self._accrue_question_time()

    # ── Scoring ───────────────────────────────

    def compute_result(self) -> TestResult:
        correct = incorrect = unattempted = 0
        obtained = 0.0
        subjects: dict[str, dict] = {}

        for question, response in zip(self.questions, self.responses):
            bucket = subjects.setdefault(question.subject, {
                "total": 0, "correct": 0, "incorrect": 0,
                "unattempted": 0, "marks": 0.0, "max_marks": 0.0,
            })
            bucket["total"] += 1
            bucket["max_marks"] += question.marks

            chosen = response.selected_option_id if response.is_answered else None
            if chosen is None:
                unattempted += 1
                bucket["unattempted"] += 1
                continue

            is_correct = any(o.id == chosen and o.is_correct for o in question.options)
            if is_correct:
                correct += 1
                obtained += question.marks
                bucket["correct"] += 1
                bucket["marks"] += question.marks
            else:
                incorrect += 1
                bucket["incorrect"] += 1
                if self.negative_marking_enabled:
                    obtained -= question.negative_marks
                    bucket["marks"] -= question.negative_marks

        obtained = max(0.0, round(obtained, 2))
        total = self.total_marks
        percentage = round(obtained / total * 100, 2) if total else 0.0

        analysis = []
        for name, b in subjects.items():
            marks = max(0.0, round(b["marks"], 2))
            analysis.append(SubjectAnalysis(
                subject=name,
                total_questions=b["total"],
                correct_answers=b["correct"],
                incorrect_answers=b["incorrect"],
                unattempted=b["unattempted"],
                marks=marks,
                percentage=round(marks / b["max_marks"] * 100, 2) if b["max_marks"] else 0.0,
            ))

        return TestResult(
            session_id=self.id,
            total_marks=total,
            obtained_marks=obtained,
            percentage=percentage,
            time_taken=round(self.time_taken_seconds / 60, 1),
            correct_answers=correct,
            incorrect_answers=incorrect,
            unattempted=unattempted,
            subject_wise_analysis=analysis,
            performance=performance_band(percentage),
            is_auto_submit=self.is_auto_submit,
            completed_at=self.end_time or _now_iso(),
        )

    # ── Serialisation ─────────────────────────

    def question_view(self, question: Question) -> dict:
        if self.status == SUBMITTED:
            return question.model_dump()
        return question.model_dump(
            exclude={"explanation": True, "options": {"__all__": {"is_correct"}}}
        )

    def view(self) -> dict:
        progress = self.progress()
        submit_warning = None
        if self.settings.warning_before_submit and self.status != SUBMITTED:
            submit_warning = (
                f"You have answered {progress.answered} out of "
                f"{progress.total_questions} questions. This action cannot be undone."
            )
        return {
            "id":                        self.id,
            "test_id":                   self.test_id,
            "user_id":                   self.user_id,
            "exam_category":             self.exam_category,
            "subject":                   self.subject,
            "title":                     self.title,
            "description":               self.description,
            "status":                    self.status,
            "total_questions":           self.total_questions,
            "total_marks":               self.total_marks,
            "duration":                  self.duration,
            "start_time":                self.start_time,
            "end_time":                  self.end_time,
            "current_question_index":    self.current_question_index,
            "current_question":          self.question_view(self.current_question),
            "current_response":          self.current_response.model_dump(),
            "time_remaining":            self.time_remaining,
            "time_display":              format_time(self.time_remaining),
            "low_time":                  self.time_remaining < LOW_TIME_THRESHOLD,
            "progress":                  progress.model_dump(),
            "palette":                   self.palette(),
            "settings":                  self.settings.model_dump(),
            "allow_review":              self.allow_review,
            "allow_question_navigation": self.allow_question_navigation,
            "negative_marking_enabled":  self.negative_marking_enabled,
            "submit_warning":            submit_warning,
        }

    # ── Internals ─────────────────────────────

    def _ensure_open(self) -> None:
        if self.status == SUBMITTED:
            raise SessionClosed("Test has already been submitted.")

    def _require_active(self) -> None:
        self._ensure_open()
        if self.status != IN_PROGRESS:
            raise InvalidTransition(f"Session is {self.status}; resume it before continuing.")

    def _lookup(self, question_id: Optional[str]) -> tuple[Question, UserResponse]:
        if question_id is None:
            idx = self.current_question_index
        else:
            idx = self._index_by_id.get(str(question_id))
            if idx is None:
                raise InvalidAction(f"Unknown question {question_id!r}.")
        return self.questions[idx], self.responses[idx]

    def _accrue_question_time(self) -> None:
        if self._question_started is None:
            return
        now = self._clock()
        elapsed = int(now - self._question_started)
        if elapsed > 0:
            self.current_response.time_spent += elapsed
            self._question_started += elapsed
